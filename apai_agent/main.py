import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .agents import build_apai_agent
from .config import AppSettings, load_settings
from .db import Database
from .errors import AgentError, ProviderError
from .limits import KeyedConcurrencyLimiter
from .llm import AnthropicClient, ModelCaller
from .orchestrator import (
    AgentNetwork,
    CompositeObserver,
    EventBus,
    EventBusObserver,
    LoggingObserver,
    RunOutcome,
    new_run_id,
)
from .remote import McpToolExecutor, RemoteToolExecutor
from .schemas import EventEnvelope, RunRequest, RunResponse
from .tools import ToolRegistry, build_default_registry

logger = logging.getLogger("uvicorn.error")

REQUEST_EVENT = "apai/request"


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_registry(request: Request) -> ToolRegistry:
    return request.app.state.registry


def get_network(request: Request) -> AgentNetwork:
    return request.app.state.network


def get_limiter(request: Request) -> KeyedConcurrencyLimiter:
    return request.app.state.limiter


def get_run_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.run_tasks


def get_run_stop_events(request: Request) -> Dict[str, asyncio.Event]:
    return request.app.state.run_stop_events


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def execute_run(
    run_id: str,
    payload: RunRequest,
    *,
    settings: AppSettings,
    db: Database,
    bus: EventBus,
    network: AgentNetwork,
    limiter: KeyedConcurrencyLimiter,
    stop_event: Optional[asyncio.Event] = None,
) -> RunOutcome:
    """Run one request to completion under its concurrency key and record the result."""
    key = payload.concurrency_key or settings.default_concurrency_key
    await db.insert_run(run_id, payload.input, key, status="queued")
    async with limiter.hold(key):
        await db.update_run_status(run_id, "running")
        try:
            outcome = await network.run(payload.input, run_id=run_id, cancel_event=stop_event)
        except asyncio.CancelledError:
            logger.warning("Run %s cancelled while in progress", run_id)
            await db.finalize_run(run_id, "cancelled", None, 0, error_text="task cancelled")
            await bus.emit(run_id, "run_cancelled", {})
            raise
        except Exception as exc:
            if isinstance(exc, AgentError):
                logger.error("Run %s failed: %s", run_id, exc)
            else:
                logger.exception("Run %s failed unexpectedly", run_id)
            await db.finalize_run(run_id, "failed", None, 0, error_text=str(exc) or type(exc).__name__)
            await bus.emit(run_id, "run_failed", {"error": str(exc), "kind": type(exc).__name__})
            raise
    await db.finalize_run(run_id, outcome.status, outcome.answer, outcome.turns)
    return outcome


async def stop_run_internal(
    run_id: str,
    db: Database,
    bus: EventBus,
    run_stop_events: Dict[str, asyncio.Event],
) -> Dict[str, Any]:
    run = await db.get_run_summary(run_id)
    stop_event = run_stop_events.get(run_id)
    if not run:
        if stop_event:
            stop_event.set()
            return {"ok": True, "status": "stopping"}
        raise HTTPException(status_code=404, detail="Run not found")
    if stop_event and not stop_event.is_set():
        stop_event.set()
        await bus.emit(run_id, "stop_requested", {})
        return {"ok": True, "status": "stopping"}
    if run.get("status") in ("queued", "running"):
        await db.update_run_status(run_id, "cancelled")
        return {"ok": True, "status": "cancelled"}
    return {"ok": True, "status": run["status"]}


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.get("/api/tools")
async def list_tools(registry: ToolRegistry = Depends(get_registry)):
    return {"tools": registry.describe()}


@router.post("/api/events", response_model=RunResponse)
async def receive_event(
    envelope: EventEnvelope,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    network: AgentNetwork = Depends(get_network),
    limiter: KeyedConcurrencyLimiter = Depends(get_limiter),
    run_stop_events: Dict[str, asyncio.Event] = Depends(get_run_stop_events),
):
    if envelope.name != REQUEST_EVENT:
        raise HTTPException(status_code=400, detail=f"Unsupported event '{envelope.name}'.")
    payload = envelope.data
    if not payload.input.strip():
        raise HTTPException(status_code=400, detail="Input is required.")
    run_id = payload.run_id or envelope.id or new_run_id()
    if run_id in run_stop_events:
        raise HTTPException(status_code=409, detail="Run already in progress.")
    stop_event = asyncio.Event()
    run_stop_events[run_id] = stop_event
    try:
        outcome = await execute_run(
            run_id,
            payload,
            settings=settings,
            db=db,
            bus=bus,
            network=network,
            limiter=limiter,
            stop_event=stop_event,
        )
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(status_code=500, detail=str(exc) or type(exc).__name__) from exc
    finally:
        run_stop_events.pop(run_id, None)
    return RunResponse(answer=outcome.answer, run_id=outcome.run_id, status=outcome.status)


@router.post("/api/run")
async def start_run(
    payload: RunRequest,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    network: AgentNetwork = Depends(get_network),
    limiter: KeyedConcurrencyLimiter = Depends(get_limiter),
    run_tasks: Dict[str, asyncio.Task] = Depends(get_run_tasks),
    run_stop_events: Dict[str, asyncio.Event] = Depends(get_run_stop_events),
):
    if not payload.input.strip():
        raise HTTPException(status_code=400, detail="Input is required.")
    run_id = payload.run_id or new_run_id()
    if run_id in run_tasks or run_id in run_stop_events:
        raise HTTPException(status_code=409, detail="Run already in progress.")
    stop_event = asyncio.Event()
    run_stop_events[run_id] = stop_event

    async def run_and_cleanup() -> None:
        try:
            await execute_run(
                run_id,
                payload,
                settings=settings,
                db=db,
                bus=bus,
                network=network,
                limiter=limiter,
                stop_event=stop_event,
            )
        except Exception:
            # Already recorded as failed by execute_run.
            pass
        finally:
            run_tasks.pop(run_id, None)
            run_stop_events.pop(run_id, None)

    task = asyncio.create_task(run_and_cleanup())
    run_tasks[run_id] = task
    return {"run_id": run_id}


@router.get("/api/run/{run_id}")
async def get_run(run_id: str, db: Database = Depends(get_db)):
    run = await db.get_run_summary(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/api/run/{run_id}/events")
async def list_run_events(run_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    run = await db.get_run_summary(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    events = await db.list_events(run_id, after_seq=after_seq)
    last_seq = events[-1]["seq"] if events else after_seq
    return {"events": events, "last_seq": last_seq}


@router.post("/api/run/{run_id}/stop")
async def stop_run(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    run_stop_events: Dict[str, asyncio.Event] = Depends(get_run_stop_events),
):
    return await stop_run_internal(run_id, db, bus, run_stop_events)


@router.get("/runs/{run_id}/events")
async def stream_events(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Preload past events then stream new ones
    async def event_generator():
        queue = await bus.subscribe(run_id)
        try:
            past = await db.list_events(run_id)
            for ev in past:
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(run_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    model: Optional[ModelCaller] = None,
    remote: Optional[RemoteToolExecutor] = None,
    registry: Optional[ToolRegistry] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        for tool in app.state.registry.describe():
            logger.info("Tool available: %s", tool["name"])
        try:
            yield
        finally:
            tasks = list(app.state.run_tasks.values())
            for task in tasks:
                task.cancel()
            # Let cancelled runs record their final status.
            await asyncio.gather(*tasks, return_exceptions=True)
            for client in (app.state.model, app.state.remote):
                close = getattr(client, "close", None)
                if close is not None:
                    await close()

    app = FastAPI(title="APAI Agent Network", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.model = model or AnthropicClient(
        settings.anthropic_api_key,
        settings.model,
        base_url=settings.anthropic_base_url,
        max_tokens=settings.max_tokens,
        timeout=settings.model_timeout_s,
    )
    app.state.remote = remote or McpToolExecutor()
    app.state.registry = registry or build_default_registry(settings)
    app.state.bus = EventBus(app.state.db)
    app.state.network = AgentNetwork(
        build_apai_agent(settings.apai_server_name),
        app.state.registry,
        app.state.model,
        settings,
        remote=app.state.remote,
        observer=CompositeObserver(LoggingObserver(), EventBusObserver(app.state.bus)),
    )
    app.state.limiter = KeyedConcurrencyLimiter(settings.concurrency_limit)
    app.state.run_tasks = {}
    app.state.run_stop_events = {}

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    try:
        uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
