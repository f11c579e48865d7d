"""Tool descriptors, the per-network registry and the built-in APAI tools."""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .config import AppSettings
from .errors import DuplicateToolError, UnknownToolError, ValidationError
from .state import RunContext

logger = logging.getLogger("uvicorn.error")

FINISH_TOOL = "done"

Handler = Callable[[Any, RunContext], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class RemoteTarget:
    server: str
    url: str
    tool: str
    transport: str = "sse"


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_model: Type[BaseModel]
    handler: Handler
    remote: Optional[RemoteTarget] = None

    @property
    def input_schema(self) -> Dict[str, Any]:
        return self.input_model.model_json_schema()

    def validate(self, raw_input: Any) -> BaseModel:
        if raw_input is None:
            raw_input = {}
        if not isinstance(raw_input, dict):
            raise ValidationError(f"input for '{self.name}' must be an object")
        try:
            return self.input_model.model_validate(raw_input)
        except PydanticValidationError as exc:
            raise ValidationError(
                f"invalid input for '{self.name}': {exc.error_count()} error(s)",
                exc.errors(include_url=False),
            ) from exc


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: Dict[str, ToolDescriptor] = {}

    def register(self, descriptor: ToolDescriptor) -> ToolDescriptor:
        if descriptor.name in self._tools:
            raise DuplicateToolError(f"tool '{descriptor.name}' is already registered")
        self._tools[descriptor.name] = descriptor
        logger.debug("Tool '%s' registered.", descriptor.name)
        return descriptor

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [
            {"name": tool.name, "description": tool.description, "input_schema": tool.input_schema}
            for tool in self._tools.values()
        ]

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "remote": {"server": tool.remote.server, "tool": tool.remote.tool} if tool.remote else None,
            }
            for tool in self._tools.values()
        ]

    async def invoke(self, name: str, raw_input: Any, context: RunContext) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(f"tool '{name}' is not registered")
        validated = tool.validate(raw_input)
        if tool.remote is not None and context.remote is not None:
            return await context.remote.invoke(tool.remote, validated.model_dump())
        result = tool.handler(validated, context)
        if inspect.isawaitable(result):
            result = await result
        return result


class DoneInput(BaseModel):
    answer: str = Field(description="Answer to the user's question.")


class DataContext(BaseModel):
    query: str = Field(description="The original user query")
    tool: str = Field(description="The tool that provided the data")
    timestamp: str = Field(description="When the data was retrieved")


class PassDataInput(BaseModel):
    data: Any = Field(description="Data to pass to the next agent")
    context: DataContext


class GetAgreementInput(BaseModel):
    agreementId: str = Field(description="ID of the agreement to fetch")


class GetTemplateInput(BaseModel):
    templateId: str = Field(description="ID of the template to fetch")


async def done_handler(params: DoneInput, ctx: RunContext) -> str:
    logger.info("Run %s done called (%d chars)", ctx.run_id, len(params.answer))
    ctx.state.set("answer", params.answer)
    return params.answer


async def pass_data_handler(params: PassDataInput, ctx: RunContext) -> Dict[str, Any]:
    ctx.state.set("current_data", params.data)
    ctx.state.set("data_context", params.context.model_dump())
    return {"success": True}


async def remote_stub_handler(params: BaseModel, ctx: RunContext) -> Dict[str, Any]:
    # The remote executor produces the real result.
    return {"success": True}


def finish_tool() -> ToolDescriptor:
    return ToolDescriptor(
        name=FINISH_TOOL,
        description="Call this tool when you are finished with the task.",
        input_model=DoneInput,
        handler=done_handler,
    )


def pass_data_tool() -> ToolDescriptor:
    return ToolDescriptor(
        name="pass_data",
        description="Pass data between agents in the pipeline",
        input_model=PassDataInput,
        handler=pass_data_handler,
    )


def remote_tool(
    name: str,
    description: str,
    input_model: Type[BaseModel],
    *,
    server: str,
    url: str,
    tool: str,
) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description=description,
        input_model=input_model,
        handler=remote_stub_handler,
        remote=RemoteTarget(server=server, url=url, tool=tool),
    )


def build_default_registry(settings: AppSettings) -> ToolRegistry:
    registry = ToolRegistry()
    server = settings.apai_server_name
    registry.register(
        remote_tool(
            f"{server}-getAgreement",
            "Retrieves the full data of an agreement",
            GetAgreementInput,
            server=server,
            url=settings.apai_url,
            tool="getAgreement",
        )
    )
    registry.register(
        remote_tool(
            f"{server}-getTemplate",
            "Retrieves the full data of a template",
            GetTemplateInput,
            server=server,
            url=settings.apai_url,
            tool="getTemplate",
        )
    )
    registry.register(pass_data_tool())
    registry.register(finish_tool())
    return registry
