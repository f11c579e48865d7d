import argparse
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:3010"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_run(run: dict) -> None:
    print(f"Run {run.get('run_id')}: {run.get('status')} ({run.get('turns', 0)} turns)")
    if run.get("answer"):
        print(run["answer"])
    if run.get("error_text"):
        print(f"Error: {run['error_text']}")


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    data = {"input": " ".join(args.prompt)}
    if args.key:
        data["concurrency_key"] = args.key
    payload = {"name": "apai/request", "data": data}
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/events"), json=payload, timeout=args.timeout)
        if resp.status_code >= 400:
            print(f"Request failed: HTTP {resp.status_code} {resp.text}")
            return 1
        result = resp.json()
    if result.get("status") != "completed":
        print(f"[{result.get('status')}] run {result.get('run_id')}")
    print(result.get("answer") or "")
    return 0


def run_tools(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/tools"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list tools: HTTP {resp.status_code}")
            return 1
        tools = resp.json().get("tools") or []
    for tool in tools:
        remote = tool.get("remote")
        suffix = f" -> {remote['server']}/{remote['tool']}" if remote else ""
        print(f"{tool['name']}{suffix}: {tool.get('description', '')}")
    return 0


def run_status(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/run/{args.run_id}"), timeout=10)
        if resp.status_code == 404:
            print(f"Run {args.run_id} not found.")
            return 1
        if resp.status_code >= 400:
            print(f"Failed to fetch run: HTTP {resp.status_code}")
            return 1
        _print_run(resp.json())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="APAI agent CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Ask the agent a question and wait for the answer")
    ask.add_argument("prompt", nargs="+", help="Question text")
    ask.add_argument("--key", default=None, help="Concurrency key for the run")
    ask.add_argument("--timeout", type=float, default=600, help="Max wait seconds")

    subparsers.add_parser("tools", help="List registered tools")

    status = subparsers.add_parser("status", help="Show a run's status and answer")
    status.add_argument("run_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "tools":
        return run_tools(args)
    if args.command == "status":
        return run_status(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
