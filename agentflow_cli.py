import argparse
import json
import sys
import uuid
from typing import Iterable, Iterator, List, Optional

import httpx

from agentflow.events import parse_sse_frame


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def iter_sse_frames(lines: Iterable[str]) -> Iterator[dict]:
    """Group streamed lines into frames and decode them."""
    buffer: List[str] = []
    for line in lines:
        if line:
            buffer.append(line)
            continue
        if buffer:
            frame = parse_sse_frame("\n".join(buffer))
            buffer = []
            if frame is not None:
                yield frame
    if buffer:
        frame = parse_sse_frame("\n".join(buffer))
        if frame is not None:
            yield frame


def _print_event(event: dict, verbose: bool = False) -> None:
    kind = event.get("type")
    data = event.get("data") or {}
    if kind == "status":
        print(f"[{data.get('status')}] {data.get('message', '')}")
    elif kind == "retrieval":
        print(f"Retrieved {data.get('count', 0)} documents: {', '.join(data.get('sources') or [])}")
    elif kind == "step":
        if verbose:
            tool = f" ({data.get('tool')})" if data.get("tool") else ""
            print(f"  {data.get('type')}{tool} {data.get('status')}: {data.get('content')}")
    elif kind == "progress":
        print(f"  step {data.get('step')}/{data.get('total')}: {data.get('description')}")
    elif kind == "complete":
        print()
        print(data.get("response", ""))
        print(f"\nconfidence={data.get('confidence')} tools={data.get('toolsUsed')} time={data.get('executionTime')}ms")
    elif kind == "error":
        print(f"Error: {data.get('message')}")
    elif verbose:
        print(f"{kind}: {json.dumps(data)}")


def run_ask(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "message": " ".join(args.message),
        "userId": args.user,
        "platform": "web",
        "messageId": args.id or str(uuid.uuid4()),
    }
    failed = False
    with httpx.Client(timeout=httpx.Timeout(10.0, read=None)) as client:
        with client.stream("POST", _join_url(base, "/api/chat/stream"), json=payload) as resp:
            if resp.status_code >= 400:
                resp.read()
                print(f"Failed to start workflow: HTTP {resp.status_code} {resp.text}")
                return 1
            for event in iter_sse_frames(resp.iter_lines()):
                if event.get("type") == "error":
                    failed = True
                _print_event(event, verbose=args.verbose)
    return 1 if failed else 0


def run_status(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/workflows/{args.workflow_id}"), timeout=10)
        if resp.status_code == 404:
            print("Workflow not found (unknown or already evicted).")
            return 1
        if resp.status_code >= 400:
            print(f"Failed to fetch workflow: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    print(f"{data.get('id')}: {data.get('status')} ({data.get('current_step')}/{data.get('total_steps')})")
    for err in data.get("errors") or []:
        print(f"- {err}")
    return 0


def run_cancel(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, f"/api/workflows/{args.workflow_id}/cancel"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to cancel workflow: HTTP {resp.status_code}")
            return 1
        print(f"Workflow {args.workflow_id}: {resp.json().get('status')}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="agentflow CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Run a workflow and stream its events")
    ask.add_argument("message", nargs="+", help="Message text")
    ask.add_argument("--user", default="cli-user", help="Requester id")
    ask.add_argument("--id", default=None, help="Workflow id (defaults to a random UUID)")
    ask.add_argument("-v", "--verbose", action="store_true", help="Print individual plan steps")

    status = subparsers.add_parser("status", help="Show a workflow snapshot")
    status.add_argument("workflow_id")

    cancel = subparsers.add_parser("cancel", help="Cancel a running workflow")
    cancel.add_argument("workflow_id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    if args.command == "status":
        return run_status(args)
    if args.command == "cancel":
        return run_cancel(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
