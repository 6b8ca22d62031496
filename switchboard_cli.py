import argparse
import json
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_event(event: dict, show_tools: bool) -> None:
    etype = event.get("type")
    if etype == "thread_created":
        print(f"[thread {event.get('threadId')}]", file=sys.stderr)
    elif etype == "routing":
        decision = event.get("decision") or {}
        print(
            f"[{decision.get('agent')} via {decision.get('source')} ({decision.get('confidence', 0):.2f})]",
            file=sys.stderr,
        )
    elif etype == "tool_start" and show_tools:
        print(f"[tool {event.get('tool')} {json.dumps(event.get('args') or {})}]", file=sys.stderr)
    elif etype == "tool_end" and show_tools:
        status = "ok" if event.get("success") else "failed"
        print(f"[tool {event.get('tool')} {status} in {event.get('duration')}ms]", file=sys.stderr)
    elif etype == "handoff":
        print(f"[handoff {event.get('from')} -> {event.get('to')}: {event.get('reason')}]", file=sys.stderr)
    elif etype == "content":
        sys.stdout.write(event.get("delta") or "")
        sys.stdout.flush()
    elif etype == "done":
        print()
        switch_back = event.get("switchBack")
        if switch_back:
            print(f"[{switch_back.get('prompt')}]", file=sys.stderr)
    elif etype == "error":
        print(f"\nError: {event.get('message')}", file=sys.stderr)


def run_chat(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    payload = {
        "message": " ".join(args.message),
        "user_id": args.user_id,
        "thread_id": args.thread_id,
        "force_agent": args.agent,
        "show_tool_executions": args.tools,
    }
    failed = False
    with httpx.Client() as client:
        with client.stream("POST", _join_url(base, "/api/chat/stream"), json=payload, timeout=args.timeout) as resp:
            if resp.status_code >= 400:
                print(f"Chat failed: HTTP {resp.status_code}")
                return 1
            for line in resp.iter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    event = json.loads(line[5:].strip())
                except ValueError:
                    continue
                failed = failed or event.get("type") == "error"
                _print_event(event, args.tools)
    return 1 if failed else 0


def run_health(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/health"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch health: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    for agent, info in (data.get("agents") or {}).items():
        mark = "ok" if info.get("available") else "missing key"
        print(f"{agent:<13} {info.get('provider')}:{info.get('model')} ({mark})")
    tools = data.get("tools") or {}
    print("Tools: " + ", ".join(f"{name}={'on' if on else 'off'}" for name, on in tools.items()))
    return 0


def run_metrics(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    params = {"days": args.days} if args.days else None
    with httpx.Client() as client:
        resp = client.get(_join_url(base, f"/api/agents/{args.agent}/metrics"), params=params, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch metrics: HTTP {resp.status_code}")
            return 1
        metrics = resp.json().get("metrics")
    if not metrics:
        print(f"No responses recorded for {args.agent}.")
        return 0
    print(f"Agent: {metrics['agent']}")
    print(f"Responses: {metrics['response_count']}")
    print(f"Avg quality: {metrics['avg_quality']:.2f} ({metrics['trend']})")
    print(f"Feedback: +{metrics['positive_feedback']} / -{metrics['negative_feedback']}")
    print(f"Regeneration rate: {metrics['regeneration_rate']:.0%}")
    print(f"Avg latency: {metrics['avg_latency']:.0f} ms")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Switchboard CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send a message and stream the reply")
    chat.add_argument("message", nargs="+", help="Message text")
    chat.add_argument("--thread-id", default=None, help="Continue an existing thread")
    chat.add_argument("--user-id", default="default", help="User id")
    chat.add_argument("--agent", default=None, help="Force a specific agent")
    chat.add_argument("--no-tools", dest="tools", action="store_false", help="Hide tool execution events")
    chat.add_argument("--timeout", type=float, default=120.0, help="Request timeout seconds")

    subparsers.add_parser("health", help="Show provider and tool availability")

    metrics = subparsers.add_parser("metrics", help="Show quality metrics for an agent")
    metrics.add_argument("agent", help="Agent name")
    metrics.add_argument("--days", type=int, default=None, help="Window in days")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "chat":
        return run_chat(args)
    if args.command == "health":
        return run_health(args)
    if args.command == "metrics":
        return run_metrics(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
