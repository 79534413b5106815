#!/usr/bin/env python3
"""Run a small multi-turn chat against an ADK agent runtime.

This example demonstrates:
- configuration from ADK_* environment variables with CLI overrides
- session reuse across turns (and across runs with --session-file)
- printing text deltas as they stream in
- user-facing error messages for failed turns
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from adk_bridge import (
    AdkError,
    BridgeConfig,
    ChatBridge,
    StreamError,
    TextDelta,
    describe_error,
    setup_logging,
)

DEFAULT_PROMPTS = [
    "Hello, my name is Alice.",
    "Which documents do I need to register my child's birth?",
    "What is my name?",
]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument("--url", help="Agent runtime URL (defaults to ADK_SERVICE_URL).")
    parser.add_argument("--app", help="Agent application name (defaults to ADK_APP_NAME).")
    parser.add_argument("--user", help="User id sessions are created for (defaults to ADK_USER_ID).")
    parser.add_argument(
        "--session-file",
        help="JSON file used to keep the session between runs.",
    )
    parser.add_argument("--timeout", type=float, help="Per-request timeout in seconds.")
    parser.add_argument("--log-level", default="WARNING", help="Log level for structured logs.")
    parser.add_argument(
        "--log-format",
        choices=("console", "json"),
        default="console",
        help="Structured log renderer.",
    )
    return parser.parse_args()


def _config(args: argparse.Namespace) -> BridgeConfig:
    overrides: dict[str, object] = {}
    if args.url:
        overrides["base_url"] = args.url
    if args.app:
        overrides["app_name"] = args.app
    if args.user:
        overrides["user_id"] = args.user
    if args.session_file:
        overrides["session_file"] = args.session_file
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    return BridgeConfig.from_env(**overrides)


async def run_session(args: argparse.Namespace) -> int:
    """Send each prompt in turn and stream the replies to stdout."""
    prompts = args.prompts or DEFAULT_PROMPTS
    try:
        config = _config(args)
    except ValueError as exc:
        print(f"[error] config: {exc}", file=sys.stderr)
        return 2

    try:
        async with ChatBridge.from_config(config) as bridge:
            health = await bridge.health_check()
            print(f"[health] status={health.status}")
            session = await bridge.get_or_create_session()
            print(f"[session] id={session.id} app={session.app_name} user={session.user_id}")

            for index, prompt in enumerate(prompts, start=1):
                print(f"\n[user:{index}] {prompt}")
                print(f"[assistant:{index}] ", end="", flush=True)
                async with await bridge.send(prompt) as stream:
                    async for event in stream:
                        if isinstance(event, TextDelta):
                            print(event.delta, end="", flush=True)
                        elif isinstance(event, StreamError):
                            print(f"\n[error:{event.kind}] {event.error}", file=sys.stderr)
                            return 3
                print()
                if stream.finish is not None:
                    usage = stream.finish.usage
                    print(
                        "[meta]"
                        f" finish={stream.finish.finish_reason}"
                        f" prompt_tokens={usage.prompt_tokens}"
                        f" completion_tokens={usage.completion_tokens}"
                    )
            print(f"\n[state] keys={sorted(bridge.state.state)} turns={len(bridge.state.turns)}")
        return 0
    except AdkError as exc:
        kind, message = describe_error(exc)
        print(f"[error:{kind}] {message}", file=sys.stderr)
        return 4
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled session", file=sys.stderr)
        return 130


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    setup_logging(level=args.log_level, format=args.log_format)
    raise SystemExit(asyncio.run(run_session(args)))


if __name__ == "__main__":
    main()
