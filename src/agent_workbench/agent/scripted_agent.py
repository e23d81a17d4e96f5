"""Deterministic stream-json agent for local runs and integration tests."""

from __future__ import annotations

import argparse
import json
import sys
import time
from pathlib import Path

MODES = ("success", "failure", "crash", "sleep", "silent")


def main(argv: list[str] | None = None) -> int:
    """Write a scripted sequence of stream-json events to stdout."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", choices=MODES, default="success")
    parser.add_argument("--session-id", default="scripted-session")
    parser.add_argument("--text", default="Done editing.")
    parser.add_argument("--sleep-seconds", type=float, default=30.0)
    parser.add_argument("--touch", default=None, help="Create this file in the working folder.")
    parser.add_argument("--resume", default=None)
    parser.add_argument("-p", "--prompt", default="")
    args, _ = parser.parse_known_args(argv)

    session_id = args.resume or args.session_id
    _emit({"type": "system", "subtype": "init", "session_id": session_id})
    print("agent banner, not json", flush=True)
    _emit({"type": "thinking", "subtype": "delta", "text": "Reading the task"})
    _emit({"type": "thinking", "subtype": "completed"})

    if args.mode == "crash":
        print("fatal: agent crashed", file=sys.stderr, flush=True)
        return 3

    if args.touch:
        target = Path(args.touch)
        _emit(
            {
                "type": "tool_call",
                "subtype": "started",
                "tool_call": {"writeToolCall": {"args": {"path": str(target), "lines": 1}}},
            },
        )
        target.write_text(f"{args.prompt}\n", encoding="utf-8")
        _emit(
            {
                "type": "tool_call",
                "subtype": "completed",
                "tool_call": {
                    "writeToolCall": {
                        "args": {"path": str(target), "lines": 1},
                        "result": {"success": {"linesCreated": 1}},
                    },
                },
            },
        )

    # Cumulative updates: each message repeats everything sent so far.
    midpoint = max(1, len(args.text) // 2)
    for partial in (args.text[:midpoint], args.text):
        _emit(
            {
                "type": "assistant",
                "message": {"role": "assistant", "content": [{"type": "text", "text": partial}]},
            },
        )

    if args.mode == "sleep":
        time.sleep(args.sleep_seconds)
    if args.mode == "silent":
        return 0
    if args.mode == "failure":
        _emit({"type": "result", "subtype": "error", "error": "Scripted failure."})
        return 1

    _emit({"type": "result", "subtype": "success", "result": args.text, "session_id": session_id})
    return 0


def _emit(event: dict) -> None:
    sys.stdout.write(json.dumps(event) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
