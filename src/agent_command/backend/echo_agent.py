"""Local stream-json agent for CLI backend integration tests.

Mimics the CLI's ``-p ... --output-format stream-json`` contract. Markers in
the prompt select the scenario: ``[fail]``, ``[ask]``, ``[plan]``,
``[hang]`` and ``[crash]``. A decomposition prompt gets one sub-task per
``;``-separated clause of the user request.
"""

from __future__ import annotations

import argparse
import hashlib
import json
import sys
import time
from typing import Any


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic fake agent session."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--print", dest="prompt", required=True)
    parser.add_argument("--model", default="sonnet")
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--resume", default=None)
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--dangerously-skip-permissions", action="store_true")
    args = parser.parse_args(argv)

    prompt: str = args.prompt
    session_id = args.resume or "echo-" + hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:12]
    _emit({"type": "system", "subtype": "init", "session_id": session_id, "model": args.model})

    if "[hang]" in prompt:
        time.sleep(3600)
        return 0
    if "[crash]" in prompt:
        print("echo agent crashed", file=sys.stderr)
        return 2
    if "[ask]" in prompt and args.resume is None:
        _tool_use("AskUserQuestion", {"questions": [{"question": "Which database should I use?"}]})
        return 0
    if "[plan]" in prompt and args.resume is None:
        _tool_use("ExitPlanMode", {"plan": "1. Read code\n2. Change code"})
        return 0

    _emit(_assistant({"type": "text", "text": f"Working on: {prompt.splitlines()[0][:80]}"}))
    _tool_use("Read", {"file_path": "README.md"})
    _emit(
        {
            "type": "user",
            "message": {
                "content": [{"type": "tool_result", "tool_use_id": "tool-1", "content": "ok"}],
            },
        },
    )

    if "[fail]" in prompt:
        _emit(
            {
                "type": "result",
                "subtype": "error",
                "is_error": True,
                "error": "Simulated failure",
                "session_id": session_id,
            },
        )
        return 1

    _emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": _result_text(prompt),
            "total_cost_usd": 0.0,
            "duration_ms": 1,
            "session_id": session_id,
        },
    )
    return 0


def _result_text(prompt: str) -> str:
    if "task decomposition assistant" not in prompt:
        return f"echo: {prompt.splitlines()[0]}"
    request = ""
    for line in prompt.splitlines():
        if line.startswith("User request:"):
            request = line.removeprefix("User request:").strip()
            break
    clauses = [clause.strip() for clause in request.split(";") if clause.strip()]
    subtasks = [
        {
            "title": clause[:40],
            "prompt": clause,
            "dependencies": [],
            "can_parallel": True,
            "estimated_complexity": "low",
        }
        for clause in clauses
    ]
    return json.dumps({"subtasks": subtasks})


def _assistant(block: dict[str, Any]) -> dict[str, Any]:
    return {"type": "assistant", "message": {"content": [block]}}


def _tool_use(name: str, tool_input: dict[str, Any]) -> None:
    _emit(_assistant({"type": "tool_use", "id": "tool-1", "name": name, "input": tool_input}))


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
