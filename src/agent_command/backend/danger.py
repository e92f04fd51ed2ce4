"""Flag destructive shell commands so the agent asks for permission first."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass

_SHELL_TOOLS: tuple[str, ...] = ("bash", "shell", "terminal", "execute")

_DANGEROUS_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), reason)
    for pattern, reason in (
        (r"rm\s+-rf", "Recursive force delete (rm -rf)"),
        (r"rm\s+-r\s", "Recursive delete (rm -r)"),
        (r"\brmdir\b", "Directory removal (rmdir)"),
        (r"git\s+push\s+(--force|-f)\b", "Force push"),
        (r"git\s+reset\s+--hard", "Hard reset (git reset --hard)"),
        (r"git\s+clean\s+-f", "Force clean (git clean -f)"),
        (r"drop\s+(table|database)", "SQL DROP"),
        (r"truncate\s+table", "SQL TRUNCATE TABLE"),
        (r"delete\s+from\s+\w+\s*;?\s*$", "SQL DELETE without WHERE"),
        (r"\bsudo\s+", "Elevated privileges (sudo)"),
        (r"chmod\s+777", "World-writable permissions (chmod 777)"),
        (r"\bmkfs\.", "Format filesystem (mkfs)"),
        (r"\bdd\s+if=", "Raw disk write (dd)"),
        (r">\s*/dev/(sd|nvme|disk)", "Direct device write"),
        (r":\(\)\s*\{\s*:\|:&\s*\};:", "Fork bomb"),
        (r"(curl|wget)[^|]*\|\s*(ba|z)?sh\b", "Pipe remote script to shell"),
    )
)


@dataclass(frozen=True, slots=True)
class DangerAssessment:
    dangerous: bool
    reason: str | None = None


SAFE = DangerAssessment(dangerous=False)


def classify_tool_use(tool_name: str, input_json: str) -> DangerAssessment:
    """Inspect a shell tool invocation; other tools are always safe."""

    lowered_tool = tool_name.lower()
    if not any(shell in lowered_tool for shell in _SHELL_TOOLS):
        return SAFE
    command = _command_text(input_json)
    for pattern, reason in _DANGEROUS_PATTERNS:
        if pattern.search(command):
            return DangerAssessment(dangerous=True, reason=reason)
    return SAFE


def _command_text(input_json: str) -> str:
    try:
        payload = json.loads(input_json)
    except json.JSONDecodeError:
        return input_json
    if isinstance(payload, dict) and isinstance(payload.get("command"), str):
        return payload["command"]
    return input_json
