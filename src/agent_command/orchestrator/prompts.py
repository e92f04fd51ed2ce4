"""Prompt templates for decomposition, sub-agent execution and synthesis."""

from __future__ import annotations

from agent_command.orchestrator.models import (
    OrchestratedSubTask,
    OrchestrationState,
    SubTaskStatus,
)

DECOMPOSITION_PROMPT = """\
You are a task decomposition assistant. Analyze the following user request and break it \
down into independent sub-tasks that can be executed by separate AI agents.

IMPORTANT: You must respond with ONLY a JSON object, no other text. Do not use markdown \
code fences.

User request: {user_prompt}
{project_context}
Respond with this exact JSON structure:
{{"subtasks":[{{"title":"short title","prompt":"detailed instruction for this sub-task",\
"dependencies":[],"can_parallel":true,"estimated_complexity":"low"}}]}}

Rules:
- Maximum {max_subtasks} subtasks
- dependencies is an array of 0-based indices of earlier tasks that must complete before this one
- can_parallel: true if this task may run at the same time as other tasks in its step
- estimated_complexity: "low", "medium", or "high"
- Each prompt should be self-contained and specific
- Respond with ONLY the JSON, nothing else
"""

SYNTHESIS_INSTRUCTIONS = """
Please review all the results above and:
1. Verify that the original request has been fully addressed
2. Fix any remaining issues or inconsistencies between sub-tasks
3. Provide a brief summary of what was accomplished
"""


def build_decomposition_prompt(
    user_prompt: str,
    *,
    max_subtasks: int = 6,
    project_context: str | None = None,
) -> str:
    context_block = f"\nProject context:\n{project_context.strip()}\n" if project_context else ""
    return DECOMPOSITION_PROMPT.format(
        user_prompt=user_prompt.strip(),
        project_context=context_block,
        max_subtasks=max_subtasks,
    )


def build_sub_agent_prompt(
    state: OrchestrationState,
    sub_task: OrchestratedSubTask,
    *,
    context_chars: int = 500,
) -> str:
    """Sub-task prompt plus truncated results of its completed dependencies."""

    lines = [sub_task.prompt]
    context: list[str] = []
    for dependency in sub_task.dependencies:
        source = state.sub_task(dependency)
        if source is None or source.result is None:
            continue
        context.append(f"- {source.title}: {source.result[:context_chars]}")
    if context:
        lines.extend(["", "Context from previous steps:", *context])
    return "\n".join(lines)


def build_aggregate_report(state: OrchestrationState, *, result_chars: int = 800) -> str:
    """Deterministic synthesis: every sub-task with its result or failure reason."""

    sections = [f"Original request: {state.original_prompt}", ""]
    for sub_task in state.sub_tasks:
        label = "COMPLETED" if sub_task.status is SubTaskStatus.COMPLETED else "FAILED"
        sections.append(f"## {sub_task.title} [{label}]")
        if sub_task.status is SubTaskStatus.COMPLETED:
            sections.append((sub_task.result or "")[:result_chars])
        elif sub_task.error is not None:
            sections.append(f"Error: {sub_task.error.message}")
        else:
            sections.append("Error: not executed")
        sections.append("")
    sections.append(
        f"{state.completed_count} of {len(state.sub_tasks)} sub-task(s) completed, "
        f"{state.failed_count} failed.",
    )
    return "\n".join(sections)


def build_synthesis_prompt(state: OrchestrationState, *, result_chars: int = 800) -> str:
    return (
        "You are synthesizing the results of a multi-agent task execution.\n\n"
        "The following sub-tasks were executed by separate agents:\n\n"
        f"{build_aggregate_report(state, result_chars=result_chars)}\n"
        f"{SYNTHESIS_INSTRUCTIONS}"
    )
