"""Subprocess-based process manager for stream-json CLI agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import IO

from agent_command.backend.base import CliRunRequest, EventCallback
from agent_command.backend.stream_events import ProcessExited, parse_stream_line
from agent_command.errors import SubprocessFailure

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 3


@dataclass(slots=True)
class _RunningProcess:
    request: CliRunRequest
    process: subprocess.Popen[str]
    last_activity: float
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    stderr_lines: deque[str] = field(default_factory=lambda: deque(maxlen=50))


class CLIProcessManager:
    """One subprocess per run.

    Stdout is parsed on a reader thread; a watchdog thread reaps the process
    and enforces the no-progress timeout.
    """

    def __init__(
        self,
        *,
        command_template: str,
        resume_args: str = "--resume {session_id}",
        env: dict[str, str] | None = None,
        graceful_terminate_seconds: float = 2.0,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.command_template = command_template
        self.resume_args = resume_args
        self.env = env
        self.graceful_terminate_seconds = graceful_terminate_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._running: dict[str, _RunningProcess] = {}
        self._lock = threading.Lock()

    def start(self, request: CliRunRequest, on_event: EventCallback) -> None:
        run_args = _build_run_args(
            command_template=self.command_template,
            resume_args=self.resume_args,
            model=request.model,
            prompt=request.prompt,
            resume_session_id=request.resume_session_id,
        )
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        env["AGENT_COMMAND_AGENT_ID"] = request.agent_id
        env["AGENT_COMMAND_TASK_ID"] = request.task_id
        env["AGENT_COMMAND_RUN_ID"] = request.run_id

        with self._lock:
            if request.run_id in self._running:
                raise SubprocessFailure(
                    f"Run {request.run_id} already has a running process.",
                    transient=False,
                    task_id=request.task_id,
                )
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=request.working_directory,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except FileNotFoundError as error:
                raise SubprocessFailure(
                    f"CLI command not found: {run_args[0]}",
                    transient=False,
                    task_id=request.task_id,
                ) from error
            except OSError as error:
                raise SubprocessFailure(
                    f"CLI process failed to start: {error}",
                    transient=True,
                    task_id=request.task_id,
                ) from error
            running = _RunningProcess(
                request=request,
                process=process,
                last_activity=time.monotonic(),
            )
            self._running[request.run_id] = running

        logger.info(
            "Started CLI process pid=%s for task %s (agent %s)",
            process.pid,
            request.task_id,
            request.agent_id,
        )
        stdout_reader = threading.Thread(
            target=self._read_stdout,
            args=(running, on_event),
            daemon=True,
            name=f"cli-stdout-{request.run_id[:8]}",
        )
        stderr_reader = threading.Thread(
            target=self._read_stderr,
            args=(running,),
            daemon=True,
            name=f"cli-stderr-{request.run_id[:8]}",
        )
        stdout_reader.start()
        stderr_reader.start()
        threading.Thread(
            target=self._watch,
            args=(running, on_event, (stdout_reader, stderr_reader)),
            daemon=True,
            name=f"cli-watch-{request.run_id[:8]}",
        ).start()

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            running = self._running.get(run_id)
        if running is None:
            return False
        running.cancel_requested.set()
        logger.info("Cancellation requested for run %s", run_id)
        return True

    def cancel_all(self) -> int:
        with self._lock:
            run_ids = list(self._running)
        return sum(1 for run_id in run_ids if self.cancel(run_id))

    def is_running(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._running

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    def _read_stdout(self, running: _RunningProcess, on_event: EventCallback) -> None:
        stream: IO[str] | None = running.process.stdout
        if stream is None:
            return
        run_id = running.request.run_id
        for line in stream:
            running.last_activity = time.monotonic()
            for event in parse_stream_line(line):
                try:
                    on_event(run_id, event)
                except Exception:
                    logger.exception("Event handler failed for run %s", run_id)

    def _read_stderr(self, running: _RunningProcess) -> None:
        stream: IO[str] | None = running.process.stderr
        if stream is None:
            return
        for line in stream:
            stripped = line.rstrip()
            if stripped:
                running.stderr_lines.append(stripped)

    def _watch(
        self,
        running: _RunningProcess,
        on_event: EventCallback,
        readers: tuple[threading.Thread, ...],
    ) -> None:
        request = running.request
        timed_out = False
        cancelled = False
        while True:
            returncode = running.process.poll()
            if returncode is not None:
                break
            if running.cancel_requested.is_set():
                cancelled = True
                _terminate_process(running.process, self.graceful_terminate_seconds)
                continue
            idle = time.monotonic() - running.last_activity
            if idle >= request.hang_timeout_seconds:
                timed_out = True
                logger.warning(
                    "Task %s made no progress for %.0fs; terminating",
                    request.task_id,
                    idle,
                )
                _terminate_process(running.process, self.graceful_terminate_seconds)
                continue
            time.sleep(self.poll_interval_seconds)

        for reader in readers:
            reader.join(timeout=5)
        with self._lock:
            self._running.pop(request.run_id, None)

        exited = ProcessExited(
            exit_code=returncode,
            stderr_tail="\n".join(list(running.stderr_lines)[-_STDERR_TAIL_LINES:]),
            timed_out=timed_out,
            cancelled=cancelled or running.cancel_requested.is_set(),
        )
        logger.info("CLI process for task %s exited with %s", request.task_id, returncode)
        try:
            on_event(request.run_id, exited)
        except Exception:
            logger.exception("Exit handler failed for run %s", request.run_id)


def _build_run_args(
    *,
    command_template: str,
    resume_args: str,
    model: str,
    prompt: str,
    resume_session_id: str | None,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise SubprocessFailure("CLI command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise SubprocessFailure("CLI command template must include {prompt}.", transient=False)

    try:
        rendered = stripped.format(model=shlex.quote(model), prompt=shlex.quote(prompt))
        if resume_session_id is not None:
            rendered = (
                f"{rendered} {resume_args.format(session_id=shlex.quote(resume_session_id))}"
            )
    except KeyError as error:
        raise SubprocessFailure(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise SubprocessFailure("CLI command template rendered empty command.", transient=False)
    return argv


def _terminate_process(process: subprocess.Popen[str], graceful_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=graceful_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
