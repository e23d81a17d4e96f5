"""Subprocess gateway for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from agent_workbench.errors import ProcessError

logger = logging.getLogger(__name__)

OUTPUT_TAIL_BYTES = 16_384
_READ_SIZE = 4096


@dataclass(slots=True)
class AgentProcessRequest:
    """Everything needed to launch one agent invocation."""

    prompt: str
    workspace_path: Path
    on_output: Callable[[bytes], None]
    resume_session_id: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class AgentProcessHandle(Protocol):
    """Running agent process as seen by the orchestrator."""

    def is_running(self) -> bool: ...

    def wait(self, timeout: float | None = None) -> int: ...

    def check_result(self, *, result_observed: bool) -> None:
        """Raise ``ProcessError`` if the process crashed instead of finishing its protocol."""
        ...

    @property
    def exit_code(self) -> int | None: ...

    @property
    def output(self) -> bytes: ...

    def terminate(self) -> None: ...


class AgentProcessGateway(Protocol):
    def start(self, request: AgentProcessRequest) -> AgentProcessHandle: ...


class CliAgentProcessGateway:
    """Launch the agent from a shell-style command template.

    Supported placeholders: ``{prompt}``, ``{prompt_file}``, ``{workspace}``
    and ``{resume}``. ``{resume}`` expands to ``--resume <id>`` when the
    conversation has a resumable session and to nothing otherwise.
    """

    def __init__(
        self,
        *,
        command_template: str,
        resume_flag: str = "--resume",
        extra_env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.resume_flag = resume_flag
        self.extra_env = dict(extra_env or {})

    def start(self, request: AgentProcessRequest) -> CliAgentProcess:
        prompt_file: Path | None = None
        if "{prompt_file}" in self.command_template:
            prompt_file = _write_prompt_file(request.prompt)

        try:
            run_args = build_run_args(
                command_template=self.command_template,
                prompt=request.prompt,
                prompt_file=prompt_file,
                workspace_path=request.workspace_path,
                resume_arg=self._resume_arg(request.resume_session_id),
            )
        except ProcessError:
            _unlink_quietly(prompt_file)
            raise

        env = os.environ.copy()
        env.update(self.extra_env)
        env.update(request.env)

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=request.workspace_path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except FileNotFoundError as error:
            _unlink_quietly(prompt_file)
            raise ProcessError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            _unlink_quietly(prompt_file)
            raise ProcessError(f"Agent process failed to start: {error}", transient=True) from error

        logger.info("Started agent process pid=%s in %s", process.pid, request.workspace_path)
        return CliAgentProcess(
            process,
            on_output=request.on_output,
            cleanup_paths=(prompt_file,) if prompt_file is not None else (),
        )

    def _resume_arg(self, session_id: str | None) -> str:
        if not session_id:
            return ""
        return f"{self.resume_flag} {shlex.quote(session_id)}"


class CliAgentProcess:
    """``AgentProcessHandle`` over ``subprocess.Popen`` with a reader thread.

    stdout and stderr are merged. The reader thread forwards every read to
    ``on_output`` and keeps a bounded tail of the output for error reports.
    ``is_running`` stays true until the reader has consumed end-of-stream,
    so a caller that drains after ``is_running()`` turns false sees all output.
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        *,
        on_output: Callable[[bytes], None],
        cleanup_paths: tuple[Path, ...] = (),
    ) -> None:
        self._process = process
        self._on_output = on_output
        self._cleanup_paths = cleanup_paths
        self._tail = bytearray()
        self._tail_lock = threading.Lock()
        self._reader = threading.Thread(
            target=self._read_output,
            name=f"agent-output-{process.pid}",
            daemon=True,
        )
        self._reader.start()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def exit_code(self) -> int | None:
        return self._process.poll()

    @property
    def output(self) -> bytes:
        with self._tail_lock:
            return bytes(self._tail)

    def is_running(self) -> bool:
        return self._process.poll() is None or self._reader.is_alive()

    def wait(self, timeout: float | None = None) -> int:
        returncode = self._process.wait(timeout=timeout)
        self._reader.join(timeout=timeout)
        self._cleanup()
        return returncode

    def check_result(self, *, result_observed: bool) -> None:
        returncode = self._process.poll()
        if returncode is None:
            raise ProcessError("Agent process is still running.")
        if returncode == 0 or result_observed:
            return
        tail = self.output.decode("utf-8", errors="replace").strip()[-500:]
        message = f"Agent process exited with code {returncode}"
        if tail:
            message = f"{message}: {tail}"
        raise ProcessError(message, exit_code=returncode, transient=False)

    def terminate(self) -> None:
        _terminate_process(self._process)
        self._reader.join(timeout=2)
        self._cleanup()

    def _read_output(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        fd = stream.fileno()
        while True:
            try:
                data = os.read(fd, _READ_SIZE)
            except OSError:
                break
            if not data:
                break
            with self._tail_lock:
                self._tail.extend(data)
                if len(self._tail) > OUTPUT_TAIL_BYTES:
                    del self._tail[: len(self._tail) - OUTPUT_TAIL_BYTES]
            try:
                self._on_output(data)
            except Exception:  # noqa: BLE001
                logger.exception("Agent output callback failed for pid=%s", self._process.pid)
        stream.close()

    def _cleanup(self) -> None:
        for path in self._cleanup_paths:
            _unlink_quietly(path)


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path | None,
    workspace_path: Path,
    resume_arg: str = "",
) -> list[str]:
    """Render a command template into argv.

    Values are shell-quoted before substitution so the rendered string splits
    back into exactly one argument per value. ``resume_arg`` is inserted as
    already-quoted text.
    """

    stripped = command_template.strip()
    if not stripped:
        raise ProcessError("Agent command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ProcessError("Agent command template must include {prompt} or {prompt_file}.")

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file or "")),
            workspace=shlex.quote(str(workspace_path)),
            resume=resume_arg,
        )
    except (KeyError, IndexError) as error:
        raise ProcessError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProcessError("Agent command template rendered empty command.")
    return argv


def _write_prompt_file(prompt: str) -> Path:
    handle, name = tempfile.mkstemp(prefix="agent-prompt-", suffix=".txt")
    with os.fdopen(handle, "w", encoding="utf-8") as prompt_handle:
        prompt_handle.write(prompt)
    return Path(name)


def _unlink_quietly(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError:
        logger.debug("Could not remove %s", path)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
