from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from agent_workbench.agent.process import (
    AgentProcessRequest,
    CliAgentProcessGateway,
    build_run_args,
)
from agent_workbench.errors import ProcessError

pytestmark = [
    allure.epic("Agent Runs"),
    allure.feature("Agent Process"),
]


def _python_command(code: str, *extra: str) -> str:
    return " ".join([shlex.quote(sys.executable), "-c", shlex.quote(code), *extra])


def _start(gateway: CliAgentProcessGateway, tmp_path: Path, prompt: str = "hi"):
    received: list[bytes] = []
    handle = gateway.start(
        AgentProcessRequest(
            prompt=prompt,
            workspace_path=tmp_path,
            on_output=received.append,
        ),
    )
    handle.wait(timeout=30)
    return handle, b"".join(received)


def test_build_run_args_keeps_prompt_as_one_argument(tmp_path: Path) -> None:
    argv = build_run_args(
        command_template="agent --force {resume} -p {prompt}",
        prompt="it's a \"quoted\" task; rm -rf /",
        prompt_file=None,
        workspace_path=tmp_path,
    )

    assert argv == ["agent", "--force", "-p", "it's a \"quoted\" task; rm -rf /"]


def test_build_run_args_inserts_resume_and_workspace(tmp_path: Path) -> None:
    workspace = tmp_path / "with space"

    argv = build_run_args(
        command_template="agent --cwd {workspace} {resume} -p {prompt}",
        prompt="go",
        prompt_file=None,
        workspace_path=workspace,
        resume_arg="--resume sess-1",
    )

    assert argv == ["agent", "--cwd", str(workspace), "--resume", "sess-1", "-p", "go"]


@pytest.mark.parametrize(
    ("template", "match"),
    [
        ("   ", "empty"),
        ("agent --print", "must include"),
        ("agent {model} -p {prompt}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(tmp_path: Path, template: str, match: str) -> None:
    with pytest.raises(ProcessError, match=match):
        build_run_args(
            command_template=template,
            prompt="go",
            prompt_file=None,
            workspace_path=tmp_path,
        )


def test_missing_agent_binary_is_not_transient(tmp_path: Path) -> None:
    gateway = CliAgentProcessGateway(command_template="no-such-agent-binary-xyz -p {prompt}")

    with pytest.raises(ProcessError, match="Agent command not found") as error:
        _start(gateway, tmp_path)

    assert error.value.transient is False


def test_process_output_is_forwarded_and_env_is_passed(tmp_path: Path) -> None:
    code = (
        "import os, sys; "
        "print(os.environ['AGENT_KEY']); print(sys.argv[1]); print(os.getcwd())"
    )
    gateway = CliAgentProcessGateway(
        command_template=_python_command(code, "{prompt}"),
        extra_env={"AGENT_KEY": "secret"},
    )

    handle, output = _start(gateway, tmp_path, prompt="task text")

    assert handle.exit_code == 0
    assert handle.is_running() is False
    key, prompt, cwd = output.decode().splitlines()
    assert (key, prompt) == ("secret", "task text")
    assert Path(cwd).samefile(tmp_path)
    handle.check_result(result_observed=False)


def test_prompt_file_placeholder_passes_prompt_through_a_file(tmp_path: Path) -> None:
    code = "import pathlib, sys; print(pathlib.Path(sys.argv[1]).read_text())"
    gateway = CliAgentProcessGateway(command_template=_python_command(code, "{prompt_file}"))

    _, output = _start(gateway, tmp_path, prompt="prompt from file")

    assert output.decode().strip() == "prompt from file"


def test_nonzero_exit_without_result_raises_with_output_tail(tmp_path: Path) -> None:
    code = "import sys; print('fatal: boom', file=sys.stderr); sys.exit(4)"
    gateway = CliAgentProcessGateway(command_template=_python_command(code, "{prompt}"))

    handle, _ = _start(gateway, tmp_path)

    with pytest.raises(ProcessError, match="exited with code 4: fatal: boom") as error:
        handle.check_result(result_observed=False)
    assert error.value.exit_code == 4
    handle.check_result(result_observed=True)


def test_terminate_stops_long_running_process(tmp_path: Path) -> None:
    code = "import time; time.sleep(60)"
    gateway = CliAgentProcessGateway(command_template=_python_command(code, "{prompt}"))
    handle = gateway.start(
        AgentProcessRequest(prompt="x", workspace_path=tmp_path, on_output=lambda _: None),
    )
    assert handle.is_running() is True

    handle.terminate()

    assert handle.is_running() is False
    assert handle.exit_code is not None
