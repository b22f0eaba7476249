import subprocess

import pytest

import ci_common as common


class fake_runner(common.command_runner):
    """记录命令而不执行，按命令前缀返回预设的退出码和输出"""

    def __init__(self, results: dict[str, tuple[int, str]] | None = None, hooks: dict | None = None) -> None:
        self.calls: list[dict] = []
        self.results = results or {}
        self.hooks = hooks or {}

    @property
    def commands(self) -> list[str]:
        return [call["command"] for call in self.calls]

    def run(self, command, cwd=None, env=None, ignore_error=False, capture=False, echo=True, dry_run=None):
        self.calls.append({"command": command, "cwd": cwd, "ignore_error": ignore_error})
        for prefix, hook in self.hooks.items():
            if command.startswith(prefix):
                hook(command, cwd)
        returncode, stdout = 0, ""
        for prefix, result in self.results.items():
            if command.startswith(prefix):
                returncode, stdout = result
                break
        if returncode != 0:
            if ignore_error:
                return None
            raise common.command_error(command, returncode)
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr="")


@pytest.fixture
def runner():
    return fake_runner()


@pytest.fixture(autouse=True)
def reset_dry_run():
    common.dry_run_mode.enable(False)
    yield
    common.dry_run_mode.enable(False)
