import functools
import inspect
import os
import shutil
import subprocess
from collections.abc import Callable, Mapping
from typing import ParamSpec, TypeVar

import psutil

P = ParamSpec("P")
R = TypeVar("R")


class dry_run_mode:
    """全局预演开关，开启后命令只打印不执行"""

    _enabled: bool = False

    @classmethod
    def enabled(cls) -> bool:
        return cls._enabled

    @classmethod
    def enable(cls, enabled: bool = True) -> None:
        cls._enabled = enabled


class usage_error(Exception):
    """配置或命令行用法错误，入口处以退出码3结束"""

    exit_code: int = 3


class unknown_architecture_error(usage_error):
    arch: str  # 无法识别的架构名
    hint: str  # 修复提示

    def __init__(self, arch: str, hint: str) -> None:
        self.arch = arch
        self.hint = hint
        super().__init__(f'Unknown architecture "{arch}". Make sure the OCAML_ARCH environment variable has been defined.\nSee {hint}')


class unknown_option_error(usage_error):
    option: str  # 无法识别的选项

    def __init__(self, option: str) -> None:
        self.option = option
        super().__init__(f"unknown option {option}")


class command_error(RuntimeError):
    command: str  # 失败的命令
    returncode: int  # 命令退出码

    def __init__(self, command: str, returncode: int) -> None:
        self.command = command
        self.returncode = returncode
        super().__init__(f'Command "{command}" failed with errno={returncode}.')


def _skip_in_dry_run(describe: Callable[..., str | None] | None = None) -> Callable[[Callable[P, R]], Callable[P, R | None]]:
    """先打印describe给出的描述，再决定是否执行被装饰的函数

    被装饰的函数可带dry_run参数，为None时以dry_run_mode为准。describe的参数按名称从被装饰函数的实参中取得。

    Args:
        describe (Callable[..., str | None] | None, optional): 生成描述的回调，返回None时不打印. 默认为不打印.
    """

    def decorator(fn: Callable[P, R]) -> Callable[P, R | None]:
        signature = inspect.signature(fn)
        describe_params = list(inspect.signature(describe).parameters) if describe else []
        missing = [name for name in describe_params if name not in signature.parameters]
        assert not missing, f"{fn.__qualname__} has no parameter named {', '.join(missing)}."

        @functools.wraps(fn)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R | None:
            bound = signature.bind(*args, **kwargs)
            bound.apply_defaults()
            if describe:
                message = describe(*(bound.arguments[name] for name in describe_params))
                if message is not None:
                    print(message)
            dry_run = bound.arguments.get("dry_run")
            if dry_run or (dry_run is None and dry_run_mode.enabled()):
                return None
            return fn(*bound.args, **bound.kwargs)

        return wrapper

    return decorator


class command_runner:
    """运行外部命令的执行器，构建流程只通过该接口调用外部工具"""

    @_skip_in_dry_run(lambda command, echo: f"[ci] + {command}" if echo else None)
    def run(
        self,
        command: str,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        ignore_error: bool = False,
        capture: bool = False,
        echo: bool = True,
        dry_run: bool | None = None,
    ) -> subprocess.CompletedProcess[str] | None:
        """运行指定命令, 若不忽略错误, 则在命令执行出错时抛出command_error, 反之打印错误码

        Args:
            command (str): 要运行的命令，交由shell解释
            cwd (str | None, optional): 运行命令的工作目录，默认为当前目录.
            env (Mapping[str, str] | None, optional): 命令的环境变量，默认继承当前进程.
            ignore_error (bool, optional): 是否忽略错误. 默认不忽略错误.
            capture (bool, optional): 是否捕获命令输出，默认为不捕获.
            echo (bool, optional): 是否回显信息，设置为False将不回显任何信息，包括错误提示，默认为回显.
            dry_run (bool | None, optional): 为True时只打印不执行，为None时由dry_run_mode决定.

        Raises:
            command_error: 命令执行失败且ignore_error为False时抛出异常

        Returns:
            None | subprocess.CompletedProcess[str]: 在命令正常执行结束后返回执行结果，否则返回None
        """

        if capture:
            pipe = subprocess.PIPE  # capture为True，不论是否回显都需要捕获输出
        elif echo:
            pipe = None  # 回显而不捕获输出则正常输出
        else:
            pipe = subprocess.DEVNULL  # 不回显又不捕获输出则丢弃输出
        try:
            return subprocess.run(command, cwd=cwd, env=env, stdout=pipe, stderr=pipe, shell=True, check=True, text=True)
        except subprocess.CalledProcessError as e:
            if not ignore_error:
                raise command_error(command, e.returncode) from e
            if echo:
                print(f'[ci] Command "{command}" failed with errno={e.returncode}, but it is ignored.')
            return None


@_skip_in_dry_run(lambda path: f"[ci] Remove {path}")
def remove_if_exists(path: str, dry_run: bool | None = None) -> None:
    """如果指定路径存在则删除指定路径，删除失败只打印提示

    Args:
        path (str): 要删除的路径
        dry_run (bool | None, optional): 为True时只打印不执行，为None时由dry_run_mode决定.
    """
    if not os.path.lexists(path):
        return
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        else:
            os.remove(path)
    except OSError as e:
        print(f'[ci] Remove "{path}" failed: {e}, but it is ignored.')


@_skip_in_dry_run(lambda names: f"[ci] Kill {', '.join(names)}." if names else None)
def kill_tasks(names: tuple[str, ...], dry_run: bool | None = None) -> int:
    """强制结束名称在列表中的所有进程，错误被忽略

    Args:
        names (tuple[str, ...]): 进程名列表，如ocamlrun.exe
        dry_run (bool | None, optional): 为True时只打印不执行，为None时由dry_run_mode决定.

    Returns:
        int: 被结束的进程数
    """
    killed = 0
    if not names:
        return killed
    wanted = {name.lower() for name in names}
    for process in psutil.process_iter(["name"]):
        name = process.info.get("name") or ""
        if name.lower() not in wanted or process.pid == os.getpid():
            continue
        try:
            process.kill()
            killed += 1
        except psutil.Error as e:
            print(f"[ci] Kill task {name} (pid={process.pid}) failed: {e}, but it is ignored.")
    return killed


def banner(title: str) -> None:
    """打印分节标题"""
    print(f"\n======== {title} ========")


assert __name__ != "__main__", "Import this file instead of running it directly."
