import re
import shlex
from collections.abc import Iterable

import ci_common as common

usage = """Usage: ci-main [options]
Options:
  -conf VALUE       Pass VALUE to configure, may be repeated.
  -patch1 PATH      Apply the patch at PATH with "patch -p1" before building.
  -no-native        Do not build the native-code compiler.
  -jN               Build and run tests with N parallel jobs, 1 <= N <= 99.
  -with-bootstrap   Verify that the compiler bootstraps.
  --dry-run         Print the commands instead of running them.
  --help            Print this message and exit."""

_jobs_pattern = re.compile(r"-j[1-9][0-9]?")


class build_options:
    """命令行选项折叠后的结果，创建后不再修改"""

    conf_options: tuple[str, ...]  # 已转义的configure选项，按出现顺序排列
    jobs: str | None  # -jN形式的并发选项
    make_native: bool  # 是否构建本地代码编译器
    bootstrap: bool  # 是否验证自举
    patches: tuple[str, ...]  # 已应用的补丁
    dry_run: bool  # 是否只回显命令
    show_help: bool  # 是否只打印帮助

    def __init__(
        self,
        conf_options: tuple[str, ...] = (),
        jobs: str | None = None,
        make_native: bool = True,
        bootstrap: bool = False,
        patches: tuple[str, ...] = (),
        dry_run: bool = False,
        show_help: bool = False,
    ) -> None:
        object.__setattr__(self, "conf_options", tuple(conf_options))
        object.__setattr__(self, "jobs", jobs)
        object.__setattr__(self, "make_native", make_native)
        object.__setattr__(self, "bootstrap", bootstrap)
        object.__setattr__(self, "patches", tuple(patches))
        object.__setattr__(self, "dry_run", dry_run)
        object.__setattr__(self, "show_help", show_help)

    def __setattr__(self, key: str, value: object) -> None:
        raise AttributeError(f"build_options is read-only, cannot modify {key}.")

    def __eq__(self, other: object) -> bool:
        return isinstance(other, build_options) and vars(self) == vars(other)

    def __repr__(self) -> str:
        return "build_options(" + ", ".join(f"{key}={value!r}" for key, value in vars(self).items()) + ")"

    @property
    def jobs_count(self) -> int | None:
        return int(self.jobs[2:]) if self.jobs else None


def is_jobs_option(token: str) -> bool:
    """是否为-j1至-j99的并发选项"""
    return _jobs_pattern.fullmatch(token) is not None


def apply_patch(path: str, runner: common.command_runner, cwd: str | None = None) -> None:
    """立即应用补丁，去除一级路径前缀，补丁无法完整应用时抛出command_error"""
    runner.run(f"patch -f -p1 < {shlex.quote(path)}", cwd=cwd)


def parse_arguments(tokens: Iterable[str], runner: common.command_runner, cwd: str | None = None) -> build_options:
    """从左到右折叠命令行参数，-patch1会在解析时立即应用

    Args:
        tokens (Iterable[str]): 命令行参数，不含程序名
        runner (common.command_runner): 用于应用补丁的命令执行器
        cwd (str | None, optional): 应用补丁的源码目录.

    Raises:
        common.unknown_option_error: 遇到无法识别的选项，或-conf和-patch1缺少参数

    Returns:
        build_options: 解析结果
    """
    conf_options: list[str] = []
    patches: list[str] = []
    jobs: str | None = None
    make_native = True
    bootstrap = False
    dry_run = False
    show_help = False

    iterator = iter(tokens)
    for token in iterator:
        match token:
            case "-conf" | "-patch1":
                value = next(iterator, None)
                if value is None:
                    raise common.unknown_option_error(token)
                if token == "-conf":
                    conf_options.append(shlex.quote(value))
                else:
                    apply_patch(value, runner, cwd)
                    patches.append(value)
            case "-no-native":
                make_native = False
            case "-with-bootstrap":
                bootstrap = True
            case "--dry-run":
                dry_run = True
                common.dry_run_mode.enable()
            case "--help" | "-help":
                show_help = True
            case _ if is_jobs_option(token):
                jobs = token
            case _:
                raise common.unknown_option_error(token)

    return build_options(
        conf_options=tuple(conf_options),
        jobs=jobs,
        make_native=make_native,
        bootstrap=bootstrap,
        patches=tuple(patches),
        dry_run=dry_run,
        show_help=show_help,
    )


assert __name__ != "__main__", "Import this file instead of running it directly."
