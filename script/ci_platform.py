import os
import shlex
import types
from collections.abc import Callable, MutableMapping

import ci_common as common

configure_url_template = "https://ci.inria.fr/ocaml/job/${JOB_NAME}/configure"
default_instdir = os.path.join("$HOME", "ocaml-tmp-install")

# Windows下清理时需结束的残留进程，它们会锁住构建树中的文件
windows_task_list = ("ocamlrun.exe", "ocamlc.opt.exe", "ocamlopt.opt.exe", "flexlink.exe")


class platform_profile:
    """平台相关的构建配置，创建后不再修改"""

    name: str  # 架构名，即OCAML_ARCH的取值
    build: str | None  # build平台
    host: str | None  # host平台
    instdir: str  # 安装目录模板，可包含环境变量
    init_commands: tuple[str, ...]  # 输出export语句的shell命令，结果会载入环境变量
    path_prefixes: tuple[str, ...]  # 需添加到PATH最前方的目录
    make: str  # make工具名
    check_make_alldepend: bool  # 本地构建后是否检查依赖完整性
    cleanup: bool  # 是否在构建前后清理残留进程和构建树
    rebase_list: tuple[tuple[str, str], ...]  # cygwin下需重定基址的dll，tuple[dll, 基址]
    kill_list: tuple[str, ...]  # 清理时需要结束的进程名

    def __init__(
        self,
        name: str,
        build: str | None = None,
        host: str | None = None,
        instdir: str = default_instdir,
        init_commands: tuple[str, ...] = (),
        path_prefixes: tuple[str, ...] = (),
        make: str = "make",
        check_make_alldepend: bool = False,
        cleanup: bool = False,
        rebase_list: tuple[tuple[str, str], ...] = (),
    ) -> None:
        self.name = name
        self.build = build
        self.host = host
        self.instdir = instdir
        self.init_commands = init_commands
        self.path_prefixes = path_prefixes
        self.make = make
        self.check_make_alldepend = check_make_alldepend
        self.cleanup = cleanup
        self.rebase_list = rebase_list
        self.kill_list = windows_task_list if cleanup else ()

    def __setattr__(self, key: str, value: object) -> None:
        if key in self.__dict__:
            raise AttributeError(f"platform_profile is read-only, cannot modify {key}.")
        super().__setattr__(key, value)

    def __repr__(self) -> str:
        return f"platform_profile({self.name!r}, build={self.build!r}, host={self.host!r})"

    @property
    def triplet_options(self) -> list[str]:
        """传给configure的--build和--host选项"""
        options: list[str] = []
        if self.build:
            options.append(f"--build={self.build}")
        if self.host:
            options.append(f"--host={self.host}")
        return options

    def expand_instdir(self, pid: int | None = None, environ: MutableMapping[str, str] | None = None) -> str:
        """展开安装目录模板并追加进程号，保证两次构建不会使用同一安装目录

        Args:
            pid (int | None, optional): 追加的进程号，默认为当前进程号.
            environ (MutableMapping[str, str] | None, optional): 展开模板所用的环境变量，默认为os.environ.

        Returns:
            str: 临时安装目录
        """
        environ = os.environ if environ is None else environ
        path = self.instdir
        for key in ("HOME", "USERPROFILE"):
            # 变量未设置时退回用户目录，避免安装到文件系统根目录
            path = path.replace(f"${key}", environ.get(key) or os.path.expanduser("~"))
        return f"{path}-{os.getpid() if pid is None else pid}"


_profile_list: dict[str, platform_profile] = {}
# 只读视图，避免运行时修改平台表
profile_list = types.MappingProxyType(_profile_list)


def register(fn: Callable[[], platform_profile | tuple[platform_profile, ...]]) -> Callable[[], platform_profile | tuple[platform_profile, ...]]:
    """注册平台配置到列表，函数返回的每个配置以其name为键

    Args:
        fn (function): 返回平台配置的函数
    """
    result = fn()
    for profile in result if isinstance(result, tuple) else (result,):
        assert profile.name not in _profile_list, f'Duplicate platform "{profile.name}".'
        _profile_list[profile.name] = profile
    return fn


@register
def bsd_profile() -> tuple[platform_profile, ...]:
    return platform_profile("bsd", make="gmake"), platform_profile("solaris", make="gmake")


@register
def macos_profile() -> platform_profile:
    return platform_profile("macos")


@register
def linux_profile() -> platform_profile:
    return platform_profile("linux", check_make_alldepend=True)


@register
def cygwin_profile() -> tuple[platform_profile, ...]:
    # 32位cygwin的fork问题需要给dll重新指定基址
    rebase_list = (("otherlibs/unix/dllunix.so", "0x7cd20000"), ("otherlibs/systhreads/dllthreads.so", "0x7cdc0000"))
    return (
        platform_profile("cygwin", cleanup=True, check_make_alldepend=True, rebase_list=rebase_list),
        platform_profile("cygwin64", cleanup=True, check_make_alldepend=True),
    )


@register
def mingw_profile() -> tuple[platform_profile, ...]:
    return (
        platform_profile(
            "mingw",
            build="i686-pc-cygwin",
            host="i686-w64-mingw32",
            instdir="C:/ocamlmgw",
            path_prefixes=("/usr/i686-w64-mingw32/sys-root/mingw/bin",),
            check_make_alldepend=True,
            cleanup=True,
        ),
        platform_profile(
            "mingw64",
            build="i686-pc-cygwin",
            host="x86_64-w64-mingw32",
            instdir="C:/ocamlmgw64",
            path_prefixes=("/usr/x86_64-w64-mingw32/sys-root/mingw/bin",),
            check_make_alldepend=True,
            cleanup=True,
        ),
    )


@register
def msvc_profile() -> tuple[platform_profile, ...]:
    return (
        platform_profile(
            "msvc",
            build="i686-pc-cygwin",
            host="i686-pc-windows",
            instdir="C:/ocamlms",
            init_commands=("tools/msvs-promote-path",),
            cleanup=True,
        ),
        platform_profile(
            "msvc64",
            build="x86_64-pc-cygwin",
            host="x86_64-pc-windows",
            instdir="C:/ocamlms64",
            init_commands=("tools/msvs-promote-path",),
            cleanup=True,
        ),
    )


def configure_url(environ: MutableMapping[str, str] | None = None) -> str:
    """生成配置CI任务的网址，用于提示用户设置OCAML_ARCH"""
    environ = os.environ if environ is None else environ
    return configure_url_template.replace("${JOB_NAME}", environ.get("JOB_NAME", "<job>"))


def resolve_platform(arch: str | None, environ: MutableMapping[str, str] | None = None) -> platform_profile:
    """根据架构名查找平台配置

    Args:
        arch (str | None): 架构名，通常来自OCAML_ARCH环境变量
        environ (MutableMapping[str, str] | None, optional): 生成提示网址所用的环境变量.

    Raises:
        unknown_architecture_error: 架构名未注册

    Returns:
        platform_profile: 对应的平台配置
    """
    profile = profile_list.get(arch or "")
    if profile is None:
        raise common.unknown_architecture_error(arch or "", configure_url(environ))
    return profile


def parse_export_lines(output: str) -> dict[str, str]:
    """解析形如export NAME=value或NAME=value的输出行"""
    result: dict[str, str] = {}
    for line in output.splitlines():
        try:
            words = shlex.split(line, comments=True)
        except ValueError:
            continue
        if words[:1] == ["export"]:
            words = words[1:]
        for word in words:
            name, sep, value = word.partition("=")
            if sep and name.isidentifier():
                result[name] = value
    return result


def load_shell_environment(
    profile: platform_profile,
    runner: common.command_runner,
    environ: MutableMapping[str, str] | None = None,
    cwd: str | None = None,
) -> dict[str, str]:
    """执行平台的初始化命令并把其输出的变量载入环境变量，同时添加PATH前缀

    Args:
        profile (platform_profile): 平台配置
        runner (common.command_runner): 命令执行器
        environ (MutableMapping[str, str] | None, optional): 要修改的环境变量，默认为os.environ.
        cwd (str | None, optional): 运行初始化命令的目录.

    Returns:
        dict[str, str]: 被设置的变量
    """
    environ = os.environ if environ is None else environ
    loaded: dict[str, str] = {}
    for command in profile.init_commands:
        result = runner.run(command, cwd=cwd, capture=True)
        if result is not None:
            loaded.update(parse_export_lines(result.stdout))
    if profile.path_prefixes:
        path = loaded.get("PATH", environ.get("PATH", ""))
        loaded["PATH"] = os.pathsep.join((*profile.path_prefixes, path)) if path else os.pathsep.join(profile.path_prefixes)
    environ.update(loaded)
    return loaded


assert __name__ != "__main__", "Import this file instead of running it directly."
