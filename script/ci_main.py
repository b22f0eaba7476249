#!/usr/bin/env python3
# -*- coding: utf-8 -*-
import os
import platform
import re
import shlex
import shutil
import sys
from collections.abc import MutableMapping, Sequence

import packaging.version as version
import psutil

import ci_common as common
import ci_options
import ci_platform

# 构建后生成配置文件，先找到的优先
config_file_list = ("Makefile.config", "Makefile.build_config")
# 配置文件中表示只能构建字节码的设置
bytecode_only_marker_list = ("ARCH=none", "NATIVE_COMPILER=false")
# 自举会改写的受版本控制的文件
bootstrap_file_list = ("boot/ocamlc", "boot/ocamllex")
# git restore自该版本起可用
git_restore_version = version.Version("2.23")


class ci_configure:
    """一次CI运行的全部配置，由环境变量和命令行选项构建一次，之后不再修改"""

    arch: str  # 架构名
    profile: ci_platform.platform_profile  # 平台配置
    options: ci_options.build_options  # 命令行选项
    instdir: str  # 临时安装目录
    extra_conf: tuple[str, ...]  # OCAML_CONFIGURE_OPTIONS中的configure选项，已转义
    parallel: str  # PARALLEL环境变量，传给GNU parallel的额外参数
    node_name: str  # 运行构建的节点名
    flambda: bool  # 是否为优化编译器测试任务
    source_dir: str  # 源码树根目录

    def __init__(
        self,
        arch: str,
        profile: ci_platform.platform_profile,
        options: ci_options.build_options,
        instdir: str,
        extra_conf: tuple[str, ...] = (),
        parallel: str = "",
        node_name: str = "",
        flambda: bool = False,
        source_dir: str = ".",
    ) -> None:
        values = {
            "arch": arch,
            "profile": profile,
            "options": options,
            "instdir": instdir,
            "extra_conf": tuple(extra_conf),
            "parallel": parallel,
            "node_name": node_name,
            "flambda": flambda,
            "source_dir": source_dir,
        }
        for key, value in values.items():
            object.__setattr__(self, key, value)

    def __setattr__(self, key: str, value: object) -> None:
        raise AttributeError(f"ci_configure is read-only, cannot modify {key}.")

    @classmethod
    def from_environment(
        cls,
        profile: ci_platform.platform_profile,
        options: ci_options.build_options,
        environ: MutableMapping[str, str],
        source_dir: str,
        pid: int | None = None,
    ) -> "ci_configure":
        """从环境变量读取剩余配置

        Args:
            profile (ci_platform.platform_profile): 平台配置
            options (ci_options.build_options): 命令行选项
            environ (MutableMapping[str, str]): 环境变量
            source_dir (str): 源码树根目录
            pid (int | None, optional): 用于区分临时安装目录的进程号，默认为当前进程号.
        """
        return cls(
            arch=profile.name,
            profile=profile,
            options=options,
            instdir=profile.expand_instdir(pid, environ),
            extra_conf=tuple(shlex.quote(word) for word in shlex.split(environ.get("OCAML_CONFIGURE_OPTIONS", ""))),
            parallel=environ.get("PARALLEL", ""),
            node_name=environ.get("NODE_NAME", ""),
            flambda=environ.get("OCAML_FLAMBDA", "") == "true",
            source_dir=source_dir,
        )


def is_bytecode_only(source_dir: str) -> bool:
    """检查configure生成的配置文件，判断是否只能构建字节码，配置文件不存在时返回False"""
    for name in config_file_list:
        path = os.path.join(source_dir, name)
        if not os.path.exists(path):
            continue
        with open(path) as file:
            for line in file:
                setting = re.sub(r"\s*=\s*", "=", line.strip(), count=1)
                if setting in bytecode_only_marker_list:
                    return True
        return False
    return False


def get_git_version(runner: common.command_runner, cwd: str | None = None) -> version.Version | None:
    """获取git版本，获取失败返回None"""
    result = runner.run("git --version", cwd=cwd, ignore_error=True, capture=True, echo=False)
    if result is None:
        return None
    match = re.search(r"(\d+(?:\.\d+)*)", result.stdout)
    if match is None:
        return None
    try:
        return version.Version(match.group(1))
    except version.InvalidVersion:
        return None


def print_environment_info(runner: common.command_runner, environ: MutableMapping[str, str], argv: Sequence[str]) -> None:
    """打印运行环境信息，便于复现错误，命令失败会被忽略"""
    common.banner("Environment")
    print(f"Operating system: {platform.system()} {platform.release()} ({platform.machine()})")
    runner.run("uname -a", ignore_error=True)
    print(f"Architecture: {environ.get('OCAML_ARCH', '')}")
    print(f"Node: {environ.get('NODE_NAME', '')}")
    print(f"Options: {environ.get('OCAML_CONFIGURE_OPTIONS', '')} {' '.join(argv)}".rstrip())
    print(f"CPUs: {psutil.cpu_count() or 1}, memory: {psutil.virtual_memory().total // 1048576}MiB")


class ci_build:
    """按顺序执行配置、构建、安装和测试，任一命令失败立即抛出command_error"""

    config: ci_configure
    runner: common.command_runner
    environ: MutableMapping[str, str]
    make_native: bool  # 实际是否构建本地代码，会受配置结果影响

    def __init__(self, config: ci_configure, runner: common.command_runner, environ: MutableMapping[str, str]) -> None:
        self.config = config
        self.runner = runner
        self.environ = environ
        self.make_native = config.options.make_native

    def run_command(self, command: str, cwd: str | None = None, ignore_error: bool = False) -> None:
        self.runner.run(command, cwd=cwd or self.config.source_dir, env=self.environ, ignore_error=ignore_error)

    def make(self, *target: str, jobs: bool = False, ignore_error: bool = False, cwd: str | None = None, prefix: str = "") -> None:
        """调用make

        Args:
            target (tuple[str, ...]): 要构建的目标
            jobs (bool, optional): 是否传入并发选项. 默认不传入.
            ignore_error (bool, optional): 是否忽略错误. 默认不忽略.
            cwd (str | None, optional): 工作目录，默认为源码树根目录.
            prefix (str, optional): 命令前缀，用于设置环境变量.
        """
        jobs_option = self.config.options.jobs if jobs else None
        parts = (prefix, self.config.profile.make, jobs_option, "--warn-undefined-variables", *target)
        self.run_command(" ".join(part for part in parts if part), cwd, ignore_error)

    def cleanup(self) -> None:
        """结束残留进程，它们会锁住构建树中的文件"""
        if self.config.profile.cleanup:
            common.kill_tasks(self.config.profile.kill_list)

    def clean_workspace(self) -> None:
        common.banner("Clean")
        self.cleanup()
        self.environ["LC_ALL"] = "C"  # 让gcc在诊断信息中只使用ASCII
        self.run_command(f"{self.config.profile.make} -s distclean", ignore_error=True)
        # distclean不会删除旧版本生成而当前版本不再生成的文件
        self.run_command("git clean -q -f -d -x")

    def configure(self) -> None:
        common.banner("Configure")
        config = self.config
        options = [*config.profile.triplet_options, f"--prefix={shlex.quote(config.instdir)}", *config.extra_conf]
        if not config.options.make_native:
            options.append("--disable-native-compiler")
        options += config.options.conf_options
        self.run_command(" ".join(("./configure", *options)))

    def should_skip(self) -> bool:
        """只能构建字节码时优化编译器测试没有意义，直接跳过"""
        if not is_bytecode_only(self.config.source_dir):
            return False
        self.make_native = False
        return self.config.flambda

    def build(self) -> None:
        common.banner("Build")
        if self.config.options.bootstrap:
            self.make("core", jobs=True)
            self.make("bootstrap", jobs=True)
            if self.make_native:
                self.make("opt.opt", jobs=True)
        else:
            self.make(jobs=True)
        if self.make_native and self.config.profile.check_make_alldepend:
            self.make("alldepend")
        for dll, address in self.config.profile.rebase_list:
            self.run_command(f"rebase -b {address} {dll}")

    def install(self) -> None:
        common.banner("Install")
        self.make("install")
        common.remove_if_exists(self.config.instdir)

    def test(self) -> None:
        common.banner("Test")
        testsuite_dir = os.path.join(self.config.source_dir, "testsuite")
        jobs = self.config.options.jobs
        if jobs and shutil.which("parallel", path=self.environ.get("PATH")):
            parallel = shlex.quote(f"{jobs} {self.config.parallel}".strip())
            self.make("parallel", cwd=testsuite_dir, prefix=f"PARALLEL={parallel}")
        else:
            self.make("all", cwd=testsuite_dir)

    def restore_bootstrap_files(self) -> None:
        """丢弃自举对boot目录的修改"""
        files = " ".join(bootstrap_file_list)
        git_version = get_git_version(self.runner, self.config.source_dir)
        if git_version is not None and git_version >= git_restore_version:
            self.run_command(f"git restore {files}")
        else:
            self.run_command(f"git checkout -- {files}")

    def finish(self) -> None:
        if self.config.profile.cleanup:
            common.banner("Cleanup")
            self.cleanup()
            self.run_command(f"{self.config.profile.make} -s distclean", ignore_error=True)

    def run(self) -> int:
        """执行整个CI流程

        Returns:
            int: 退出码，成功或主动跳过时为0
        """
        self.clean_workspace()
        self.configure()
        if self.should_skip():
            print("[ci] No native compiler available, skipping the flambda test run.")
            return 0
        self.build()
        self.install()
        self.test()
        if self.config.options.bootstrap:
            self.restore_bootstrap_files()
        self.finish()
        return 0


def main(
    argv: Sequence[str] | None = None,
    environ: MutableMapping[str, str] | None = None,
    runner: common.command_runner | None = None,
    source_dir: str | None = None,
) -> int:
    """CI入口，返回进程退出码

    Args:
        argv (Sequence[str] | None, optional): 命令行参数，不含程序名，默认为sys.argv[1:].
        environ (MutableMapping[str, str] | None, optional): 环境变量，默认为os.environ.
        runner (common.command_runner | None, optional): 命令执行器.
        source_dir (str | None, optional): 源码树根目录，默认为当前目录.
    """
    argv = sys.argv[1:] if argv is None else list(argv)
    environ = os.environ if environ is None else environ
    runner = runner or common.command_runner()
    source_dir = os.path.abspath(source_dir or os.getcwd())

    try:
        # 先解析参数，--dry-run需要在执行任何命令前生效
        options = ci_options.parse_arguments(argv, runner, source_dir)
        if options.show_help:
            print(ci_options.usage)
            return 0
        print_environment_info(runner, environ, argv)
        profile = ci_platform.resolve_platform(environ.get("OCAML_ARCH"), environ)
        ci_platform.load_shell_environment(profile, runner, environ, source_dir)
        runner.run(f"{profile.make} --version", cwd=source_dir, ignore_error=True)
        config = ci_configure.from_environment(profile, options, environ, source_dir)
        return ci_build(config, runner, environ).run()
    except common.usage_error as e:
        print(f"[ci] Error: {e}", file=sys.stderr)
        return e.exit_code
    except common.command_error as e:
        print(f"[ci] {e}", file=sys.stderr)
        return exit_code_of(e.returncode)


def exit_code_of(returncode: int) -> int:
    """被信号N终止的子进程返回-N，按shell的习惯转换为128+N"""
    return 128 - returncode if returncode < 0 else returncode


def entry() -> None:
    sys.exit(main())


if __name__ == "__main__":
    entry()
