"""Tests for toolchain resolution and the command builders fed by it."""
from __future__ import annotations

import pytest

from matrixci.errors import UnresolvedToolchain
from matrixci.git_facts.git import checkout_commands
from matrixci.model import CellSpec, Compiler, Platform, parse_flags
from matrixci.step_workflows.autotools import build_command, configure_command, install_command
from matrixci.step_workflows.provision import provision_commands
from matrixci.toolchain import resolve, resolve_cell

from conftest import make_tool_dir

UBUNTU = Platform("ubuntu-24.04")
MACOS = Platform("macos-15", family="macos")


class TestResolve:
    def test_tools_from_bindir(self, tmp_path, llvm_bindir):
        tc = resolve(UBUNTU, Compiler("clang-18", "ubuntu-24.04", bindir=str(llvm_bindir)), tmp_path / "cell")
        env = tc.as_env()
        assert env["CC"] == str(llvm_bindir / "clang")
        assert env["CXX"] == str(llvm_bindir / "clang++")
        assert env["CPP"] == str(llvm_bindir / "clang-cpp")
        assert env["CC_FOR_BUILD"] == env["CC"]
        assert int(env["NPROC"]) >= 1
        assert env["SRC_PKG"] == str((tmp_path / "cell" / "src.pkg").resolve())
        assert env["INST_PKG"] == str((tmp_path / "cell" / "inst.pkg").resolve())

    def test_missing_tool_names_role_and_search_path(self, tmp_path):
        bindir = make_tool_dir(tmp_path / "bin", tools=("clang", "clang++"))
        compiler = Compiler("clang-18", "ubuntu-24.04", bindir=str(bindir))
        with pytest.raises(UnresolvedToolchain) as exc:
            resolve(UBUNTU, compiler, tmp_path / "cell")
        err = exc.value
        assert err.step == "environment"
        assert err.details["role"] == "preprocessor"
        assert err.details["tool"] == "clang-cpp"
        assert err.details["searched"] == str(bindir)

    def test_non_executable_file_is_not_a_tool(self, tmp_path, llvm_bindir):
        (llvm_bindir / "clang").chmod(0o644)
        with pytest.raises(UnresolvedToolchain, match="'clang'"):
            resolve(UBUNTU, Compiler("clang-18", "ubuntu-24.04", bindir=str(llvm_bindir)), tmp_path)

    def test_path_lookup_without_bindir(self, tmp_path, llvm_bindir, monkeypatch):
        monkeypatch.setenv("PATH", str(llvm_bindir))
        tc = resolve(UBUNTU, Compiler("clang-18", "ubuntu-24.04"), tmp_path)
        assert tc.tools["compiler"] == str(llvm_bindir / "clang")

    def test_platform_mismatch(self, tmp_path, llvm_bindir):
        with pytest.raises(ValueError, match="declared for 'ubuntu-24.04'"):
            resolve(MACOS, Compiler("clang-18", "ubuntu-24.04", bindir=str(llvm_bindir)), tmp_path)

    def test_compiler_env_exported(self, tmp_path, llvm_bindir):
        compiler = Compiler("clang-18", "ubuntu-24.04", bindir=str(llvm_bindir), env=(("PKG_CONFIG_PATH", "/x"),))
        tc = resolve_cell(CellSpec(UBUNTU, compiler), tmp_path)
        assert tc.as_env()["PKG_CONFIG_PATH"] == "/x"


class TestAutotools:
    def test_configure_adds_one_option_per_flag(self, tmp_path, llvm_bindir):
        compiler = Compiler("clang-18", "ubuntu-24.04", bindir=str(llvm_bindir))
        cell = CellSpec(UBUNTU, compiler, parse_flags(["tsan", "ubsan"]))
        tc = resolve_cell(cell, tmp_path)
        cmd = configure_command(cell, tc, configure_args=["--with-libcurl"])
        assert cmd == [
            str(tc.source / "configure"),
            f"--prefix={tc.install}",
            "--with-libcurl",
            "--with-ubsan",
            "--with-tsan",
        ]

    def test_make_commands(self, tmp_path, llvm_bindir):
        tc = resolve(UBUNTU, Compiler("clang-18", "ubuntu-24.04", bindir=str(llvm_bindir)), tmp_path)
        assert build_command(tc) == ["make", f"-j{tc.parallelism}"]
        assert install_command() == ["make", "install"]


class TestProvision:
    def test_nothing_declared(self):
        assert provision_commands(UBUNTU, Compiler("clang-18", "ubuntu-24.04")) == []

    def test_apt_refresh_is_tolerated(self):
        cmds = provision_commands(UBUNTU, Compiler("clang-18", "ubuntu-24.04", packages=("clang-18", "kyua")))
        assert cmds[0].tolerate_failure
        assert "update" in cmds[0].argv
        assert not cmds[1].tolerate_failure
        assert cmds[1].argv[-2:] == ["clang-18", "kyua"]

    def test_brew_on_macos(self):
        cmds = provision_commands(MACOS, Compiler("clang-19", "macos-15", packages=("llvm@19",)))
        assert cmds[1].argv == ["brew", "install", "llvm@19"]

    def test_unknown_family(self):
        with pytest.raises(ValueError, match="platform family 'freebsd'"):
            provision_commands(Platform("freebsd-14", family="freebsd"), Compiler("cc", "freebsd-14", packages=("kyua",)))


class TestCheckout:
    def test_fresh_clone(self, tmp_path):
        dest = tmp_path / "src.pkg"
        clone, checkout = checkout_commands("https://example.invalid/pkg.git", "main", dest)
        assert clone == ["git", "clone", "--quiet", "https://example.invalid/pkg.git", str(dest)]
        assert checkout == ["git", "-C", str(dest), "checkout", "--quiet", "main"]

    def test_existing_checkout_is_fetched(self, tmp_path):
        dest = tmp_path / "src.pkg"
        (dest / ".git").mkdir(parents=True)
        fetch, _ = checkout_commands("https://example.invalid/pkg.git", "main", dest)
        assert fetch[:4] == ["git", "-C", str(dest), "fetch"]
