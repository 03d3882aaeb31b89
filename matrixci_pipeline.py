# matrixci_pipeline.py
# Build pkg with clang on Ubuntu 24.04: a plain build plus two sanitizer builds.
# configure && make && make check && make install, then archive the install
# tree (plain builds only) and the kyua reports for every cell.
from __future__ import annotations

import matrixci as ci

UBUNTU_PACKAGES = [
    "clang-18",
    "libcurl4-openssl-dev",
    "libsqlite3-dev",
    "libbsd-dev",
    "libarchive-tools",
    "libarchive-dev",
    "libssl-dev",
    "liblzma-dev",
    "liblua5.2-dev",
    "liblzo2-dev",
    "libattr1-dev",
    "libacl1-dev",
    "libatf-dev",
    "kyua",
    "atf-sh",
    "build-essential",
    "zlib1g-dev",
    "libbz2-dev",
    "python3",
    "pkg-config",
    "m4",
]


def pipeline():
    return ci.pipeline(
        "build",
        ci.matrix(
            platforms=["ubuntu-24.04"],
            instrumentation=[
                [],
                ["asan", "lsan"],
                ["ubsan", "tsan"],
            ],
            include=[
                ci.compiler(
                    "clang-18",
                    "ubuntu-24.04",
                    packages=UBUNTU_PACKAGES,
                    bindir="/usr/lib/llvm-18/bin",
                ),
                # macOS needs llvm from brew: the system clang lacks sanitizers
                # ci.compiler(
                #     "clang-19",
                #     "macos-15",
                #     packages=["libarchive", "llvm@19"],
                #     bindir="/opt/homebrew/opt/llvm@19/bin",
                # ),
            ],
        ),
        project="pkg",
        configure_args=["--with-libarchive.pc", "--with-libcurl", "--with-openssl.pc"],
        triggers=[
            ci.trigger("workflow_dispatch"),
            ci.trigger("pull_request", branches=["main"]),
            ci.trigger("push"),
        ],
    )
