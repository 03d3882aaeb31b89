# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to spell out "git ..." invocations itself.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for the Git queries in this
    file. The checkout itself is not run here: it goes through the cell's
    command runner so its output lands in the cell's step log.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    # If git exits with a non-zero status, CalledProcessError is raised.
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """
    Return the absolute path to the root of the current Git repository.

    Used as the default checkout source when a pipeline declares no
    repository of its own.
    """
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """
    Return the full SHA hash of the current HEAD commit.

    Every cell checks out the same revision, so the SHA is resolved once,
    before the matrix is launched, rather than per cell.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Return the checked-out branch name, or None on a detached HEAD.

    Trigger filters (pull_request branches) compare against this when the
    caller does not pass an explicit --branch.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name


def checkout_commands(repository: str, ref: str, dest: Path) -> List[List[str]]:
    """
    Commands that materialize `repository` at `ref` into `dest`.

    A fresh destination is cloned; an existing checkout (re-run of the same
    workspace) is fetched instead. Either way `ref` is checked out last.
    """
    if (dest / ".git").exists():
        fetch = ["git", "-C", str(dest), "fetch", "--quiet", "origin"]
    else:
        fetch = ["git", "clone", "--quiet", repository, str(dest)]
    return [fetch, ["git", "-C", str(dest), "checkout", "--quiet", ref]]
