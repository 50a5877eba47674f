"""Clone/pull through the `git` CLI."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

from scripts.sailer.errors import StageTimeout
from scripts.sailer.repo_url import redact_clone_url


def build_git_clone_cmd(*, url: str, dest: Path) -> list[str]:
    return ["git", "clone", "--quiet", url, str(dest)]


def build_git_pull_cmd(*, path: Path) -> list[str]:
    return ["git", "-C", str(path), "pull", "--quiet"]


class GitCli:
    def __init__(self, *, timeout: int = 600, verbose: bool = True):
        self.timeout = timeout
        self.verbose = verbose

    def _run(self, cmd: list[str], *, shown: str) -> None:
        if self.verbose:
            print(f"[git] {shown}")
        # No interactive credential prompts.
        env = dict(os.environ, GIT_TERMINAL_PROMPT="0")
        try:
            subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=self.timeout, env=env)
        except subprocess.TimeoutExpired as e:
            raise StageTimeout(f"'{shown}' did not finish within {self.timeout}s") from e

    def clone(self, url: str, dest: Path) -> None:
        cmd = build_git_clone_cmd(url=url, dest=dest)
        self._run(cmd, shown=f"git clone {redact_clone_url(url)} {dest}")

    def pull(self, path: Path) -> None:
        self._run(build_git_pull_cmd(path=path), shown=f"git -C {path} pull")
