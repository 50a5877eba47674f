"""Persisted local state (containers directory, stored tokens, services).

The document is a small YAML mapping:

    containers:
      <uid>: {domain: ..., uid: ..., repo: ..., port: ...}
    tokens:
      github: <token>
      git.example.com: {username: ..., token: ...}
    services:
      <uid>: {name: ..., uid: ..., password: ...}

Writers go through `StateStore.update()`, which holds a thread lock and an
exclusive `flock` on a sibling `.lock` file for the whole read-modify-write and
replaces the file atomically.
"""

from __future__ import annotations

import contextlib
import fcntl
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Iterator

import yaml


class StateStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.lock_path, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse state file {self.path}: {e}") from e
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise RuntimeError(f"State file {self.path} is not a mapping")
        return payload

    def _write(self, payload: dict[str, Any]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix=self.path.name + ".", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(payload, f, sort_keys=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise

    def load(self) -> dict[str, Any]:
        with self._locked():
            return self._read()

    def get(self, key: str) -> Any:
        return self.load().get(key)

    def update(self, mutate: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        """Apply `mutate` to the current document and persist the result."""
        with self._locked():
            payload = self._read()
            mutate(payload)
            self._write(payload)
            return payload

    def containers(self) -> dict[str, dict[str, Any]]:
        return dict(self.get("containers") or {})

    def tokens(self) -> dict[str, Any]:
        return dict(self.get("tokens") or {})

    def services(self) -> dict[str, dict[str, Any]]:
        return dict(self.get("services") or {})
