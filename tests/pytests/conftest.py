from __future__ import annotations

import subprocess
import sys
import threading
from pathlib import Path

import pytest


def pytest_configure() -> None:
    # Allow tests to import `scripts.*` as a package.
    repo_root = Path(__file__).parents[2]
    sys.path.append(str(repo_root))


class FakeDocker:
    """In-memory stand-in for DockerCli."""

    def __init__(self, *, build_returncode: int = 0, exposed: dict | None = None, workdir: str = "/app"):
        self.build_returncode = build_returncode
        self.exposed = {"8080/tcp": {}} if exposed is None else exposed
        self.workdir = workdir
        self.run_error: Exception | None = None
        self.calls: list[tuple] = []
        self.volumes: dict[str, str] = {}
        self.containers: dict[str, int] = {}
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]

    def create_volume(self, name: str) -> None:
        self._record("volume_create", name)
        self.volumes.setdefault(name, f"/var/lib/docker/volumes/{name}/_data")

    def inspect_volume(self, name: str) -> dict:
        self._record("volume_inspect", name)
        return {"Name": name, "Mountpoint": self.volumes[name]}

    def build(self, *, context_dir: str, image_tag: str, build_args: list[str] | None = None) -> int:
        self._record("build", image_tag, context_dir, tuple(build_args or []))
        return self.build_returncode

    def inspect_image(self, tag: str) -> dict:
        return {"Config": {"ExposedPorts": self.exposed, "WorkingDir": self.workdir}}

    def run(self, **kwargs) -> str:
        self._record("run", kwargs)
        if self.run_error is not None:
            raise self.run_error
        self.containers[kwargs["name"]] = kwargs["host_port"]
        return "container-id"

    def stop(self, name: str) -> bool:
        self._record("stop", name)
        return name in self.containers

    def remove(self, name: str) -> bool:
        self._record("remove", name)
        return self.containers.pop(name, None) is not None

    def inspect_container(self, name: str) -> dict | None:
        if name not in self.containers:
            return None
        port = self.containers[name]
        return {"HostConfig": {"PortBindings": {"8080/tcp": [{"HostIp": "127.0.0.1", "HostPort": str(port)}]}}}


class FakeGit:
    def __init__(self):
        self.clones: list[tuple[str, Path]] = []
        self.pulls: list[Path] = []
        self.clone_error: Exception | None = None

    def clone(self, url: str, dest: Path) -> None:
        self.clones.append((url, dest))
        if self.clone_error is not None:
            raise self.clone_error

    def pull(self, path: Path) -> None:
        self.pulls.append(path)


class FakeMaster:
    def __init__(self, *, linked: bool = False, error: Exception | None = None):
        self.linked = linked
        self.error = error
        self.registered: list[dict] = []

    def is_linked(self) -> bool:
        return self.linked

    def register_container(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.registered.append(kwargs)


@pytest.fixture
def fake_docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fake_master() -> FakeMaster:
    return FakeMaster()


@pytest.fixture
def called_process_error():
    def make(returncode: int = 1, stderr: str = "") -> subprocess.CalledProcessError:
        return subprocess.CalledProcessError(returncode, ["cmd"], output="", stderr=stderr)

    return make
