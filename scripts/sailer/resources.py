"""Host resources a deployment needs: a loopback port and a persistent volume."""

from __future__ import annotations

import socket
import sys
import threading
from typing import Any, Iterable, Mapping

from scripts.sailer.errors import LaunchFailure


class PortAllocator:
    """Hands out free loopback TCP ports.

    The kernel picks the port (bind to port 0); the lock and the reserved set
    make sure two allocations in this process never return the same port even
    if the kernel recycles one between release and use.
    """

    def __init__(self, *, host: str = "127.0.0.1", max_attempts: int = 50):
        self.host = host
        self.max_attempts = max_attempts
        self._lock = threading.Lock()
        self._reserved: set[int] = set()

    def _probe(self) -> int:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((self.host, 0))
            return int(sock.getsockname()[1])

    def allocate(self, reserved: Iterable[int] = ()) -> int:
        """Return a free port that is neither handed out before nor in `reserved`.

        `reserved` holds ports owned by known deployments that may not be
        listening right now (stopped, or between remove and run on update).
        """
        taken = {int(p) for p in reserved}
        with self._lock:
            for _ in range(self.max_attempts):
                port = self._probe()
                if port in self._reserved or port in taken:
                    continue
                self._reserved.add(port)
                return port
        raise RuntimeError(f"Could not find a free port on {self.host} after {self.max_attempts} attempts")

    def release(self, port: int) -> None:
        with self._lock:
            self._reserved.discard(port)


def _image_config(image_info: Mapping[str, Any]) -> dict[str, Any]:
    # Current docker puts image metadata under `Config`; older engines used `ContainerConfig`.
    for key in ("Config", "ContainerConfig"):
        block = image_info.get(key)
        if isinstance(block, dict) and block:
            return block
    return {}


def create_volume(docker, deployment_id: str) -> str:
    docker.create_volume(deployment_id)
    return volume_mountpoint(docker, deployment_id)


def volume_mountpoint(docker, deployment_id: str) -> str:
    info = docker.inspect_volume(deployment_id)
    mountpoint = str(info.get("Mountpoint") or "").strip()
    if not mountpoint:
        raise RuntimeError(f"Volume '{deployment_id}' has no mountpoint")
    return mountpoint


def resolve_published_port(docker, image: str, pinned: int | str | None = None) -> str:
    """Container port to publish. Only one port per deployment is supported."""
    if pinned not in (None, ""):
        return str(pinned)

    exposed = _image_config(docker.inspect_image(image)).get("ExposedPorts") or {}
    ports = [str(p).split("/")[0] for p in exposed]
    if not ports:
        raise LaunchFailure(
            f"Image '{image}' does not expose any port",
            hint="Add an EXPOSE instruction to the Dockerfile or pass --port.",
        )
    if len(ports) > 1:
        print(
            f"⚠️  [sailer] Image exposes several ports {ports}; only {ports[0]} is published.",
            file=sys.stderr,
        )
    return ports[0]


def resolve_working_dir(docker, image: str) -> str:
    return str(_image_config(docker.inspect_image(image)).get("WorkingDir") or "").strip()


def recorded_host_ports(containers: Mapping[str, Any] | None) -> set[int]:
    """Host ports stored in the containers directory."""
    ports: set[int] = set()
    for entry in (containers or {}).values():
        if not isinstance(entry, Mapping):
            continue
        raw = str(entry.get("port") or "").strip()
        if raw.isdigit():
            ports.add(int(raw))
    return ports


def resolve_existing_host_port(docker, record: Mapping[str, Any] | None, container: str) -> int | None:
    """Host port of an existing deployment: stored record first, then the container's bindings."""
    if record:
        raw = str(record.get("port") or "").strip()
        if raw.isdigit():
            return int(raw)

    info = docker.inspect_container(container)
    if not info:
        return None
    bindings = (info.get("HostConfig") or {}).get("PortBindings") or {}
    for entries in bindings.values():
        for entry in entries or []:
            raw = str((entry or {}).get("HostPort") or "").strip()
            if raw.isdigit():
                return int(raw)
    return None
