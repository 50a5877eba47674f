"""Auxiliary services (databases and other sidecars) a deployment can attach to.

Service containers are created elsewhere; this module only knows their
records in the local state (`services` mapping) and turns them into docker
arguments. Each service gets its own network and two variables:

    --network <uid> -e <NAME>_ROOT_PASSWORD=<password> -e <NAME>_HOSTNAME=<uid>

Build time uses `--build-arg` instead of `-e`.
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Iterable

from scripts.sailer.errors import ServiceNotFound
from scripts.sailer.state_store import StateStore


@dataclass(frozen=True)
class ServiceBinding:
    name: str
    network: str
    password: str

    @property
    def env_prefix(self) -> str:
        return self.name.replace("-", "_").upper()


@dataclass(frozen=True)
class ServiceRecord:
    name: str
    uid: str
    password: str


def new_service_record(name: str) -> ServiceRecord:
    name = name.strip().lower()
    if not name:
        raise ValueError("Service name must be non-empty")
    return ServiceRecord(
        name=name,
        uid=f"sailer-{name}-{uuid.uuid4().hex[:8]}",
        password=secrets.token_urlsafe(24),
    )


def save_service(store: StateStore, record: ServiceRecord, master=None) -> None:
    """Persist a service record and announce it to the master server when linked."""

    def mutate(payload: dict[str, Any]) -> None:
        services = payload.get("services")
        if not isinstance(services, dict):
            services = {}
        services[record.uid] = asdict(record)
        payload["services"] = services

    store.update(mutate)
    if master is not None and master.is_linked():
        master.get_or_create_service(name=record.name)


def service_args(bindings: Iterable[ServiceBinding], *, build: bool = True) -> list[str]:
    env_flag = "--build-arg" if build else "-e"
    args: list[str] = []
    for b in bindings:
        args.extend(
            [
                "--network",
                b.network,
                env_flag,
                f"{b.env_prefix}_ROOT_PASSWORD={b.password}",
                env_flag,
                f"{b.env_prefix}_HOSTNAME={b.network}",
            ]
        )
    return args


class ServiceDirectory:
    def __init__(self, store: StateStore):
        self.store = store

    def resolve(self, names: Iterable[str]) -> list[ServiceBinding]:
        """Bindings for the requested services, in request order. Matches on name or uid."""
        wanted = [n.strip() for n in names if n and n.strip()]
        if not wanted:
            return []

        records = [r for r in self.store.services().values() if isinstance(r, dict)]
        bindings: list[ServiceBinding] = []
        missing: list[str] = []
        for want in wanted:
            match = next(
                (r for r in records if want in (str(r.get("uid") or ""), str(r.get("name") or ""))),
                None,
            )
            if match is None:
                missing.append(want)
                continue
            bindings.append(
                ServiceBinding(
                    name=str(match.get("name") or want),
                    network=str(match.get("uid") or want),
                    password=str(match.get("password") or ""),
                )
            )
        if missing:
            raise ServiceNotFound(
                "Unknown service(s): " + ", ".join(missing),
                hint="Deploy the service first; known services are listed in the state file under 'services'.",
            )
        return bindings
