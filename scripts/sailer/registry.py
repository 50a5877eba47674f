"""Domain -> deployment lookup over the local containers directory.

The directory holds one organisation's deployments, so a linear scan is enough.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping

from scripts.sailer.state_store import StateStore


@dataclass(frozen=True)
class ContainerRecord:
    domain: str
    uid: str
    repo: str
    port: int | None = None


def find_record_by_domain(containers: Mapping[str, Any] | None, domain: str) -> dict[str, Any] | None:
    if not containers:
        return None
    for entry in containers.values():
        if isinstance(entry, Mapping) and entry.get("domain") == domain:
            return dict(entry)
    return None


def find_by_domain(containers: Mapping[str, Any] | None, domain: str) -> str | None:
    record = find_record_by_domain(containers, domain)
    if record is None:
        return None
    uid = str(record.get("uid") or "").strip()
    return uid or None


def register_local(store: StateStore, record: ContainerRecord) -> None:
    """Persist a container record, dropping any other entry bound to the same domain."""

    def mutate(payload: dict[str, Any]) -> None:
        containers = payload.get("containers")
        if not isinstance(containers, dict):
            containers = {}
        stale = [
            key
            for key, entry in containers.items()
            if key != record.uid and isinstance(entry, Mapping) and entry.get("domain") == record.domain
        ]
        for key in stale:
            del containers[key]
        containers[record.uid] = asdict(record)
        payload["containers"] = containers

    store.update(mutate)
