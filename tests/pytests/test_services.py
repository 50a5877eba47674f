from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from scripts.sailer.errors import ServiceNotFound
from scripts.sailer.services import (
    ServiceBinding,
    ServiceDirectory,
    new_service_record,
    save_service,
    service_args,
)
from scripts.sailer.state_store import StateStore


def test_new_service_record():
    record = new_service_record(" MySQL ")
    assert record.name == "mysql"
    assert record.uid.startswith("sailer-mysql-")
    assert len(record.password) >= 24


def test_new_service_record_needs_name():
    with pytest.raises(ValueError):
        new_service_record("")


def test_save_and_resolve_by_name_or_uid(tmp_path: Path):
    store = StateStore(tmp_path / "state.yml")
    record = new_service_record("mysql")
    save_service(store, record)

    directory = ServiceDirectory(store)
    by_name = directory.resolve(["mysql"])
    by_uid = directory.resolve([record.uid])
    assert by_name == by_uid == [ServiceBinding(name="mysql", network=record.uid, password=record.password)]


def test_save_announces_to_linked_master(tmp_path: Path):
    master = MagicMock()
    master.is_linked.return_value = True
    save_service(StateStore(tmp_path / "state.yml"), new_service_record("redis"), master=master)
    master.get_or_create_service.assert_called_once_with(name="redis")


def test_unknown_services_are_all_reported(tmp_path: Path):
    store = StateStore(tmp_path / "state.yml")
    save_service(store, new_service_record("mysql"))

    with pytest.raises(ServiceNotFound) as exc:
        ServiceDirectory(store).resolve(["mysql", "redis", "mongo"])
    assert "redis, mongo" in exc.value.message


def test_no_services_requested(tmp_path: Path):
    assert ServiceDirectory(StateStore(tmp_path / "state.yml")).resolve([]) == []


def test_service_args_build_and_run():
    bindings = [ServiceBinding(name="my-db", network="sailer-my-db-1", password="pw")]
    assert service_args(bindings, build=False) == [
        "--network",
        "sailer-my-db-1",
        "-e",
        "MY_DB_ROOT_PASSWORD=pw",
        "-e",
        "MY_DB_HOSTNAME=sailer-my-db-1",
    ]
    assert service_args(bindings, build=True)[2] == "--build-arg"
    assert service_args([]) == []
