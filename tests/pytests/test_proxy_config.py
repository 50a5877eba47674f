from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from scripts.sailer.errors import ProxyWriteFailure
from scripts.sailer.proxy_config import (
    check_domain_name,
    install_proxy_config,
    proxy_config_path,
    reload_proxy,
    render_proxy_config,
)


def test_render_points_domain_at_loopback_port():
    text = render_proxy_config(domain="app.example.com", host_port=41234)
    assert "server_name app.example.com;" in text
    assert "proxy_pass http://127.0.0.1:41234;" in text
    assert "proxy_set_header Upgrade $http_upgrade;" in text
    assert "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;" in text


def test_config_path_is_named_after_domain(tmp_path: Path):
    assert proxy_config_path(sites_dir=tmp_path, domain="app.example.com") == tmp_path / "app.example.com.conf"


def test_install_writes_and_reloads(tmp_path: Path):
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 0
        err = install_proxy_config(
            sites_dir=tmp_path / "sites",
            domain="app.example.com",
            config_text="server {}\n",
            reload_cmd="service nginx reload",
        )

    assert err is None
    assert (tmp_path / "sites" / "app.example.com.conf").read_text() == "server {}\n"
    assert mock_run.call_args[0][0] == ["service", "nginx", "reload"]


def test_reload_failure_is_returned_not_raised(tmp_path: Path):
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 1
        mock_run.return_value.stderr = "nginx: configuration file test failed"
        mock_run.return_value.stdout = ""
        err = install_proxy_config(
            sites_dir=tmp_path,
            domain="app.example.com",
            config_text="server {}\n",
            reload_cmd="service nginx reload",
        )

    assert "exited with 1" in err
    assert (tmp_path / "app.example.com.conf").exists()


def test_reload_timeout_is_reported():
    with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["service"], 60)):
        assert "failed" in reload_proxy(reload_cmd="service nginx reload")


def test_empty_reload_command_is_skipped():
    with patch("subprocess.run") as mock_run:
        assert reload_proxy(reload_cmd="") is None
    mock_run.assert_not_called()


def test_write_failure_is_fatal(tmp_path: Path):
    blocker = tmp_path / "sites"
    blocker.write_text("not a directory")
    with pytest.raises(ProxyWriteFailure):
        install_proxy_config(sites_dir=blocker, domain="app.example.com", config_text="x", reload_cmd="")


@pytest.mark.parametrize(
    "domain",
    ["../escaped", "a/b.example.com", "a\\b.example.com", "..", "app..example.com",
     "app example.com", "app.example.com; return 302", "x} server {", "app.example.com\n", ""],
)
def test_unsafe_domain_names_are_rejected(tmp_path: Path, domain: str):
    with pytest.raises(ProxyWriteFailure):
        install_proxy_config(
            sites_dir=tmp_path / "sites",
            domain=domain,
            config_text="server {}\n",
            reload_cmd="",
        )
    with pytest.raises(ProxyWriteFailure):
        render_proxy_config(domain=domain, host_port=41234)
    assert list(tmp_path.rglob("*.conf")) == []


def test_plain_host_names_are_accepted():
    assert check_domain_name("intranet") == "intranet"
    assert check_domain_name("my_app.example.io") == "my_app.example.io"
