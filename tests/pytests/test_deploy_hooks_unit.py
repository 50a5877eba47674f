import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from scripts.sailer import deploy_hooks


def test_load_hooks_without_module():
    hooks = deploy_hooks.load_hooks(None)
    assert hooks._impl is None
    assert hooks.call("anything") is None


def test_load_hooks_from_file(tmp_path: Path):
    custom_file = tmp_path / "my_hooks.py"
    custom_file.write_text("def pre_build(ctx, state): ctx.seen = state")

    hooks = deploy_hooks.load_hooks(str(custom_file))
    assert hooks._impl is not None

    ctx = MagicMock()
    hooks.call("pre_build", ctx, "building")
    assert ctx.seen == "building"


def test_load_hooks_get_hooks_factory(tmp_path: Path):
    custom_file = tmp_path / "factory_hooks.py"
    custom_file.write_text(
        "class Hooks:\n"
        "    def post_deploy(self, ctx, state):\n"
        "        return 'deployed ' + ctx.domain\n"
        "def get_hooks():\n"
        "    return Hooks()\n"
    )

    hooks = deploy_hooks.load_hooks(str(custom_file))
    ctx = deploy_hooks.DeployContext(repo="github.com/acme/app", domain="app.example.com")
    assert hooks.call("post_deploy", ctx, None) == "deployed app.example.com"
    assert hooks.call("on_error", ctx, RuntimeError("x")) is None


def test_load_hooks_invalid_code(tmp_path: Path):
    custom_file = tmp_path / "broken_hooks.py"
    custom_file.write_text("invalid python code")

    with pytest.raises(ImportError) as exc:
        deploy_hooks.load_hooks(str(custom_file))
    assert "Failed to load hooks" in str(exc.value)


def test_load_hooks_missing_module():
    with pytest.raises(ImportError) as exc:
        deploy_hooks.load_hooks("nonexistent_hooks_module")
    assert "Failed to load hooks" in str(exc.value)


def test_load_hooks_missing_module_soft_fail():
    hooks = deploy_hooks.load_hooks("nonexistent_hooks_module", soft_fail=True)
    assert hooks._impl is None


def test_load_hooks_dotted_name(tmp_path: Path, monkeypatch):
    (tmp_path / "site_hooks.py").write_text("def on_stage(ctx, state): return state")
    monkeypatch.syspath_prepend(str(tmp_path))
    monkeypatch.delitem(sys.modules, "site_hooks", raising=False)

    hooks = deploy_hooks.load_hooks("site_hooks")
    assert hooks.call("on_stage", MagicMock(), "creating") == "creating"


def test_hook_errors_respect_soft_fail(tmp_path: Path, capsys):
    custom_file = tmp_path / "crashing_hooks.py"
    custom_file.write_text("def on_stage(ctx, state): raise ValueError('crash')")

    hooks = deploy_hooks.load_hooks(str(custom_file))
    with pytest.raises(ValueError):
        hooks.call("on_stage", MagicMock(), None)

    hooks = deploy_hooks.load_hooks(str(custom_file), soft_fail=True)
    assert hooks.call("on_stage", MagicMock(), None) is None
    assert "soft-fail enabled" in capsys.readouterr().err
