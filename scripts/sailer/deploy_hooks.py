from __future__ import annotations

import importlib
import importlib.util
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger("deploy_hooks")


@dataclass
class DeployContext:
    """Context passed to hooks: what was asked for, not what happened."""
    repo: str
    domain: str
    relative_path: str | None = None
    services: tuple[str, ...] = ()

    def log(self, msg: str) -> None:
        print(f"🪝 [hook] {msg}")


@runtime_checkable
class DeployHooksProtocol(Protocol):
    """Protocol defining the available hooks.
    Implementations can implement any subset of these.
    """
    def on_stage(self, ctx: DeployContext, state: Any) -> None: ...
    def pre_build(self, ctx: DeployContext, state: Any) -> None: ...
    def post_deploy(self, ctx: DeployContext, state: Any) -> None: ...
    def on_error(self, ctx: DeployContext, exc: Exception) -> None: ...


class DeployHooks:
    """Wrapper that holds the loaded hooks object (if any) and safely calls methods."""
    def __init__(self, impl: Any | None, soft_fail: bool = False):
        self._impl = impl
        self._soft_fail = soft_fail

    def call(self, hook_name: str, *args, **kwargs) -> Any:
        if not self._impl:
            return None

        method = getattr(self._impl, hook_name, None)
        if not method:
            return None

        try:
            return method(*args, **kwargs)
        except Exception as e:
            if self._soft_fail:
                logger.warning("hook %s failed: %s", hook_name, e)
                print(f"⚠️  [hook] Hook '{hook_name}' failed: {e} (soft-fail enabled)", file=sys.stderr)
                return None
            print(f"❌ [hook] Hook '{hook_name}' failed: {e}", file=sys.stderr)
            raise


def load_hooks(module_path: str | None = None, soft_fail: bool = False) -> DeployHooks:
    """Load hooks from a module given as a file path or a dotted import name.

    No module means no hooks. A module that is named but cannot be loaded is
    an error unless soft-fail is enabled.
    """
    target_path = str(module_path or "").strip()
    if not target_path:
        return DeployHooks(None, soft_fail=soft_fail)

    print(f"🪝 [hooks] Loading hooks from: {target_path}")

    try:
        if target_path.endswith(".py") or "/" in target_path or "\\" in target_path:
            path_obj = Path(target_path).resolve()
            if not path_obj.exists():
                raise FileNotFoundError(f"Hook module not found at: {path_obj}")

            spec = importlib.util.spec_from_file_location("sailer_hooks", path_obj)
            if spec and spec.loader:
                module = importlib.util.module_from_spec(spec)
                sys.modules["sailer_hooks"] = module
                spec.loader.exec_module(module)
            else:
                raise ImportError(f"Could not load spec from {path_obj}")
        else:
            module = importlib.import_module(target_path)

        if hasattr(module, "get_hooks"):
            hooks_impl = module.get_hooks()
        else:
            # Module-level functions act as the hooks object.
            hooks_impl = module

        return DeployHooks(hooks_impl, soft_fail=soft_fail)

    except Exception as e:
        if soft_fail:
            print(f"⚠️  [hooks] Failed to load hooks from {target_path}: {e} (soft-fail enabled)", file=sys.stderr)
            return DeployHooks(None, soft_fail=soft_fail)
        raise ImportError(f"Failed to load hooks from {target_path}: {e}")
