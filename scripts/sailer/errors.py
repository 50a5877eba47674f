"""Failure taxonomy for the deployment pipeline.

Every error carries the stage tag it failed in and an optional operator hint.
The orchestrator attaches the final `DeploymentState` as `exc.state` before
re-raising so callers can see how far the pipeline got.
"""

from __future__ import annotations

from typing import Any


class DeployError(RuntimeError):
    stage = "deploy"

    def __init__(self, message: str, *, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.state: Any = None

    def format(self) -> str:
        lines = [f"[sailer] deployment failed at stage '{self.stage}': {self.message}"]
        if self.hint:
            lines.append(f"- {self.hint}")
        return "\n".join(lines)


class InvalidDomain(DeployError):
    stage = "domain"


class TargetResolutionFailure(DeployError):
    stage = "resolve"


class ServiceNotFound(DeployError):
    stage = "services"


class CloneFailure(DeployError):
    stage = "clone"


class BuildFailure(DeployError):
    stage = "build"


class ProxyWriteFailure(DeployError):
    stage = "proxy"


class LaunchFailure(DeployError):
    stage = "launch"


class StageTimeout(DeployError):
    stage = "timeout"


class RegistrationFailure(DeployError):
    """Raised by registration helpers; the orchestrator downgrades it to a warning."""

    stage = "register"
