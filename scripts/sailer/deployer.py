"""Deployment orchestrator.

A deploy request walks an explicit state machine:

    IDLE -> RESOLVING_TARGET -> CREATING | UPDATING -> BUILDING_IMAGE
         -> CONFIGURING_PROXY -> LAUNCHING -> REGISTERING -> DONE

with FAILED reachable from any stage. A domain that is already in the
containers directory takes the UPDATING branch and keeps its deployment id,
volume and host port; anything else gets a fresh id.

Every stage handler takes the current `DeploymentState` and returns the next
one. Collaborators (docker, git, master server, state store) are injected so
the machine can be driven in tests without spawning anything.
"""

from __future__ import annotations

import re
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import requests

from scripts.sailer.deploy_hooks import DeployContext, DeployHooks
from scripts.sailer.docker_cli import DockerCli
from scripts.sailer.errors import (
    BuildFailure,
    CloneFailure,
    DeployError,
    InvalidDomain,
    LaunchFailure,
    ProxyWriteFailure,
    RegistrationFailure,
    StageTimeout,
    TargetResolutionFailure,
)
from scripts.sailer.git_cli import GitCli
from scripts.sailer.master_client import MasterClient
from scripts.sailer.proxy_config import install_proxy_config, proxy_config_path, provision_tls, render_proxy_config
from scripts.sailer.registry import ContainerRecord, find_record_by_domain, register_local
from scripts.sailer.repo_url import RepoRef, build_clone_url, normalize_repo_ref, resolve_credentials
from scripts.sailer.resources import (
    PortAllocator,
    create_volume,
    recorded_host_ports,
    resolve_existing_host_port,
    resolve_published_port,
    resolve_working_dir,
    volume_mountpoint,
)
from scripts.sailer.services import ServiceBinding, ServiceDirectory, service_args
from scripts.sailer.settings import Settings
from scripts.sailer.state_store import StateStore

DOMAIN_PATTERN = re.compile(r"^(?!://)([a-zA-Z0-9-_]+\.)*[a-zA-Z0-9][a-zA-Z0-9-_]+\.[a-zA-Z]{2,11}?$")

CLONE_HINT = (
    "Verify the repository URL. For a private repository, store a token for its host "
    "under 'tokens' in the state file."
)


def is_valid_domain(domain: str) -> bool:
    return DOMAIN_PATTERN.match(str(domain or "")) is not None


def build_context_dir(root: str, relative_path: str | None) -> str:
    if not relative_path:
        return root
    return root.rstrip("/") + "/" + relative_path.lstrip("/")


class Stage(str, Enum):
    IDLE = "idle"
    RESOLVING_TARGET = "resolving_target"
    CREATING = "creating"
    UPDATING = "updating"
    BUILDING_IMAGE = "building_image"
    CONFIGURING_PROXY = "configuring_proxy"
    LAUNCHING = "launching"
    REGISTERING = "registering"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STAGES = frozenset({Stage.DONE, Stage.FAILED})

# Collaborator errors that escape a handler are reported as the stage's own failure.
_STAGE_ERRORS: dict[Stage, type[DeployError]] = {
    Stage.RESOLVING_TARGET: TargetResolutionFailure,
    Stage.CREATING: CloneFailure,
    Stage.UPDATING: CloneFailure,
    Stage.BUILDING_IMAGE: BuildFailure,
    Stage.CONFIGURING_PROXY: ProxyWriteFailure,
    Stage.LAUNCHING: LaunchFailure,
}


@dataclass(frozen=True)
class DeployRequest:
    repo: str
    domain: str
    ssl: bool = False
    port: int | None = None  # pinned container port
    relative_path: str | None = None
    services: tuple[str, ...] = ()
    check_domain: bool = True


@dataclass(frozen=True)
class DeploymentState:
    stage: Stage = Stage.IDLE
    deployment_id: str | None = None
    existing: bool = False
    repo_ref: RepoRef | None = None
    record: dict[str, Any] | None = None
    bindings: tuple[ServiceBinding, ...] = ()
    source_root: str | None = None
    volume_mountpoint: str | None = None
    host_port: int | None = None
    container_port: str | None = None
    working_dir: str | None = None
    warnings: tuple[str, ...] = ()
    history: tuple[str, ...] = ()
    failed_stage: str | None = None
    registration_failed: bool = False

    def advance(self, stage: Stage, **changes: Any) -> "DeploymentState":
        return replace(self, stage=stage, history=self.history + (stage.value,), **changes)

    def note(self, detail: str) -> "DeploymentState":
        """Annotate the current history entry, e.g. `resolving_target(hit)`."""
        if not self.history:
            return self
        return replace(self, history=self.history[:-1] + (f"{self.history[-1]}({detail})",))

    def warn(self, message: str) -> "DeploymentState":
        return replace(self, warnings=self.warnings + (message,))

    def fail(self, failed_stage: str) -> "DeploymentState":
        return replace(
            self,
            stage=Stage.FAILED,
            history=self.history + (f"{Stage.FAILED.value}({failed_stage})",),
            failed_stage=failed_stage,
        )


@dataclass
class _StepLog:
    prefix: str = "[sailer]"
    number: int = 0
    color: str = "\033[95m"
    reset: str = "\033[0m"
    started: float = field(default=0.0)

    def step(self, message: str, *, icon: str = "🚀") -> None:
        self.number += 1
        print(f"{self.color}{self.prefix} {icon} Step {self.number}: {message}{self.reset}")

    def info(self, message: str, *, icon: str = "ℹ️") -> None:
        print(f"{self.prefix} {icon} {message}")

    def warn(self, message: str) -> None:
        print(f"\033[93m{self.prefix} ⚠️  {message}{self.reset}", file=sys.stderr)


class Deployer:
    def __init__(
        self,
        *,
        store: StateStore,
        docker: DockerCli,
        git: GitCli,
        master: MasterClient,
        port_allocator: PortAllocator,
        sites_dir: Path,
        reload_cmd: str,
        scratch_dir: Path,
        hooks: DeployHooks | None = None,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.docker = docker
        self.git = git
        self.master = master
        self.port_allocator = port_allocator
        self.sites_dir = Path(sites_dir)
        self.reload_cmd = reload_cmd
        self.scratch_dir = Path(scratch_dir)
        self.hooks = hooks or DeployHooks(None)
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self.clock = clock
        self.services = ServiceDirectory(store)
        self._handlers: dict[Stage, Callable[[DeployRequest, DeploymentState], DeploymentState]] = {
            Stage.RESOLVING_TARGET: self._resolve_target,
            Stage.CREATING: self._create,
            Stage.UPDATING: self._update,
            Stage.BUILDING_IMAGE: self._build_image,
            Stage.CONFIGURING_PROXY: self._configure_proxy,
            Stage.LAUNCHING: self._launch,
            Stage.REGISTERING: self._register,
        }
        self._log = _StepLog()
        self._ctx = DeployContext(repo="", domain="")

    @classmethod
    def from_settings(cls, settings: Settings, *, hooks: DeployHooks | None = None) -> "Deployer":
        return cls(
            store=StateStore(settings.state_file),
            docker=DockerCli(command_timeout=settings.command_timeout, build_timeout=settings.build_timeout),
            git=GitCli(timeout=settings.clone_timeout),
            master=MasterClient(
                base_url=settings.master_url,
                token=settings.master_token,
                insecure=settings.master_insecure,
            ),
            port_allocator=PortAllocator(),
            sites_dir=settings.nginx_sites_dir,
            reload_cmd=settings.nginx_reload_cmd,
            scratch_dir=settings.scratch_dir,
            hooks=hooks,
        )

    def _elapsed_ms(self) -> int:
        return int((self.clock() - self._log.started) * 1000)

    def _start_timer(self) -> None:
        self._log.started = self.clock()

    def deploy(self, request: DeployRequest) -> DeploymentState:
        """Run the pipeline to DONE, or raise the stage's DeployError with `exc.state` set."""
        self._log = _StepLog()
        ctx = self._ctx = DeployContext(
            repo=request.repo,
            domain=request.domain,
            relative_path=request.relative_path,
            services=tuple(request.services),
        )
        state = DeploymentState().advance(Stage.RESOLVING_TARGET)

        try:
            while state.stage not in TERMINAL_STAGES:
                self.hooks.call("on_stage", ctx, state)
                handler = self._handlers[state.stage]
                try:
                    state = handler(request, state)
                except DeployError:
                    raise
                except (subprocess.CalledProcessError, OSError, RuntimeError, ValueError) as e:
                    error_cls = _STAGE_ERRORS.get(state.stage)
                    if error_cls is None:
                        raise
                    raise error_cls(f"{state.stage.value} failed: {e}") from e
        except DeployError as exc:
            exc.state = state.fail(exc.stage)
            print(exc.format(), file=sys.stderr)
            self.hooks.call("on_error", ctx, exc)
            raise

        self.hooks.call("post_deploy", ctx, state)
        return state

    def _resolve_target(self, req: DeployRequest, state: DeploymentState) -> DeploymentState:
        self._start_timer()
        if not is_valid_domain(req.domain):
            if req.check_domain:
                raise InvalidDomain(
                    f"Given domain '{req.domain}' seems erroneous",
                    hint="Pass a fully qualified domain name, or --skip-domain-check to deploy anyway.",
                )
            self._log.warn(f"Given domain '{req.domain}' seems erroneous; continuing anyway.")
            state = state.warn(f"invalid domain: {req.domain}")

        repo_ref = normalize_repo_ref(req.repo)
        bindings = tuple(self.services.resolve(req.services))
        record = find_record_by_domain(self.store.containers(), req.domain)
        existing_id = str((record or {}).get("uid") or "").strip()

        if existing_id:
            self._log.info(f"{req.domain} is served by deployment {existing_id}; updating it.")
            return state.note("hit").advance(
                Stage.UPDATING,
                deployment_id=existing_id,
                existing=True,
                repo_ref=repo_ref,
                record=record,
                bindings=bindings,
            )

        return state.note("miss").advance(
            Stage.CREATING,
            deployment_id=self.id_factory(),
            repo_ref=repo_ref,
            bindings=bindings,
        )

    def _clone_url(self, repo_ref: RepoRef) -> tuple[str, str | None]:
        credential = resolve_credentials(repo_ref.canonical, self.store.tokens())
        return build_clone_url(repo_ref, credential), credential.token if credential else None

    def _create(self, req: DeployRequest, state: DeploymentState) -> DeploymentState:
        deployment_id = str(state.deployment_id)
        self._log.step(f"Creating deployment {deployment_id}", icon="📦")
        mountpoint = create_volume(self.docker, deployment_id)

        clone_dir = self.scratch_dir / deployment_id
        url, token = self._clone_url(state.repo_ref)
        self._start_timer()
        try:
            self.git.clone(url, clone_dir)
        except subprocess.CalledProcessError as e:
            details = str(e.stderr or "").strip().splitlines()
            reason = details[-1] if details else f"git exited with {e.returncode}"
            if token:
                reason = reason.replace(token, "***")
            raise CloneFailure(f"Cannot clone {state.repo_ref.canonical}: {reason}", hint=CLONE_HINT) from e

        self._log.info(f"Clone done in {self._elapsed_ms()} ms, building the Docker image. This could take a while...")
        return state.advance(Stage.BUILDING_IMAGE, source_root=str(clone_dir), volume_mountpoint=mountpoint)

    def _update(self, req: DeployRequest, state: DeploymentState) -> DeploymentState:
        deployment_id = str(state.deployment_id)
        self._log.step("Stopping current container...", icon="🛑")
        self._start_timer()
        if not self.docker.stop(deployment_id):
            self._log.info(f"Container {deployment_id} was not running.")

        host_port = resolve_existing_host_port(self.docker, state.record, deployment_id)
        # Name is reused by the new container; the volume keeps the data.
        self.docker.remove(deployment_id)
        self._log.info(f"Done in {self._elapsed_ms()} ms.")

        mountpoint = volume_mountpoint(self.docker, deployment_id)
        self._log.step("Updating sources...", icon="🔄")
        self._start_timer()
        try:
            self.git.pull(Path(mountpoint))
        except subprocess.CalledProcessError as e:
            raise CloneFailure(
                f"Cannot pull latest sources into {mountpoint}: git exited with {e.returncode}",
                hint=CLONE_HINT,
            ) from e
        self._log.info(f"Done in {self._elapsed_ms()} ms. Rebuilding Docker image...")

        return state.note("stop, pull").advance(
            Stage.BUILDING_IMAGE,
            source_root=mountpoint,
            volume_mountpoint=mountpoint,
            host_port=host_port,
        )

    def _build_image(self, req: DeployRequest, state: DeploymentState) -> DeploymentState:
        deployment_id = str(state.deployment_id)
        context_dir = build_context_dir(str(state.source_root), req.relative_path)
        self.hooks.call("pre_build", self._ctx, state)

        self._log.step(f"Building image {deployment_id} from {context_dir}", icon="🏗️")
        self._start_timer()
        returncode = self.docker.build(
            context_dir=context_dir,
            image_tag=deployment_id,
            build_args=service_args(state.bindings, build=True),
        )
        if returncode != 0:
            raise BuildFailure(
                f"docker build exited with {returncode}",
                hint="Fix the Dockerfile/build errors above and redeploy; nothing was configured or launched.",
            )
        self._log.info(f"Build done in {self._elapsed_ms()} ms.")
        return state.advance(Stage.CONFIGURING_PROXY)

    def _configure_proxy(self, req: DeployRequest, state: DeploymentState) -> DeploymentState:
        self._log.step("Creating Nginx config...", icon="🌐")
        self._start_timer()
        host_port = state.host_port
        if host_port is None:
            if state.existing:
                self._log.warn("Previous host port unknown; allocating a new one.")
            host_port = self.port_allocator.allocate(reserved=recorded_host_ports(self.store.containers()))
            detail = f"new port {host_port}"
        else:
            detail = f"reuses port {host_port}"

        config_text = render_proxy_config(domain=req.domain, host_port=host_port)
        reload_error = install_proxy_config(
            sites_dir=self.sites_dir,
            domain=req.domain,
            config_text=config_text,
            reload_cmd=self.reload_cmd,
        )
        if reload_error:
            self._log.warn(f"Nginx config written but reload failed: {reload_error}")
            state = state.warn(f"proxy reload failed: {reload_error}")

        if req.ssl:
            provision_tls(req.domain)
            self._log.info("SSL requested, but certificates are not provisioned yet.")

        self._log.info(f"Nginx ready in {self._elapsed_ms()} ms.")
        return state.note(detail).advance(Stage.LAUNCHING, host_port=host_port)

    def _launch(self, req: DeployRequest, state: DeploymentState) -> DeploymentState:
        deployment_id = str(state.deployment_id)
        self._log.step("Launching container...", icon="🚢")
        self._start_timer()
        try:
            container_port = resolve_published_port(self.docker, deployment_id, req.port)
            working_dir = resolve_working_dir(self.docker, deployment_id)
            if not working_dir:
                self._log.warn("Image declares no WORKDIR; the persistent volume is not mounted.")
                state = state.warn("volume not mounted: image has no WORKDIR")
            self.docker.run(
                name=deployment_id,
                image=deployment_id,
                host_port=state.host_port,
                container_port=container_port,
                volume=deployment_id,
                working_dir=working_dir or None,
                env_args=service_args(state.bindings, build=False),
            )
        except (LaunchFailure, StageTimeout, subprocess.CalledProcessError) as e:
            conf = proxy_config_path(sites_dir=self.sites_dir, domain=req.domain)
            reason = e.message if isinstance(e, DeployError) else str(e.stderr or e).strip()
            error_cls = StageTimeout if isinstance(e, StageTimeout) else LaunchFailure
            raise error_cls(
                f"Container {deployment_id} did not start: {reason}. "
                f"The proxy entry for {req.domain} points at 127.0.0.1:{state.host_port} where nothing is listening.",
                hint=f"Fix the issue and redeploy, or remove {conf} and reload nginx.",
            ) from e

        return state.note(f"bound to {state.host_port}").advance(
            Stage.REGISTERING,
            container_port=container_port,
            working_dir=working_dir,
        )

    def _record_deployment(self, req: DeployRequest, state: DeploymentState) -> None:
        problems: list[str] = []
        record = ContainerRecord(
            domain=req.domain,
            uid=str(state.deployment_id),
            repo=state.repo_ref.canonical,
            port=state.host_port,
        )
        try:
            register_local(self.store, record)
        except (OSError, RuntimeError) as e:
            problems.append(f"local directory not updated: {e}")

        if self.master.is_linked():
            try:
                self.master.register_container(
                    domain=record.domain,
                    deployment_id=record.uid,
                    repository_ref=record.repo,
                )
            except requests.RequestException as e:
                problems.append(f"master server not notified: {e}")

        if problems:
            raise RegistrationFailure("; ".join(problems))

    def _register(self, req: DeployRequest, state: DeploymentState) -> DeploymentState:
        self._log.step("Notifying master server...", icon="📝")
        try:
            self._record_deployment(req, state)
        except RegistrationFailure as e:
            self._log.warn("The container is online, but there was an error while registering it.")
            self._log.warn(f"Please investigate: {e.message}")
            return state.note("warning").advance(Stage.DONE, registration_failed=True).warn(e.message)

        print("\033[92m[sailer] ✅ Container successfully launched!\033[0m")
        if state.existing:
            print("\033[92m[sailer] ✅ Your website was updated from the latest sources.\033[0m")
        return state.advance(Stage.DONE)
