"""Thin wrapper around the `docker` CLI.

Command builders are pure functions so the exact argv can be unit tested;
`DockerCli` executes them with bounded timeouts.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import sys
from typing import Any

from scripts.sailer.errors import StageTimeout


def build_docker_build_cmd(*, image_tag: str, context_dir: str, build_args: list[str] | None = None) -> list[str]:
    return ["docker", "build", *(build_args or []), "-t", image_tag, context_dir]


def build_docker_run_cmd(
    *,
    name: str,
    image: str,
    host_port: int,
    container_port: str,
    volume: str | None = None,
    working_dir: str | None = None,
    env_args: list[str] | None = None,
) -> list[str]:
    cmd = [
        "docker",
        "container",
        "run",
        "-dt",
        "--restart",
        "unless-stopped",
        "--name",
        name,
        "-p",
        f"127.0.0.1:{host_port}:{container_port}",
    ]
    if volume and working_dir:
        cmd.extend(["-v", f"{volume}:{working_dir}"])
    cmd.extend(env_args or [])
    cmd.append(image)
    return cmd


def _first(payload: Any) -> dict[str, Any]:
    # `docker ... inspect` returns a JSON list with one element per object.
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        return payload[0]
    if isinstance(payload, dict):
        return payload
    return {}


class DockerCli:
    def __init__(self, *, command_timeout: int = 120, build_timeout: int = 3600, verbose: bool = True):
        self.command_timeout = command_timeout
        self.build_timeout = build_timeout
        self.verbose = verbose

    def run_docker_command(
        self,
        args: list[str],
        *,
        capture_output: bool = True,
        ignore_errors: bool = False,
        timeout: int | None = None,
    ) -> dict | list | str | None:
        """Run a docker command and return its parsed JSON (or raw) stdout."""
        cmd = ["docker"] + args
        if self.verbose:
            print(f"[docker] {' '.join(cmd)}")

        if not shutil.which("docker"):
            if ignore_errors:
                return None
            raise RuntimeError("Docker CLI (docker) not found. Please install it.")

        limit = timeout or self.command_timeout
        try:
            result = subprocess.run(
                cmd,
                stdout=subprocess.PIPE if capture_output else None,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
                timeout=limit,
            )
        except subprocess.TimeoutExpired as e:
            raise StageTimeout(f"'{' '.join(cmd)}' did not finish within {limit}s") from e

        if result.returncode != 0:
            if ignore_errors:
                return None
            if result.stderr:
                print(result.stderr.rstrip(), file=sys.stderr)
            raise subprocess.CalledProcessError(result.returncode, cmd, output=result.stdout, stderr=result.stderr)

        if capture_output and result.stdout:
            out = result.stdout.strip()
            if not out:
                return None
            try:
                return json.loads(out)
            except json.JSONDecodeError:
                return out
        return None

    def build(self, *, context_dir: str, image_tag: str, build_args: list[str] | None = None) -> int:
        """Build an image, streaming output to the terminal. Returns the exit code."""
        cmd = build_docker_build_cmd(image_tag=image_tag, context_dir=context_dir, build_args=build_args)
        if self.verbose:
            print(f"[docker] docker build ... -t {image_tag} {context_dir}")
        try:
            result = subprocess.run(cmd, check=False, timeout=self.build_timeout)
        except subprocess.TimeoutExpired as e:
            raise StageTimeout(f"docker build of {image_tag} did not finish within {self.build_timeout}s") from e
        return result.returncode

    def run(self, **kwargs: Any) -> str:
        # argv may carry service passwords, so it is not echoed.
        cmd = build_docker_run_cmd(**kwargs)
        if self.verbose:
            print(f"[docker] docker container run --name {kwargs.get('name')} ...")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=self.command_timeout)
        except subprocess.TimeoutExpired as e:
            raise StageTimeout(f"docker container run did not finish within {self.command_timeout}s") from e
        if result.returncode != 0:
            raise subprocess.CalledProcessError(result.returncode, cmd[:3], output=result.stdout, stderr=result.stderr)
        return str(result.stdout or "").strip()

    def stop(self, name: str) -> bool:
        try:
            self.run_docker_command(["container", "stop", name])
        except subprocess.CalledProcessError:
            return False
        return True

    def remove(self, name: str) -> bool:
        try:
            self.run_docker_command(["container", "rm", name])
        except subprocess.CalledProcessError:
            return False
        return True

    def inspect_image(self, tag: str) -> dict[str, Any]:
        return _first(self.run_docker_command(["image", "inspect", tag]))

    def inspect_container(self, name: str) -> dict[str, Any] | None:
        payload = self.run_docker_command(["container", "inspect", name], ignore_errors=True)
        return _first(payload) if payload else None

    def create_volume(self, name: str) -> None:
        self.run_docker_command(["volume", "create", name])

    def inspect_volume(self, name: str) -> dict[str, Any]:
        return _first(self.run_docker_command(["volume", "inspect", name]))
