"""Repository reference normalization and stored-credential lookup.

Users can give any Git URL form (http, https, ssh, git, scp-like `user@host:path`).
Everything is reduced to the same canonical `host/path` string so the same
repository always maps to the same credentials and clone URL.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

GITHUB_PREFIX = "github.com"
GITHUB_TOKEN_KEY = "github"
GITHUB_USERNAME = "sailer"

_SECURE_SCHEMES = ("https://", "ssh://", "git://")


@dataclass(frozen=True)
class RepoRef:
    canonical: str
    protocol: str = "https"


@dataclass(frozen=True)
class Credential:
    username: str
    token: str


def normalize_repo_ref(raw: str) -> RepoRef:
    url = str(raw or "").strip()
    if not url:
        raise ValueError("Repository reference must be non-empty")

    protocol = "https"
    if url.startswith("http://"):
        url = url[len("http://"):]
        protocol = "http"
    else:
        for scheme in _SECURE_SCHEMES:
            if url.startswith(scheme):
                url = url[len(scheme):]
                break

    if url.endswith(".git"):
        url = url[: -len(".git")]

    at = url.find("@")
    if at > -1:
        url = url[at + 1:]
        url = url.replace(":", "/", 1)

    return RepoRef(canonical=url, protocol=protocol)


def _credential_from_entry(entry: Any) -> Credential | None:
    if not isinstance(entry, Mapping):
        return None
    username = str(entry.get("username") or "").strip()
    token = str(entry.get("token") or "").strip()
    if not username or not token:
        return None
    return Credential(username=username, token=token)


def resolve_credentials(canonical: str, tokens: Mapping[str, Any] | None) -> Credential | None:
    """Return the stored credential for a canonical reference, if any.

    GitHub is special-cased: `tokens.github` holds a bare token used with a
    fixed username. Any other key is a host prefix; the first match wins.
    """
    if not tokens:
        return None

    github_token = str(tokens.get(GITHUB_TOKEN_KEY) or "").strip()
    if canonical.startswith(GITHUB_PREFIX) and github_token:
        return Credential(username=GITHUB_USERNAME, token=github_token)

    for prefix, entry in tokens.items():
        if prefix == GITHUB_TOKEN_KEY:
            continue
        if canonical.startswith(str(prefix)):
            return _credential_from_entry(entry)
    return None


def build_clone_url(ref: RepoRef, credential: Credential | None = None) -> str:
    if credential is None:
        return f"{ref.protocol}://{ref.canonical}"
    return f"{ref.protocol}://{credential.username}:{credential.token}@{ref.canonical}"


_AUTHORITY_PATTERN = re.compile(r"^(?P<scheme>[a-z]+://)(?P<user>[^:@/]+):[^@/]+@")


def redact_clone_url(url: str) -> str:
    """Hide the token part of a clone URL so it can be printed."""
    return _AUTHORITY_PATTERN.sub(lambda m: f"{m.group('scheme')}{m.group('user')}:***@", url)
