"""HTTP client for the remote master server.

The master server tracks deployments and services across hosts. It is
optional: when no base URL is configured the client is "not linked" and every
notification is skipped.
"""

from __future__ import annotations

from typing import Any

import requests
import urllib3


def _auth_headers(*, token: str) -> dict[str, str]:
    if token.strip():
        return {"Authorization": f"Bearer {token.strip()}"}
    return {}


def _error_details(response: requests.Response) -> str:
    return str(response.text or "").strip().replace("\n", " ")[:300]


class MasterClient:
    def __init__(self, *, base_url: str = "", token: str = "", insecure: bool = False, timeout: int = 20):
        self.base_url = base_url.strip().rstrip("/")
        self.token = token
        self.insecure = insecure
        self.timeout = timeout
        if insecure:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def is_linked(self) -> bool:
        return bool(self.base_url)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _post(self, path: str, payload: dict[str, Any]) -> Any:
        response = requests.post(
            self._url(path),
            json=payload,
            headers=_auth_headers(token=self.token),
            verify=not self.insecure,
            timeout=self.timeout,
        )
        if not response.ok:
            raise requests.HTTPError(
                f"POST {path} failed ({response.status_code}): {_error_details(response)}",
                response=response,
            )
        return response.json() if response.content else None

    def register_container(self, *, domain: str, deployment_id: str, repository_ref: str) -> Any:
        return self._post(
            "containers/getOrCreate",
            {"domain": domain, "deploymentId": deployment_id, "repositoryRef": repository_ref},
        )

    def get_or_create_service(self, *, name: str) -> Any:
        return self._post("services/getOrCreate", {"name": name})

    def service_info(self, *, name: str) -> Any:
        response = requests.get(
            self._url("services/info"),
            params={"name": name},
            headers=_auth_headers(token=self.token),
            verify=not self.insecure,
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()
