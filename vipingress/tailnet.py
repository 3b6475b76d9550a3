"""Clients for the tailnet control API and the local tailscaled API."""

import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .errors import NotFoundError, TransientBackendError
from .logging_config import get_logger, log_directory_operation
from .models import OperatorConfig, VIPService

logger = get_logger(__name__)

LOCAL_API_HOST = "http://local-tailscaled.sock"


def load_api_token(operator_config: OperatorConfig) -> str:
    """Read the control API token from TS_API_TOKEN or the configured file."""
    token = os.getenv("TS_API_TOKEN")
    if token:
        return token.strip()
    if operator_config.api_token_file:
        return Path(operator_config.api_token_file).read_text().strip()
    raise ValueError("no control API token: set TS_API_TOKEN or api_token_file")


def _raise_for_response(response: httpx.Response, kind: str, name: str) -> None:
    if response.status_code == 404:
        raise NotFoundError(kind, name)
    if response.is_error:
        raise TransientBackendError(
            f"{response.request.method} {response.request.url.path}: {response.status_code} {response.text[:200]}"
        )


class DirectoryClient:
    """VIP service directory of the tailnet control API."""

    def __init__(self, base_url: str, tailnet: str, token: str, timeout: float,
                 transport: Optional[httpx.BaseTransport] = None):
        self.tailnet = tailnet
        self._http = httpx.Client(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, operator_config: OperatorConfig) -> "DirectoryClient":
        return cls(
            base_url=operator_config.api_base_url,
            tailnet=operator_config.tailnet,
            token=load_api_token(operator_config),
            timeout=operator_config.request_timeout,
        )

    def _path(self, name: str) -> str:
        return f"/api/v2/tailnet/{quote(self.tailnet, safe='')}/vip-services/{quote(name, safe='')}"

    def _request(self, method: str, name: str, **kwargs: Any) -> httpx.Response:
        log_directory_operation(logger, method, name)
        try:
            response = self._http.request(method, self._path(name), **kwargs)
        except httpx.TransportError as e:
            # Covers timeouts, refused connections and protocol errors.
            raise TransientBackendError(f"{method} VIP service {name}: {e}") from e
        _raise_for_response(response, "VIPService", name)
        return response

    def get_vip_service(self, name: str) -> VIPService:
        response = self._request("GET", name)
        return VIPService.model_validate(response.json())

    def create_or_update_vip_service(self, svc: VIPService) -> None:
        self._request("PUT", svc.name, json=svc.model_dump())

    def delete_vip_service(self, name: str) -> None:
        self._request("DELETE", name)

    def close(self) -> None:
        self._http.close()


class TailnetStatusClient:
    """Reads this node's view of the tailnet from tailscaled."""

    def __init__(self, socket_path: str, timeout: float,
                 transport: Optional[httpx.BaseTransport] = None):
        self._http = httpx.Client(
            base_url=LOCAL_API_HOST,
            transport=transport or httpx.HTTPTransport(uds=socket_path),
            timeout=timeout,
        )

    def status(self) -> Dict[str, Any]:
        try:
            response = self._http.get("/localapi/v0/status")
        except httpx.TransportError as e:
            raise TransientBackendError(f"tailscaled status: {e}") from e
        _raise_for_response(response, "TailnetStatus", "status")
        return response.json()

    def dns_suffix(self) -> str:
        """MagicDNS suffix of the current tailnet."""
        tailnet = self.status().get("CurrentTailnet") or {}
        suffix = tailnet.get("MagicDNSSuffix")
        if not suffix:
            raise NotFoundError("TailnetStatus", "MagicDNSSuffix")
        return suffix

    def close(self) -> None:
        self._http.close()
