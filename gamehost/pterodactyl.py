"""HTTP client for the Pterodactyl panel application API."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

POWER_SIGNALS = frozenset({"start", "stop", "restart", "kill"})


class PterodactylError(RuntimeError):
    """Raised when a call to the control panel fails."""

    kind = "remote"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        may_exist: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        # The panel may have created the server despite the error.
        self.may_exist = may_exist


class PterodactylAuthError(PterodactylError):
    """The panel rejected the administrative credential."""

    kind = "auth"


class PterodactylNotFoundError(PterodactylError):
    """The requested server or endpoint does not exist on the panel."""

    kind = "not_found"


class PterodactylRemoteError(PterodactylError):
    """The panel could not be reached or answered with an error."""

    kind = "remote"


class PterodactylTimeoutError(PterodactylRemoteError):
    """The panel did not answer within the configured timeout.

    The remote side may still have created the server, so callers should
    flag these for manual audit.
    """

    kind = "timeout"


@dataclass(frozen=True)
class CreatedInstance:
    """Identifiers and resources of a freshly created panel server."""

    external_id: str
    identifier: Optional[str]
    name: str
    memory_mb: int
    attributes: Dict[str, Any]


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Panel base URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list):
            details = [
                str(item.get("detail")).strip()
                for item in errors
                if isinstance(item, dict) and item.get("detail")
            ]
            if details:
                return "; ".join(details)
        for key in ("message", "detail", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return default


class PterodactylClient:
    """Issue create/query/power calls against the panel's application API."""

    def __init__(
        self,
        base_url: str,
        admin_key: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        key = (admin_key or "").strip()
        if not key:
            raise ValueError("Panel admin key must not be empty")
        self._base_url = _normalize_base_url(base_url)
        self._client = httpx.Client(
            base_url=f"{self._base_url}/api/application",
            headers={
                "Authorization": f"Bearer {key}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PterodactylClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def create_instance(self, payload: Mapping[str, Any]) -> CreatedInstance:
        data = self._request("POST", "/servers", json=dict(payload))
        attributes = data.get("attributes")
        if not isinstance(attributes, dict) or attributes.get("id") is None:
            raise PterodactylRemoteError("Panel response did not include the created server id")

        limits = attributes.get("limits") if isinstance(attributes.get("limits"), dict) else {}
        requested_limits = payload.get("limits") or {}
        memory = limits.get("memory", requested_limits.get("memory", 0))

        try:
            return CreatedInstance(
                external_id=str(attributes["id"]),
                identifier=attributes.get("identifier"),
                name=str(attributes.get("name") or payload.get("name") or ""),
                memory_mb=int(memory or 0),
                attributes=attributes,
            )
        except (TypeError, ValueError) as exc:
            raise PterodactylRemoteError(
                f"Panel created server {attributes['id']} but its response could not be read: {exc}",
                may_exist=True,
            ) from exc

    def get_instance(self, external_id: str) -> Dict[str, Any]:
        data = self._request("GET", f"/servers/{external_id}")
        attributes = data.get("attributes")
        if not isinstance(attributes, dict):
            raise PterodactylRemoteError("Panel returned an unexpected server payload")
        return attributes

    def power_action(self, external_id: str, signal: str) -> None:
        if signal not in POWER_SIGNALS:
            raise ValueError(f"Unsupported power signal {signal!r}")
        self._request("POST", f"/servers/{external_id}/power", json={"signal": signal})

    def _request(self, method: str, path: str, *, json: Dict[str, Any] | None = None) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise PterodactylTimeoutError(
                f"Panel request {method} {path} timed out",
                may_exist=method == "POST",
            ) from exc
        except httpx.RequestError as exc:
            raise PterodactylRemoteError(f"Failed to contact panel: {exc}") from exc

        if response.status_code >= 400:
            try:
                parsed: object = response.json()
            except ValueError:
                parsed = None
            message = _extract_error_message(
                parsed,
                f"Panel request {method} {path} failed with status {response.status_code}",
            )
            if response.status_code in (401, 403):
                raise PterodactylAuthError(message, status_code=response.status_code)
            if response.status_code == 404:
                raise PterodactylNotFoundError(message, status_code=response.status_code)
            raise PterodactylRemoteError(message, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            data = response.json()
        except ValueError as exc:
            raise PterodactylRemoteError("Panel returned an invalid JSON response") from exc

        if not isinstance(data, dict):
            raise PterodactylRemoteError("Panel returned an unexpected response payload")
        return data


__all__ = [
    "CreatedInstance",
    "POWER_SIGNALS",
    "PterodactylAuthError",
    "PterodactylClient",
    "PterodactylError",
    "PterodactylNotFoundError",
    "PterodactylRemoteError",
    "PterodactylTimeoutError",
]
