"""Async client for the bridge's local REST API (v2).

Only the calls the relay needs are implemented: listing devices, reading
one device and executing an action. Requests are single-shot; there is no
retry.
"""

from __future__ import annotations

__all__ = ["BondApiClient", "BondApiError", "Device"]

from typing import Any

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

logger = structlog.get_logger(component="api")

DEFAULT_TIMEOUT_S = 10.0
TOKEN_HEADER = "BOND-Token"


class BondApiError(Exception):
    """A bridge API call failed or returned an unexpected response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Device(BaseModel):
    """A device as reported by ``GET /v2/devices/{device_id}``."""

    name: str = ""
    type: str = ""
    location: str = ""
    actions: list[str] = Field(default_factory=list)


class BondApiClient:
    """Token-authenticated client for one bridge.

    Args:
        base_url: Bridge URL, e.g. ``"http://192.168.1.20"``.
        token: Local API token sent in the ``BOND-Token`` header.
        timeout_s: Per-request timeout.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one
            with a mock transport).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = token
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    def __repr__(self) -> str:
        return f"BondApiClient({self.base_url!r})"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BondApiClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # --- API calls ----------------------------------------------------------

    async def execute_action(self, device_id: str, action_id: str, argument_json: str) -> None:
        """Execute *action_id* on *device_id*.

        Args:
            device_id: Bridge device identifier.
            action_id: Action name, e.g. ``"TurnOn"`` or ``"SetSpeed"``.
            argument_json: JSON request body, sent verbatim.

        Raises:
            BondApiError: On transport failure or a non-2xx response.
        """
        path = f"v2/devices/{device_id}/actions/{action_id}"
        logger.info("bond_action_request", device_id=device_id, action_id=action_id, body=argument_json)
        await self._request("PUT", path, content=argument_json.encode("utf-8"))

    async def get_device(self, device_id: str) -> Device:
        """Return the description of *device_id*."""
        data = await self._get_json(f"v2/devices/{device_id}")
        try:
            return Device.model_validate(data)
        except ValidationError as exc:
            msg = f"unexpected device record for {device_id!r}: {exc}"
            raise BondApiError(msg) from exc

    async def get_device_ids(self) -> list[str]:
        """Return the IDs of all devices known to the bridge."""
        data = await self._get_json("v2/devices")
        if not isinstance(data, dict):
            msg = f"expected a JSON object listing devices, got {type(data).__name__}"
            raise BondApiError(msg)
        # "_" is the collection hash, not a device.
        return [key for key in data if key != "_"]

    # --- Internals ----------------------------------------------------------

    async def _get_json(self, path: str) -> Any:
        response = await self._request("GET", path)
        try:
            return response.json()
        except ValueError as exc:
            msg = f"cannot decode JSON from {path}: {exc}\nBody: {response.text}"
            raise BondApiError(msg, response.status_code) from exc

    async def _request(self, method: str, path: str, content: bytes | None = None) -> httpx.Response:
        url = f"{self.base_url}/{path}"
        try:
            response = await self._client.request(
                method,
                url,
                content=content,
                headers={TOKEN_HEADER: self._token},
            )
        except httpx.HTTPError as exc:
            msg = f"{method} {url} failed: {exc}"
            raise BondApiError(msg) from exc

        if not response.is_success:
            logger.warning("bond_api_error", method=method, url=url, status=response.status_code)
            msg = f"expected 2xx response from {method} {url} but got {response.status_code}"
            raise BondApiError(msg, response.status_code)
        return response
