from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from notekeeper.client.errors import APIError, TransportError
from notekeeper.client.models import ClientSession, ClientUser
from notekeeper.config import ClientSettings
from notekeeper.logging import get_logger
from notekeeper.validation import Invalid, validate_model

logger = get_logger(__name__)


class ApiClient:
    """HTTP transport for the ``/v1/auth`` endpoints.

    Every call either returns the ``data`` member of an ok envelope or raises:

    - ``APIError`` when the server answered with an error envelope (or garbage),
    - ``TransportError`` when no HTTP response was received.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "ApiClient":
        return cls(settings.api_url, timeout=settings.http_timeout_seconds)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            response = await self._get_client().request(method, path, json=json, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("api_transport_error", method=method, path=path, error=str(exc))
            raise TransportError("unable to reach the server") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            logger.warning("api_unexpected_response", path=path, status_code=response.status_code)
            raise APIError(response.status_code, "server_error", "unexpected response from server")

        if response.is_error or payload.get("status") != "ok":
            error = payload.get("error") or {}
            raise APIError(
                response.status_code,
                error.get("code", "server_error"),
                error.get("message", "request failed"),
                error.get("details"),
            )
        return payload.get("data")

    def _parse_session(self, data: Any) -> ClientSession:
        result = validate_model(ClientSession, data)
        if isinstance(result, Invalid):
            logger.warning("api_malformed_session", reasons=list(result.reasons))
            raise APIError(200, "server_error", "malformed auth response")
        return result.value

    async def login(self, email: str, password: str) -> ClientSession:
        data = await self._request("POST", "/v1/auth/login", json={"email": email, "password": password})
        return self._parse_session(data)

    async def register(self, email: str, password: str, confirm_password: str) -> ClientSession:
        data = await self._request(
            "POST",
            "/v1/auth/register",
            json={"email": email, "password": password, "confirmPassword": confirm_password},
        )
        return self._parse_session(data)

    async def logout(self, token: str, *, target_token: Optional[str] = None) -> None:
        body = {"token": target_token} if target_token else None
        await self._request("POST", "/v1/auth/logout", json=body, token=token)

    async def logout_all(self, token: str) -> int:
        data = await self._request("POST", "/v1/auth/logout-all", token=token)
        return int((data or {}).get("revoked", 0))

    async def profile(self, token: str) -> ClientUser:
        data = await self._request("GET", "/v1/auth/profile", token=token)
        result = validate_model(ClientUser, data)
        if isinstance(result, Invalid):
            raise APIError(200, "server_error", "malformed profile response")
        return result.value

    async def request_password_reset(self, email: str) -> None:
        await self._request("POST", "/v1/auth/reset-password", json={"email": email})

    async def confirm_password_reset(self, reset_token: str, password: str, confirm_password: str) -> None:
        await self._request(
            "POST",
            f"/v1/auth/reset-password/{reset_token}",
            json={"password": password, "confirmPassword": confirm_password},
        )

    async def email_verification(self, token: str, verification_token: Optional[str] = None) -> str:
        """Request a verification link, or confirm one; returns the reported status."""
        body = {"token": verification_token} if verification_token else None
        data = await self._request("POST", "/v1/auth/email-verification", json=body, token=token)
        return str((data or {}).get("status", ""))
