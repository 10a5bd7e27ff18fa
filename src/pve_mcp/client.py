"""
Async Proxmox VE API client with ticket-based session authentication.

Auth flow (per request unless the ticket cache is enabled):
  POST access/ticket {username, password} → {"data": {"ticket", "CSRFPreventionToken"}}
  every other call → Cookie: PVEAuthCookie=<ticket>
                     CSRFPreventionToken: <token>

All responses from Proxmox are wrapped in {"data": ...}; this client unwraps
them. Failures are reported as ``{"errors": ...}`` where the value is either a
list of strings (older releases) or a {field: message} mapping; both shapes
are flattened into a single ``ApiError`` message here and never leave this
module.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import httpx
import structlog

from pve_mcp.config import Settings

log = structlog.get_logger(__name__)

METHODS = ("GET", "POST", "PUT", "DELETE")

# Methods whose payload travels in the query string instead of the body
_QUERY_METHODS = ("GET", "DELETE")


class ProxmoxError(Exception):
    """Base class for failures talking to the Proxmox control plane."""


class AuthenticationError(ProxmoxError):
    """Raised when no session ticket could be obtained."""


class ApiError(ProxmoxError):
    """Raised for non-2xx responses, ``errors`` bodies and transport failures."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class Ticket:
    ticket: str
    csrf_token: str


# ---------------------------------------------------------------------------
# Payload / error-body helpers
# ---------------------------------------------------------------------------


def encode_params(payload: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Serialize a payload to the string form the Proxmox API expects.

    ``None`` values are dropped and booleans become ``"1"``/``"0"``.
    """
    if not payload:
        return {}
    encoded: Dict[str, str] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "1" if value else "0"
        else:
            encoded[key] = str(value)
    return encoded


def error_message(errors: Any, status_code: int) -> str:
    """Flatten a Proxmox ``errors`` value into one human-readable message."""
    if isinstance(errors, Mapping) and errors:
        return "; ".join(f"{key}: {value}" for key, value in errors.items())
    if isinstance(errors, (list, tuple)) and errors:
        return "; ".join(str(item) for item in errors)
    if isinstance(errors, str) and errors:
        return errors
    return f"Request failed with status {status_code}"


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Ticket cache
# ---------------------------------------------------------------------------

_CacheKey = Tuple[str, int, str]


class TicketCache:
    """Time-bounded ticket store shared across client instances.

    A ``ttl`` of zero or less disables caching, so every request acquires a
    fresh ticket.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[_CacheKey, Tuple[Ticket, float]] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, key: _CacheKey) -> Optional[Ticket]:
        if not self.enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            return None
        ticket, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return ticket

    def put(self, key: _CacheKey, ticket: Ticket) -> None:
        if self.enabled:
            self._entries[key] = (ticket, self._clock() + self.ttl)

    def invalidate(self, key: _CacheKey) -> None:
        self._entries.pop(key, None)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ProxmoxClient:
    """Async context-manager wrapper around the Proxmox VE REST API."""

    def __init__(self, settings: Settings, ticket_cache: Optional[TicketCache] = None) -> None:
        self._settings = settings
        self._base_url = settings.api_base + "/"
        self._cache = ticket_cache
        self._cache_key: _CacheKey = (settings.host, settings.port, settings.user)
        self._client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> "ProxmoxClient":
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Accept": "application/json"},
            verify=self._settings.verify_ssl,
            timeout=self._settings.timeout,
        )
        return self

    async def __aexit__(self, *_: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _client_or_raise(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("ProxmoxClient must be used as an async context manager")
        return self._client

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def acquire_ticket(self) -> Ticket:
        """Obtain a fresh session ticket and CSRF token.

        Raises ``AuthenticationError`` when the response carries no ticket and
        ``ApiError`` when the control plane cannot be reached at all.
        """
        client = self._client_or_raise()
        t0 = time.monotonic()
        try:
            response = await client.post(
                "access/ticket",
                data={"username": self._settings.user, "password": self._settings.password},
            )
        except httpx.TransportError as exc:
            log.error("proxmox.transport_error", path="access/ticket", error=str(exc))
            raise ApiError(str(exc) or type(exc).__name__) from exc
        elapsed = round((time.monotonic() - t0) * 1000)

        body = _parse_body(response)
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or not data.get("ticket"):
            errors = body.get("errors") if isinstance(body, dict) else None
            detail = (
                error_message(errors, response.status_code)
                if errors
                else f"no ticket returned (status {response.status_code})"
            )
            log.warning("proxmox.ticket_rejected", status=response.status_code, elapsed_ms=elapsed)
            raise AuthenticationError(f"Authentication failed: {detail}")

        log.info("proxmox.ticket_acquired", user=self._settings.user, elapsed_ms=elapsed)
        return Ticket(ticket=data["ticket"], csrf_token=data.get("CSRFPreventionToken", ""))

    async def _session_ticket(self) -> Ticket:
        if self._cache is not None:
            cached = self._cache.get(self._cache_key)
            if cached is not None:
                return cached
        try:
            ticket = await self.acquire_ticket()
        except AuthenticationError:
            if self._cache is not None:
                self._cache.invalidate(self._cache_key)
            raise
        if self._cache is not None:
            self._cache.put(self._cache_key, ticket)
        return ticket

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        path: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Make an authenticated request and unwrap the ``{"data": ...}`` envelope."""
        method = method.upper()
        if method not in METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")
        client = self._client_or_raise()
        ticket = await self._session_ticket()

        path = path.lstrip("/")
        params = encode_params(payload)
        body_kwargs: Dict[str, Any] = (
            {"params": params} if method in _QUERY_METHODS else {"data": params}
        )
        headers = {
            "Cookie": f"PVEAuthCookie={ticket.ticket}",
            "CSRFPreventionToken": ticket.csrf_token,
        }

        t0 = time.monotonic()
        try:
            response = await client.request(method, path, headers=headers, **body_kwargs)
        except httpx.TransportError as exc:
            log.error("proxmox.transport_error", method=method, path=path, error=str(exc))
            raise ApiError(str(exc) or type(exc).__name__) from exc
        elapsed = round((time.monotonic() - t0) * 1000)

        log.info(
            "proxmox.api_call",
            method=method,
            path=path,
            status=response.status_code,
            elapsed_ms=elapsed,
        )

        if response.status_code >= 400:
            log.warning(
                "proxmox.api_error", path=path, status=response.status_code,
                reason=response.reason_phrase,
            )
        if response.status_code == 401 and self._cache is not None:
            self._cache.invalidate(self._cache_key)

        return self._resolve(response)

    @staticmethod
    def _resolve(response: httpx.Response) -> Any:
        body = _parse_body(response)
        errors = body.get("errors") if isinstance(body, dict) else None

        if response.status_code >= 400 or errors:
            raise ApiError(error_message(errors, response.status_code), response.status_code)

        if isinstance(body, dict) and "data" in body:
            return body["data"]
        if not response.content:
            return None
        raise ApiError(f"Request failed with status {response.status_code}", response.status_code)

    async def get(self, path: str, **params: Any) -> Any:
        return await self.request("GET", path, params or None)

    async def post(self, path: str, **data: Any) -> Any:
        return await self.request("POST", path, data or None)

    async def put(self, path: str, **data: Any) -> Any:
        return await self.request("PUT", path, data or None)

    async def delete(self, path: str, **params: Any) -> Any:
        return await self.request("DELETE", path, params or None)
