"""
HTTP transport for the Firestore REST SDK.

This module defines the Transport protocol the client sends every request
through, and the httpx-backed production implementation.

Invariants:
    - send() returns a response for every HTTP status; only failures below
      HTTP (DNS, connect, timeout, broken JSON) raise TransportError
    - Mapping statuses to SDK errors is the client's job, not the transport's
    - Transports own their retry policy; HttpxTransport does not retry

How to change safely:
    - Keep send() signature compatible with InMemoryTransport in memory.py
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx

from .errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportResponse:
    """HTTP status plus decoded JSON body (None when the body is empty)."""

    status: int
    json: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@runtime_checkable
class Transport(Protocol):
    """Protocol for request transports."""

    @abstractmethod
    async def send(
        self,
        method: str,
        url: str,
        body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> TransportResponse:
        """Send one request.

        Args:
            method: HTTP method
            url: Absolute URL
            body: JSON-serializable request body
            headers: Extra headers (Authorization is set by the client)

        Returns:
            TransportResponse for any HTTP status

        Raises:
            TransportError: If no HTTP response was obtained
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""
        ...


class HttpxTransport:
    """Transport backed by a shared httpx.AsyncClient.

    Example:
        >>> transport = HttpxTransport(timeout=10.0)
        >>> resp = await transport.send("GET", url, headers={"Authorization": "Bearer ..."})
        >>> await transport.close()
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the transport.

        Args:
            timeout: Per-request timeout in seconds
            client: Pre-configured client (not closed by close())
        """
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(
        self,
        method: str,
        url: str,
        body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> TransportResponse:
        logger.debug(f"{method} {url}")
        try:
            response = await self._client.request(method, url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {e}", url=url) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}", url=url) from e

        if not response.content:
            return TransportResponse(response.status_code)
        try:
            payload = response.json()
        except ValueError as e:
            if response.is_success:
                raise TransportError(
                    f"Response body is not JSON (HTTP {response.status_code})",
                    status=response.status_code,
                    url=url,
                ) from e
            payload = None
        return TransportResponse(response.status_code, payload)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
