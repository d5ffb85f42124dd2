"""Async client for the verification API's streaming and status endpoints.

Endpoints:
  POST {base}/verify/batch            NDJSON event stream for a new batch
  GET  {base}/verify/status/{job_id}  Point-in-time batch status
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional
from urllib.parse import quote

import aiohttp

from . import config
from .errors import TransportError, VerifierApiError
from .models import StatusSnapshot

logger = logging.getLogger("verifystream.client")


class VerifierClient:
    """aiohttp wrapper around the verification endpoints.

    Pass an existing ``session`` to share a connection pool (or a fake one in
    tests); otherwise the client creates and owns one.
    """

    def __init__(
        self,
        base_url: str = config.API_BASE_URL,
        *,
        api_key: str = "",
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = config.REQUEST_TIMEOUT_SECONDS,
        connect_timeout: float = config.STREAM_CONNECT_TIMEOUT_SECONDS,
    ):
        self._base_url = base_url.rstrip("/")
        self._headers = config.auth_headers(api_key)
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout
        self._connect_timeout = connect_timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "VerifierClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @staticmethod
    async def _raise_for_status(resp) -> None:
        if 200 <= resp.status < 300:
            return
        text = await resp.text()
        raise VerifierApiError(resp.status, text[:500])

    async def stream_batch(self, emails: list[str]) -> AsyncIterator[bytes]:
        """Submit ``emails`` and yield raw response chunks as they arrive.

        Chunks follow network reads, not record boundaries. Connection
        problems surface as ``TransportError``.
        """
        url = f"{self._base_url}/verify/batch"
        # No total deadline: the stream lasts as long as the batch does.
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._connect_timeout)
        try:
            async with self._get_session().post(
                url,
                json={"emails": emails},
                headers=self._headers,
                timeout=timeout,
            ) as resp:
                await self._raise_for_status(resp)
                async for chunk in resp.content.iter_any():
                    yield chunk
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"batch stream failed: {e}") from e

    async def fetch_status(self, job_id: str) -> StatusSnapshot:
        """Fetch the current status of a batch."""
        url = f"{self._base_url}/verify/status/{quote(job_id, safe='')}"
        try:
            async with self._get_session().get(
                url,
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            ) as resp:
                await self._raise_for_status(resp)
                payload = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"status request for {job_id} failed: {e}") from e
        return StatusSnapshot.model_validate(payload)
