#!/usr/bin/env python3
"""
Venue read API client (aiohttp).

Endpoints:
  GET {base}/{network}/markets
  GET {base}/{network}/trades?address=&limit=&market=&from=&to=

Responses are JSON arrays (or objects wrapping one under "data"). Transport
and HTTP failures raise AdapterUnavailable; callers decide whether to degrade.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp

from env_utils import join_url
from errors import AdapterUnavailable
from logging_utils import get_logger

DEFAULT_TIMEOUT_SEC = 30.0


class VenueApi:
    """Thin async client for the venue REST endpoints."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = DEFAULT_TIMEOUT_SEC,
        session: Optional[aiohttp.ClientSession] = None,
        log=None,
    ):
        self.base_url = str(base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = float(timeout_seconds)
        self.log = log or get_logger("venue_api")
        self._session = session
        self._owns_session = session is None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"X-API-Key": self.api_key} if self.api_key else None
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers=headers,
            )
            self._owns_session = True
        return self._session

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = join_url(self.base_url, path)
        if not url:
            raise AdapterUnavailable("Venue API base URL is not configured")
        query = {k: str(v) for k, v in (params or {}).items() if v is not None and v != ""}
        session = await self._ensure_session()
        try:
            async with session.get(url, params=query) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise AdapterUnavailable(f"GET {path} -> HTTP {resp.status}: {body[:200]}")
                return await resp.json(content_type=None)
        except AdapterUnavailable:
            raise
        except asyncio.TimeoutError as exc:
            raise AdapterUnavailable(f"GET {path} timed out after {self.timeout_seconds:.0f}s") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise AdapterUnavailable(f"GET {path} failed: {exc}") from exc

    @staticmethod
    def _rows(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            payload = payload.get("data", [])
        if not isinstance(payload, list):
            return []
        return [row for row in payload if isinstance(row, dict)]

    async def get_markets(self, network: str) -> List[Dict[str, Any]]:
        return self._rows(await self._get(f"/{network}/markets"))

    async def get_trades(
        self,
        network: str,
        address: str,
        market: Optional[str] = None,
        limit: int = 50,
        from_ts: Optional[int] = None,
        to_ts: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {
            "address": address,
            "limit": int(limit),
            "market": market,
            "from": from_ts,
            "to": to_ts,
        }
        return self._rows(await self._get(f"/{network}/trades", params))

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
