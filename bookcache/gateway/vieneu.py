"""VieNeu-TTS HTTP gateway."""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .errors import BackendError, BackendUnauthorized, BackendUnreachable

logger = logging.getLogger("bookcache.gateway")


class VieNeuGateway:
    def __init__(self, base_url: str, api_key: str = "", timeout: int = 30,
                 health_timeout: int = 5, load_model_timeout: int = 60,
                 transport: httpx.AsyncBaseTransport | None = None):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._health_timeout = health_timeout
        self._load_model_timeout = load_model_timeout
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._base_url

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _headers(self, api_key: Optional[str]) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = api_key or self._api_key
        if key:
            headers["X-API-Key"] = key
        return headers

    async def synthesize(self, text: str, voice: str, api_key: Optional[str] = None) -> bytes:
        resp = await self._request(
            "POST", "/api/synthesize", self._timeout,
            headers=self._headers(api_key),
            json={"text": text, "voice": voice, "mode": "standard"},
        )
        return resp.content

    async def health(self) -> dict[str, Any]:
        resp = await self._request("GET", "/api/health", self._health_timeout)
        return resp.json()

    async def list_voices(self) -> list[Any]:
        resp = await self._request("GET", "/api/voices", self._health_timeout)
        return resp.json().get("voices", [])

    async def load_model(self, payload: dict[str, Any], api_key: Optional[str]) -> dict[str, Any]:
        key = api_key or self._api_key
        if not key:
            raise BackendUnauthorized(
                "API key required",
                status_code=401,
                detail="Please configure API key in VieNeu settings",
            )
        resp = await self._request(
            "POST", "/api/load-model", self._load_model_timeout,
            headers=self._headers(key), json=payload,
        )
        return resp.json()

    async def _request(self, method: str, path: str, timeout: float, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            async with self._client(timeout) as client:
                resp = await client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.warning("gateway.unreachable url=%s error=%s", url, e)
            raise BackendUnreachable(
                "VieNeu-TTS server not reachable",
                detail=f"Cannot connect to {self._base_url}. Please ensure VieNeu-TTS server is running.",
            ) from e

        if resp.is_success:
            return resp

        detail = self._error_detail(resp)
        logger.warning("gateway.fail url=%s status=%d detail=%s", url, resp.status_code, detail)
        if resp.status_code in (401, 403):
            raise BackendUnauthorized("VieNeu-TTS rejected credentials",
                                      status_code=resp.status_code, detail=detail)
        raise BackendError(
            f"VieNeu-TTS request failed: {resp.status_code} {resp.reason_phrase} - {detail}",
            status_code=resp.status_code,
            detail=detail,
        )

    @staticmethod
    def _error_detail(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text or resp.reason_phrase
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("error") or body)
        return str(body)
