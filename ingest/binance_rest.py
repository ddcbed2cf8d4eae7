import asyncio
import hmac
import hashlib
import json
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp


CLOCK_SKEW_CODES = (-1021,)
ALREADY_SET_CODES = (-4046, -4059)
PERMISSION_CODES = (-1022, -2014, -2015)


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)

    @property
    def is_already_set(self) -> bool:
        # -4046: no need to change margin type; -4059: no need to change position side
        if self.code in ALREADY_SET_CODES:
            return True
        return bool(self.msg and 'no need to change' in self.msg.lower())

    @property
    def is_clock_skew(self) -> bool:
        return self.code in CLOCK_SKEW_CODES

    @property
    def is_permission_error(self) -> bool:
        return self.status in (401, 403) or self.code in PERMISSION_CODES


def is_transient_error(error: BaseException) -> bool:
    """Clock-skew rejections and request timeouts; everything else is treated as fatal."""
    if isinstance(error, BinanceAPIError):
        return error.is_clock_skew
    return isinstance(error, (asyncio.TimeoutError, aiohttp.ServerTimeoutError))


class BinanceRESTClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        recv_window: int = 5000,
        timeout_s: float = 15.0,
    ):
        # USDⓈ‑M futures base URL
        self.base_url = (base_url or "https://fapi.binance.com").rstrip("/")
        self.api_key: Optional[str] = api_key
        self.api_secret: Optional[str] = api_secret
        self.recv_window = recv_window
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers: Dict[str, str] = {}

        if signed:
            if not self.api_key or not self.api_secret:
                raise RuntimeError("Binance API key/secret required for signed request")
            params.setdefault("timestamp", int(time.time() * 1000))
            params.setdefault("recvWindow", self.recv_window)
            query = urlencode(params, doseq=True)
            signature = hmac.new(
                self.api_secret.encode("utf-8"),
                query.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
            params["signature"] = signature
            headers["X-MBX-APIKEY"] = self.api_key
        elif self.api_key:
            # listenKey endpoints require the API key header only
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        async with session.request(
            method.upper(),
            url,
            params=params,
            headers=headers,
        ) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "application/json" in content_type:
                try:
                    payload = json.loads(text)
                except Exception:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                raise BinanceAPIError(resp.status, code, msg, text)

            return payload

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        # Binance REST accepts signed params in query string
        return await self._request("POST", path, params=params, signed=signed)

    async def delete(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)

    async def put(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("PUT", path, params=params, signed=signed)
