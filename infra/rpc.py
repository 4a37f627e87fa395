# infra/rpc.py

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Any, Dict, Optional

import aiohttp
from eth_utils import to_bytes

from infra.metrics import METRICS
from orchestrator import config
from orchestrator.errors import RPCError, TransportError

logger = logging.getLogger(__name__)

_RETRY_HTTP_STATUS = (429, 500, 502, 503, 504)


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "http://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


def get_rpc_url(explicit: Optional[str] = None) -> str:
    """Return the RPC URL: explicit arg, then env RPC_URL, then config.RPC_URL."""
    for candidate in (explicit, os.getenv("RPC_URL"), config.RPC_URL):
        if candidate and str(candidate).strip():
            return _normalize_url(candidate)
    raise ValueError("no RPC URL configured")


def _normalize_rpc_error(msg: Optional[str]) -> str:
    text = str(msg or "").lower()
    if "timeout" in text:
        return "timeout"
    if "http_429" in text or "rate limit" in text:
        return "rate_limited"
    if "http_5" in text:
        return "http_5xx"
    if "decode" in text or "malformed" in text:
        return "decode_error"
    if "connect" in text or "dns" in text:
        return "connection"
    return "internal_error"


def extract_revert_data(err_data: Any) -> Optional[str]:
    """Pull the revert payload hex out of a JSON-RPC error ``data`` field.

    Nodes disagree on the shape: geth/quorum put the hex string directly in
    ``data``, others nest it under ``data.data`` / ``data.result`` or per-tx
    ``{"<hash>": {"return": ...}}`` maps.
    """
    if isinstance(err_data, str):
        return err_data if err_data.startswith("0x") else None
    if isinstance(err_data, dict):
        for key in ("data", "result"):
            if isinstance(err_data.get(key), str):
                return extract_revert_data(err_data[key])
        for v in err_data.values():
            if isinstance(v, dict):
                for key in ("return", "data"):
                    if isinstance(v.get(key), str):
                        return extract_revert_data(v[key])
    return None


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


class AsyncRPC:
    """Async JSON-RPC client with:
    - persistent aiohttp session
    - per-call timeouts (every call is a cancellable suspension point)
    - retries + exponential backoff for transport failures only

    A JSON-RPC ``error`` object is an answer from the node, not a transport
    problem, so it is raised as RPCError without retrying. Re-sending the
    same eth_sendRawTransaction after a connection reset is safe: the raw
    payload (and hash) is identical.
    """

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_s: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = _normalize_url(url)
        if not self.url:
            raise ValueError("AsyncRPC requires a url")
        if default_timeout_s is None:
            default_timeout_s = float(config.RPC_DEFAULT_TIMEOUT_S)
        if max_retries is None:
            max_retries = int(config.RPC_RETRY_COUNT)
        if backoff_base_s is None:
            backoff_base_s = float(config.RPC_BACKOFF_BASE_S)
        self.default_timeout_s = float(default_timeout_s)
        self.max_retries = max(0, int(max_retries))
        self.backoff_base_s = float(backoff_base_s)
        self._id = 0
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "AsyncRPC":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        connector = aiohttp.TCPConnector(limit=20, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=connector)
        self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _clamp_timeout(self, timeout_s: Optional[float]) -> float:
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s
        min_t = float(config.RPC_TIMEOUT_MIN_S)
        max_t = max(min_t, float(config.RPC_TIMEOUT_MAX_S))
        return max(min_t, min(max_t, to_s))

    def _backoff_s(self, attempt: int) -> float:
        return self.backoff_base_s * (2 ** attempt) + random.random() * 0.25

    async def _post(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> Any:
        async with session.post(self.url, json=payload) as resp:
            if resp.status >= 400:
                raise aiohttp.ClientResponseError(
                    request_info=resp.request_info,
                    history=resp.history,
                    status=resp.status,
                    message=await resp.text(),
                    headers=resp.headers,
                )
            return await resp.json(content_type=None)

    @staticmethod
    def _unwrap(method: str, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError(f"malformed json-rpc response: {str(data)[:120]}")
        err = data.get("error")
        if err is not None:
            METRICS.inc_reason("rpc_error_by_method", method)
            if isinstance(err, dict):
                raise RPCError(str(err.get("message") or "rpc error"), method=method, code=err.get("code"), data=err.get("data"))
            raise RPCError(str(err), method=method)
        if "result" not in data:
            raise ValueError("malformed json-rpc response: missing result")
        return data["result"]

    async def call(self, method: str, params: list, *, timeout_s: Optional[float] = None) -> Any:
        self._id += 1
        request = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        session = await self._get_session()
        limit_s = self._clamp_timeout(timeout_s)
        latency_key = f"rpc_latency_ms:{_url_host(self.url)}"
        attempts = self.max_retries + 1
        failure: Optional[str] = None

        for attempt in range(attempts):
            started = time.perf_counter()
            METRICS.inc("rpc_requests_total")
            METRICS.inc_reason("rpc_requests_by_method", method)
            try:
                data = await asyncio.wait_for(self._post(session, request), timeout=limit_s)
                METRICS.observe(latency_key, (time.perf_counter() - started) * 1000.0)
                return self._unwrap(method, data)
            except asyncio.TimeoutError:
                failure = f"timeout({limit_s}s)"
            except aiohttp.ClientResponseError as e:
                failure = f"http_{e.status}"
                if e.status not in _RETRY_HTTP_STATUS:
                    break
            except (aiohttp.ClientError, ValueError) as e:
                failure = f"{type(e).__name__}: {e}"

            if attempt + 1 < attempts:
                delay = self._backoff_s(attempt)
                logger.warning("rpc %s failed (%s), retry %d/%d in %.2fs", method, failure, attempt + 1, self.max_retries, delay)
                await asyncio.sleep(delay)

        METRICS.inc_reason("rpc_fail_by_reason", _normalize_rpc_error(failure))
        raise TransportError(
            f"rpc {method} failed after {attempts} attempt(s): {failure}",
            method=method,
            attempts=attempts,
            context={"url": self.url, "last_error": failure},
        )

    # -- capability set consumed by the pipeline -------------------------

    async def chain_id(self, *, timeout_s: Optional[float] = None) -> int:
        return _to_int(await self.call("eth_chainId", [], timeout_s=timeout_s))

    async def get_block_number(self, *, timeout_s: Optional[float] = None) -> int:
        return _to_int(await self.call("eth_blockNumber", [], timeout_s=timeout_s))

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return _to_int(await self.call("eth_getBalance", [address, block]))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _to_int(await self.call("eth_getTransactionCount", [address, block]))

    async def gas_price(self) -> int:
        return _to_int(await self.call("eth_gasPrice", []))

    async def get_code(self, address: str, block: str = "latest") -> bytes:
        res = await self.call("eth_getCode", [address, block])
        return to_bytes(hexstr=res) if res else b""

    async def eth_call(self, tx: Dict[str, Any], block: str = "latest", *, timeout_s: Optional[float] = None) -> bytes:
        res = await self.call("eth_call", [tx, block], timeout_s=timeout_s)
        return to_bytes(hexstr=res) if res else b""

    async def send_raw_transaction(self, raw_hex: str) -> str:
        return str(await self.call("eth_sendRawTransaction", [raw_hex]))

    async def get_transaction_receipt(self, tx_hash: str, *, timeout_s: Optional[float] = None) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash], timeout_s=timeout_s)
