from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class NonceAllocator:
    """Single-writer nonce source for one signer.

    The lock is held from the pending-count fetch until the broadcast is
    answered, so concurrent flows on the same signer get consecutive nonces.
    The next nonce is max(node pending count, local cursor): nodes whose
    "pending" count lags behind freshly broadcast transactions cannot hand
    out the same nonce twice. The cursor only advances when the caller's
    block exits cleanly (broadcast accepted).
    """

    def __init__(self, address: str) -> None:
        self.address = address
        self._lock = asyncio.Lock()
        self._cursor: Optional[int] = None

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    def invalidate(self) -> None:
        """Forget the local cursor; the next reservation trusts the node again."""
        if self._cursor is not None:
            logger.info("nonce cursor for %s reset (was %d)", self.address, self._cursor)
        self._cursor = None

    @asynccontextmanager
    async def reserve(self, rpc: Any) -> AsyncIterator[int]:
        async with self._lock:
            pending = int(await rpc.get_transaction_count(self.address, "pending"))
            nonce = pending if self._cursor is None else max(pending, self._cursor)
            yield nonce
            self._cursor = nonce + 1


# (endpoint, lowercased signer) -> allocator shared by every engine in the process.
_ALLOCATORS: Dict[Tuple[Any, str], NonceAllocator] = {}


def _endpoint_key(rpc: Any) -> Any:
    url = getattr(rpc, "url", None)
    if isinstance(url, str) and url:
        return url
    return rpc


def allocator_for(rpc: Any, address: str) -> NonceAllocator:
    """Return the one allocator for ``address`` on the node behind ``rpc``.

    Engines built separately for the same signer and endpoint (two pipelines,
    two CLI commands in one process) share its lock and cursor.
    """
    key = (_endpoint_key(rpc), str(address).lower())
    alloc = _ALLOCATORS.get(key)
    if alloc is None:
        alloc = _ALLOCATORS[key] = NonceAllocator(address)
    return alloc
