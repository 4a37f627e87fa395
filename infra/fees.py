from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from orchestrator.errors import RPCError
from orchestrator.network_profile import FeePolicy, NetworkProfile

logger = logging.getLogger(__name__)


async def get_fee_data(rpc: Any) -> Dict[str, Optional[int]]:
    """Return ``{"gas_price": int | None}`` from eth_gasPrice.

    A node that does not implement eth_gasPrice yields None; transport
    failures propagate.
    """
    try:
        gas_price = await rpc.gas_price()
    except RPCError as exc:
        logger.info("eth_gasPrice unavailable: %s", exc)
        return {"gas_price": None}
    return {"gas_price": int(gas_price)}


async def fee_data_for(profile: NetworkProfile, rpc: Any) -> Optional[Dict[str, Optional[int]]]:
    """Only the "query" policy consults the node."""
    if profile.fee_policy != FeePolicy.QUERY:
        return None
    return await get_fee_data(rpc)


def resolve_gas_price(
    profile: NetworkProfile,
    *,
    override: Optional[int] = None,
    fee_data: Optional[Dict[str, Optional[int]]] = None,
) -> int:
    """Pick the legacy gasPrice for a transaction.

    zero:  always 0. Library/market estimates are ignored, so is the override.
    fixed: override, else profile.default_gas_price.
    query: override, else the node's eth_gasPrice, else profile.default_gas_price.
    """
    if profile.fee_policy == FeePolicy.ZERO:
        if override:
            logger.warning("gas price override %s ignored: network %s uses zero-fee policy", override, profile.name)
        return 0
    if override is not None:
        if int(override) < 0:
            raise ValueError("gas price must be >= 0")
        return int(override)
    if profile.fee_policy == FeePolicy.QUERY:
        quoted = (fee_data or {}).get("gas_price")
        if quoted is not None:
            return int(quoted)
    return int(profile.default_gas_price)
