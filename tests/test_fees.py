import asyncio

import pytest

from infra import fees
from orchestrator.errors import RPCError


class FakeRPC:
    def __init__(self, price=None, exc=None):
        self._price = price
        self._exc = exc
        self.calls = 0

    async def gas_price(self):
        self.calls += 1
        if self._exc is not None:
            raise self._exc
        return self._price


def test_zero_policy_never_asks_the_node(profile) -> None:
    rpc = FakeRPC(price=20_000_000_000)
    assert asyncio.run(fees.fee_data_for(profile, rpc)) is None
    assert rpc.calls == 0
    assert fees.resolve_gas_price(profile, override=10**9, fee_data={"gas_price": 10**9}) == 0


def test_query_policy_reads_eth_gas_price(query_profile) -> None:
    rpc = FakeRPC(price=123)
    assert asyncio.run(fees.fee_data_for(query_profile, rpc)) == {"gas_price": 123}


def test_missing_eth_gas_price_falls_back(query_profile) -> None:
    rpc = FakeRPC(exc=RPCError("method not found", code=-32601))
    data = asyncio.run(fees.get_fee_data(rpc))
    assert data == {"gas_price": None}
    assert fees.resolve_gas_price(query_profile, fee_data=data) == query_profile.default_gas_price


def test_negative_override_rejected(query_profile) -> None:
    with pytest.raises(ValueError):
        fees.resolve_gas_price(query_profile, override=-1)
