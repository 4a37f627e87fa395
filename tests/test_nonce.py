import asyncio

import pytest

from conftest import FakeNode
from execution.engine import SubmissionEngine
from execution.nonce import NonceAllocator, allocator_for
from execution.pipeline import DeployPipeline
from orchestrator.tx_builder import build_raw_deployment

INITCODE = bytes.fromhex("602a60005260206000f3")


class CountRPC:
    def __init__(self, pending: int) -> None:
        self.pending = pending

    async def get_transaction_count(self, address, block="pending"):
        await asyncio.sleep(0)
        return self.pending


@pytest.mark.asyncio
async def test_cursor_wins_over_lagging_pending_count() -> None:
    alloc = NonceAllocator("0xabc")
    rpc = CountRPC(pending=5)
    async with alloc.reserve(rpc) as n:
        assert n == 5
    async with alloc.reserve(rpc) as n:
        assert n == 6
    rpc.pending = 9
    async with alloc.reserve(rpc) as n:
        assert n == 9


@pytest.mark.asyncio
async def test_failed_reservation_does_not_advance_cursor() -> None:
    alloc = NonceAllocator("0xabc")
    rpc = CountRPC(pending=3)
    with pytest.raises(RuntimeError):
        async with alloc.reserve(rpc):
            raise RuntimeError("broadcast failed")
    assert alloc.cursor is None
    async with alloc.reserve(rpc) as n:
        assert n == 3


@pytest.mark.asyncio
async def test_invalidate_trusts_node_again() -> None:
    alloc = NonceAllocator("0xabc")
    rpc = CountRPC(pending=4)
    async with alloc.reserve(rpc):
        pass
    assert alloc.cursor == 5
    alloc.invalidate()
    rpc.pending = 2
    async with alloc.reserve(rpc) as n:
        assert n == 2


@pytest.mark.asyncio
async def test_concurrent_submissions_get_distinct_consecutive_nonces(profile, credential) -> None:
    node = FakeNode(auto_mine=False)
    node.pending_lag = True
    engine = SubmissionEngine(node, credential, profile, poll_interval_s=0.01)
    tx = build_raw_deployment(INITCODE, profile, 200_000)

    signed = await asyncio.gather(*(engine.submit(tx) for _ in range(8)))

    nonces = sorted(s.nonce for s in signed)
    assert nonces == list(range(8))
    assert len({s.tx_hash for s in signed}) == 8
    assert sorted(t["nonce"] for t in node.sent) == list(range(8))


def test_allocator_is_shared_per_endpoint_and_signer() -> None:
    a, b = FakeNode(), FakeNode()
    assert allocator_for(a, "0xAbC") is allocator_for(a, "0xabc")
    assert allocator_for(a, "0xabc") is not allocator_for(b, "0xabc")
    assert allocator_for(a, "0xabc") is not allocator_for(a, "0xdef")


@pytest.mark.asyncio
async def test_two_pipelines_on_one_signer_never_repeat_a_nonce(profile, credential) -> None:
    node = FakeNode(auto_mine=False)
    node.pending_lag = True
    first = DeployPipeline(rpc=node, profile=profile, credential=credential, poll_interval_s=0.01, confirm_timeout_s=1.0)
    second = DeployPipeline(rpc=node, profile=profile, credential=credential, poll_interval_s=0.01, confirm_timeout_s=1.0)
    assert first.engine.nonces is second.engine.nonces

    tx = build_raw_deployment(INITCODE, profile, 200_000)
    signed = await asyncio.gather(first.engine.submit(tx), second.engine.submit(tx), first.engine.submit(tx))
    assert sorted(s.nonce for s in signed) == [0, 1, 2]

    node.mine()
    receipts = await asyncio.gather(*(second.repoll(s.tx_hash) for s in signed))
    assert all(r.ok and r.value.succeeded for r in receipts)
