import asyncio

import pytest

from infra.metrics import METRICS
from infra.rpc import AsyncRPC, extract_revert_data, get_rpc_url
from orchestrator.errors import RPCError, TransportError


class FakeResponse:
    def __init__(self, status=200, payload=None, text=""):
        self.status = status
        self._payload = payload
        self._text = text
        self.request_info = None
        self.history = ()
        self.headers = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def text(self):
        return self._text

    async def json(self, content_type=None):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.posts = []
        self.closed = False

    def post(self, url, json=None):
        self.posts.append(json)
        return self._responses.pop(0)

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    METRICS.reset()


def test_result_is_returned() -> None:
    session = FakeSession([FakeResponse(payload={"jsonrpc": "2.0", "id": 1, "result": "0x539"})])
    client = AsyncRPC("http://node:8545", session=session)
    assert asyncio.run(client.chain_id()) == 1337
    assert session.posts[0]["method"] == "eth_chainId"


def test_jsonrpc_error_is_not_retried() -> None:
    err = {"code": -32000, "message": "nonce too low"}
    session = FakeSession([FakeResponse(payload={"jsonrpc": "2.0", "id": 1, "error": err})])
    client = AsyncRPC("http://node:8545", session=session, max_retries=3, backoff_base_s=0.0)
    with pytest.raises(RPCError) as ei:
        asyncio.run(client.send_raw_transaction("0x00"))
    assert ei.value.code == -32000
    assert ei.value.message == "nonce too low"
    assert len(session.posts) == 1


def test_transport_errors_retry_then_raise() -> None:
    session = FakeSession([FakeResponse(status=503, text="busy") for _ in range(3)])
    client = AsyncRPC("http://node:8545", session=session, max_retries=2, backoff_base_s=0.0)
    with pytest.raises(TransportError) as ei:
        asyncio.run(client.get_block_number())
    assert ei.value.attempts == 3
    assert ei.value.method == "eth_blockNumber"
    assert len(session.posts) == 3
    assert METRICS.reason_count("rpc_fail_by_reason", "http_5xx") == 1


def test_malformed_json_retries_then_succeeds() -> None:
    session = FakeSession(
        [
            FakeResponse(payload=ValueError("bad json")),
            FakeResponse(payload={"jsonrpc": "2.0", "id": 2}),
            FakeResponse(payload={"jsonrpc": "2.0", "id": 3, "result": None}),
        ]
    )
    client = AsyncRPC("http://node:8545", session=session, max_retries=3, backoff_base_s=0.0)
    assert asyncio.run(client.get_transaction_receipt("0xab")) is None
    assert len(session.posts) == 3


def test_client_error_status_is_not_retried() -> None:
    session = FakeSession([FakeResponse(status=401, text="unauthorized")])
    client = AsyncRPC("http://node:8545", session=session, max_retries=3, backoff_base_s=0.0)
    with pytest.raises(TransportError):
        asyncio.run(client.gas_price())
    assert len(session.posts) == 1


def test_get_code_and_eth_call_return_bytes() -> None:
    session = FakeSession(
        [
            FakeResponse(payload={"jsonrpc": "2.0", "id": 1, "result": "0x6080"}),
            FakeResponse(payload={"jsonrpc": "2.0", "id": 2, "result": "0x"}),
        ]
    )
    client = AsyncRPC("http://node:8545", session=session)
    assert asyncio.run(client.get_code("0x01")) == b"\x60\x80"
    assert asyncio.run(client.eth_call({"to": "0x01", "data": "0x"})) == b""


def test_timeout_clamped_to_bounds() -> None:
    client = AsyncRPC("http://node:8545", session=FakeSession([]))
    assert client._clamp_timeout(0.01) == 2.0
    assert client._clamp_timeout(500) == 10.0
    assert client._clamp_timeout(None) == 5.0


def test_get_rpc_url_precedence(monkeypatch) -> None:
    monkeypatch.setenv("RPC_URL", "env-node:8545")
    assert get_rpc_url("http://explicit:1") == "http://explicit:1"
    assert get_rpc_url() == "http://env-node:8545"
    monkeypatch.delenv("RPC_URL")
    assert get_rpc_url() == "http://localhost:8545"


def test_extract_revert_data_shapes() -> None:
    assert extract_revert_data("0x08c379a0") == "0x08c379a0"
    assert extract_revert_data({"data": "0x01"}) == "0x01"
    assert extract_revert_data({"0xhash": {"return": "0x02"}}) == "0x02"
    assert extract_revert_data("Reverted") is None
    assert extract_revert_data(None) is None
