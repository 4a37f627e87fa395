from typing import Any, Dict, List, Optional

import pytest
import rlp
from eth_abi import decode as abi_decode, encode as abi_encode
from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, keccak, to_bytes, to_checksum_address

from execution.pipeline import MINIMAL_INITCODE
from orchestrator.errors import RPCError, TransportError
from orchestrator.network_profile import Credential, FeePolicy, NetworkProfile

# Ganache's first deterministic account.
TEST_KEY = "0x4f3edf983ac636a65a842ce7c78d9aa706d3b113bce9c46f30d7d21715b23b1d"

SEL_STORE = function_signature_to_4byte_selector("store(uint256)")
SEL_RETRIEVE = function_signature_to_4byte_selector("retrieve()")
SEL_NUMBER = function_signature_to_4byte_selector("number()")
SEL_INCREMENT = function_signature_to_4byte_selector("increment()")

RUNTIME_CODE = bytes.fromhex("6080604052348015600f57600080fd5b50")
# Gas a contract creation needs beyond intrinsic before it can succeed.
CREATE_EXEC_GAS = 50_000

STORAGE_ABI = [
    {"type": "function", "name": "store", "stateMutability": "nonpayable",
     "inputs": [{"name": "num", "type": "uint256"}], "outputs": []},
    {"type": "function", "name": "retrieve", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "number", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"type": "function", "name": "increment", "stateMutability": "nonpayable",
     "inputs": [], "outputs": []},
]


def error_payload(reason: str) -> str:
    return "0x08c379a0" + abi_encode(["string"], [reason]).hex()


def storage_output(contract: str = "SimpleStorage", abi: Optional[List[Dict[str, Any]]] = None,
                   filename: str = "SimpleStorage.sol", errors: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Standard-JSON compiler output shaped like solc's."""
    return {
        "errors": errors or [],
        "contracts": {
            filename: {
                contract: {
                    "abi": abi if abi is not None else STORAGE_ABI,
                    "evm": {"bytecode": {"object": "608060405234801561001057600080fd5b50"}},
                }
            }
        },
    }


def _int(b: bytes) -> int:
    return int.from_bytes(b, "big") if b else 0


class FakeNode:
    """In-memory stand-in for a zero-fee clique node.

    Speaks the AsyncRPC capability set. Raw transactions are rlp-decoded
    and checked the way geth admits them; contracts created here behave like
    SimpleStorage, keyed by selector.
    """

    def __init__(self, chain_id: int = 1337, *, auto_mine: bool = True, min_gas_price: int = 0) -> None:
        self.chain_id_value = chain_id
        self.auto_mine = auto_mine
        self.min_gas_price = min_gas_price
        self.block = 1
        self.nonces: Dict[str, int] = {}
        self.pool: List[Dict[str, Any]] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.code: Dict[str, bytes] = {}
        self.storage: Dict[str, int] = {}
        self.balances: Dict[str, int] = {}
        self.revert_selectors: Dict[bytes, str] = {}
        self.empty_code = False
        self.pending_lag = False
        self.gas_price_value: Optional[int] = 5_000_000_000
        self.sent: List[Dict[str, Any]] = []
        self.receipt_polls = 0
        self.fail_polls = 0

    # -- capability set ---------------------------------------------------

    async def chain_id(self, *, timeout_s=None) -> int:
        return self.chain_id_value

    async def get_block_number(self, *, timeout_s=None) -> int:
        return self.block

    async def get_balance(self, address, block="latest") -> int:
        return self.balances.get(to_checksum_address(address), 10**21)

    async def get_transaction_count(self, address, block="pending") -> int:
        addr = to_checksum_address(address)
        mined = self.nonces.get(addr, 0)
        if self.pending_lag:
            return mined
        return mined + sum(1 for tx in self.pool if tx["from"] == addr)

    async def gas_price(self) -> int:
        if self.gas_price_value is None:
            raise RPCError("the method eth_gasPrice does not exist", method="eth_gasPrice", code=-32601)
        return self.gas_price_value

    async def get_code(self, address, block="latest") -> bytes:
        return self.code.get(to_checksum_address(address), b"")

    async def eth_call(self, tx, block="latest", *, timeout_s=None) -> bytes:
        data = to_bytes(hexstr=tx.get("data") or "0x")
        to = tx.get("to")
        if to is None:
            return b""
        addr = to_checksum_address(to)
        if addr not in self.code:
            return b""
        sel = data[:4]
        if sel in self.revert_selectors:
            reason = self.revert_selectors[sel]
            raise RPCError(f"execution reverted: {reason}", method="eth_call", code=3, data=error_payload(reason))
        if sel in (SEL_RETRIEVE, SEL_NUMBER):
            return abi_encode(["uint256"], [self.storage.get(addr, 0)])
        return b""

    async def send_raw_transaction(self, raw_hex: str) -> str:
        raw = to_bytes(hexstr=raw_hex)
        nonce, gas_price, gas, to, value, data, v, _r, _s = rlp.decode(raw)
        tx_chain = (_int(v) - 35) // 2
        if tx_chain != self.chain_id_value:
            raise RPCError("invalid sender", method="eth_sendRawTransaction", code=-32000)
        sender = Account.recover_transaction(raw_hex)
        tx_hash = "0x" + keccak(raw).hex()
        if any(p["hash"] == tx_hash for p in self.pool) or tx_hash in self.receipts:
            raise RPCError("already known", method="eth_sendRawTransaction", code=-32000)
        expected = self.nonces.get(sender, 0) + sum(1 for p in self.pool if p["from"] == sender)
        if _int(nonce) < expected:
            raise RPCError("nonce too low", method="eth_sendRawTransaction", code=-32000)
        if _int(gas) < 21_000:
            raise RPCError("intrinsic gas too low", method="eth_sendRawTransaction", code=-32000)
        if _int(gas_price) < self.min_gas_price:
            raise RPCError("transaction underpriced", method="eth_sendRawTransaction", code=-32000)
        tx = {
            "hash": tx_hash,
            "from": sender,
            "nonce": _int(nonce),
            "gas": _int(gas),
            "gas_price": _int(gas_price),
            "to": to_checksum_address(to) if to else None,
            "value": _int(value),
            "data": bytes(data),
        }
        self.pool.append(tx)
        self.sent.append(tx)
        if self.auto_mine:
            self.mine()
        return tx_hash

    async def get_transaction_receipt(self, tx_hash, *, timeout_s=None):
        self.receipt_polls += 1
        if self.fail_polls > 0:
            self.fail_polls -= 1
            raise TransportError("connection reset", method="eth_getTransactionReceipt", attempts=4)
        return self.receipts.get(tx_hash)

    # -- chain ------------------------------------------------------------

    def mine(self) -> None:
        self.pool.sort(key=lambda t: (t["from"], t["nonce"]))
        for tx in list(self.pool):
            if tx["nonce"] != self.nonces.get(tx["from"], 0):
                continue
            self.pool.remove(tx)
            self.block += 1
            self.nonces[tx["from"]] = tx["nonce"] + 1
            self.receipts[tx["hash"]] = self._execute(tx)

    def _execute(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        receipt: Dict[str, Any] = {
            "transactionHash": tx["hash"],
            "blockNumber": hex(self.block),
            "gasUsed": hex(21_000),
            "status": "0x1",
            "contractAddress": None,
            "logs": [],
        }
        if tx["to"] is None:
            sender = to_bytes(hexstr=tx["from"])
            address = to_checksum_address(keccak(rlp.encode([sender, tx["nonce"]]))[-20:])
            if tx["gas"] < 21_000 + CREATE_EXEC_GAS:
                receipt.update(status="0x0", gasUsed=hex(tx["gas"]))
                return receipt
            receipt["contractAddress"] = address.lower()
            receipt["gasUsed"] = hex(21_000 + CREATE_EXEC_GAS)
            if not self.empty_code:
                if tx["data"] == MINIMAL_INITCODE:
                    self.code[address] = (42).to_bytes(32, "big")
                else:
                    self.code[address] = RUNTIME_CODE
            return receipt

        sel = tx["data"][:4]
        if sel in self.revert_selectors or tx["to"] not in self.code:
            receipt.update(status="0x0", gasUsed=hex(tx["gas"]))
            return receipt
        if sel == SEL_STORE:
            self.storage[tx["to"]] = abi_decode(["uint256"], tx["data"][4:])[0]
        elif sel == SEL_INCREMENT:
            self.storage[tx["to"]] = self.storage.get(tx["to"], 0) + 1
        receipt["gasUsed"] = hex(43_000)
        receipt["logs"] = [{"address": tx["to"].lower(), "data": "0x"}]
        return receipt


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


@pytest.fixture
def profile() -> NetworkProfile:
    return NetworkProfile(
        name="quorum-clique",
        chain_id=1337,
        default_gas_price=0,
        evm_version="london",
        block_time_hint_s=15,
        fee_policy=FeePolicy.ZERO,
    )


@pytest.fixture
def query_profile() -> NetworkProfile:
    return NetworkProfile(
        name="ganache",
        chain_id=1337,
        default_gas_price=1_000_000_000,
        evm_version="paris",
        block_time_hint_s=1,
        fee_policy=FeePolicy.QUERY,
    )


@pytest.fixture
def credential() -> Credential:
    return Credential(TEST_KEY)
