from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from eth_account import Account
from eth_utils import encode_hex, to_checksum_address

from execution.nonce import NonceAllocator, allocator_for
from infra.metrics import METRICS
from orchestrator import config
from orchestrator.errors import RPCError, SubmissionError, SubmissionKind, TransportError
from orchestrator.network_profile import Credential, NetworkProfile
from orchestrator.tx_builder import UnsignedTransaction

logger = logging.getLogger(__name__)


class ReceiptStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def _hex_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: ReceiptStatus
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    contract_address: Optional[str] = None
    logs: Tuple[Dict[str, Any], ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == ReceiptStatus.SUCCESS

    @classmethod
    def pending(cls, tx_hash: str) -> "Receipt":
        return cls(tx_hash=tx_hash, status=ReceiptStatus.PENDING)

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> "Receipt":
        if not raw.get("blockNumber"):
            return cls.pending(str(raw.get("transactionHash") or ""))
        # Receipts without a status field predate byzantium; london nodes always set it.
        status = _hex_int(raw.get("status", "0x1"))
        addr = raw.get("contractAddress")
        return cls(
            tx_hash=str(raw.get("transactionHash") or ""),
            status=ReceiptStatus.SUCCESS if status == 1 else ReceiptStatus.FAILED,
            block_number=_hex_int(raw.get("blockNumber")),
            gas_used=_hex_int(raw.get("gasUsed")),
            contract_address=to_checksum_address(addr) if addr else None,
            logs=tuple(dict(log) for log in raw.get("logs") or []),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "status": self.status.value,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "contract_address": self.contract_address,
            "logs": len(self.logs),
        }


@dataclass(frozen=True)
class SignedTransaction:
    raw: bytes
    tx_hash: str
    nonce: int
    chain_id: int

    @property
    def raw_hex(self) -> str:
        return encode_hex(self.raw)


# Node admission errors (geth/quorum/besu wording) -> short reason tag.
_REJECTION_HINTS = (
    ("nonce too low", "nonce_too_low"),
    ("nonce too high", "nonce_too_high"),
    ("replacement transaction underpriced", "replacement_underpriced"),
    ("transaction underpriced", "underpriced"),
    ("gas price", "gas_price_rejected"),
    ("fee per gas", "gas_price_rejected"),
    ("insufficient funds", "insufficient_funds"),
    ("intrinsic gas too low", "intrinsic_gas_too_low"),
    ("exceeds block gas limit", "gas_limit_exceeds_block"),
    ("invalid sender", "chain_id_mismatch"),
    ("chain id", "chain_id_mismatch"),
    ("chainid", "chain_id_mismatch"),
    ("already known", "already_known"),
    ("known transaction", "already_known"),
)

_NONCE_REASONS = {"nonce_too_low", "nonce_too_high", "replacement_underpriced"}


def rejection_reason(message: str) -> str:
    text = str(message or "").lower()
    for needle, tag in _REJECTION_HINTS:
        if needle in text:
            return tag
    return "rejected"


class SubmissionEngine:
    """Sign, broadcast and watch transactions for one signer.

    A mined transaction with status 0 is returned as a Receipt with
    ``status == failed``; only admission failures and watch timeouts raise.
    """

    def __init__(
        self,
        rpc: Any,
        credential: Credential,
        profile: NetworkProfile,
        *,
        poll_interval_s: Optional[float] = None,
        allocator: Optional[NonceAllocator] = None,
    ) -> None:
        self.rpc = rpc
        self.credential = credential
        self.profile = profile
        if poll_interval_s is None:
            poll_interval_s = max(float(config.MIN_POLL_INTERVAL_S), float(profile.block_time_hint_s))
        self.poll_interval_s = max(0.0, float(poll_interval_s))
        self.nonces = allocator or allocator_for(rpc, credential.address)
        if self.nonces.address.lower() != credential.address.lower():
            raise ValueError("nonce allocator belongs to a different signer")

    @property
    def address(self) -> str:
        return self.credential.address

    def sign(self, unsigned: UnsignedTransaction) -> SignedTransaction:
        if unsigned.chain_id != self.profile.chain_id:
            raise ValueError(f"transaction chain id {unsigned.chain_id} != profile chain id {self.profile.chain_id}")
        signed = Account.sign_transaction(unsigned.to_tx_params(), self.credential.private_key)
        return SignedTransaction(
            raw=bytes(signed.raw_transaction),
            tx_hash=encode_hex(signed.hash),
            nonce=int(unsigned.nonce),
            chain_id=int(unsigned.chain_id),
        )

    async def submit(self, unsigned: UnsignedTransaction) -> SignedTransaction:
        """Assign a nonce, sign and broadcast. Returns once the node accepted it."""
        async with self.nonces.reserve(self.rpc) as nonce:
            tx = unsigned.with_nonce(nonce)
            signed = self.sign(tx)
            await self._broadcast(tx, signed)
        METRICS.inc("tx_submitted")
        logger.info("broadcast %s nonce=%d gas=%d gasPrice=%d to=%s", signed.tx_hash, nonce, tx.gas, tx.gas_price, tx.to or "<create>")
        return signed

    async def _broadcast(self, tx: UnsignedTransaction, signed: SignedTransaction) -> None:
        try:
            node_hash = await self.rpc.send_raw_transaction(signed.raw_hex)
        except RPCError as exc:
            reason = rejection_reason(exc.message)
            if reason == "already_known":
                logger.info("node already knows %s, treating as accepted", signed.tx_hash)
                return
            if reason in _NONCE_REASONS:
                self.nonces.invalidate()
            METRICS.inc("tx_rejected")
            METRICS.inc_reason("tx_rejected_by_reason", reason)
            raise SubmissionError(
                f"node rejected transaction: {exc.message}",
                kind=SubmissionKind.REJECTED,
                tx_hash=signed.tx_hash,
                reason=reason,
                unsigned=tx,
                context={"rpc_code": exc.code, "from": self.address, **tx.describe()},
            ) from exc
        except TransportError as exc:
            # The payload may or may not have reached the node; keep the hash for a re-poll.
            exc.context.update({"tx_hash": signed.tx_hash, "nonce": signed.nonce, "from": self.address})
            raise
        if node_hash and str(node_hash).lower() != signed.tx_hash.lower():
            logger.warning("node returned hash %s, locally computed %s", node_hash, signed.tx_hash)

    async def _poll_until_mined(self, tx_hash: str) -> Receipt:
        polls = 0
        while True:
            polls += 1
            try:
                raw = await self.rpc.get_transaction_receipt(tx_hash)
            except (TransportError, RPCError) as exc:
                METRICS.inc_reason("receipt_poll_errors", type(exc).__name__)
                logger.warning("receipt poll %d for %s failed: %s", polls, tx_hash, exc)
                raw = None
            if raw:
                receipt = Receipt.from_rpc(raw)
                if receipt.status != ReceiptStatus.PENDING:
                    return receipt
            await asyncio.sleep(self.poll_interval_s)

    async def wait_for_receipt(self, tx_hash: str, timeout_s: Optional[float] = None) -> Receipt:
        """Watch ``tx_hash`` until it is mined or ``timeout_s`` elapses.

        Safe to call again after a timeout with the same hash: nothing is
        resent, the transaction stays in the node's pool.
        """
        timeout = float(timeout_s if timeout_s is not None else config.CONFIRM_TIMEOUT_S)
        t0 = time.monotonic()
        try:
            receipt = await asyncio.wait_for(self._poll_until_mined(tx_hash), timeout=timeout)
        except asyncio.TimeoutError:
            METRICS.inc("tx_confirm_timeouts")
            raise SubmissionError(
                f"no receipt for {tx_hash} after {timeout:.1f}s; outcome unknown (still may be mined)",
                kind=SubmissionKind.TIMEOUT,
                tx_hash=tx_hash,
                context={"timeout_s": timeout, "poll_interval_s": self.poll_interval_s},
            ) from None
        METRICS.observe("confirm_latency_s", time.monotonic() - t0)
        METRICS.inc_reason("receipts_by_status", receipt.status.value)
        logger.info("receipt %s status=%s block=%s gasUsed=%s", tx_hash, receipt.status.value, receipt.block_number, receipt.gas_used)
        return receipt

    async def submit_and_confirm(self, unsigned: UnsignedTransaction, timeout_s: Optional[float] = None) -> Receipt:
        signed = await self.submit(unsigned)
        try:
            return await self.wait_for_receipt(signed.tx_hash, timeout_s)
        except SubmissionError as exc:
            exc.unsigned = unsigned.with_nonce(signed.nonce)
            exc.context.update({"nonce": signed.nonce, "from": self.address, "data": "0x" + unsigned.data.hex()})
            raise

    async def resubmit(
        self,
        unsigned: UnsignedTransaction,
        timeout_s: Optional[float] = None,
        *,
        gas_price: Optional[int] = None,
        gas_limit: Optional[int] = None,
    ) -> Receipt:
        """Explicit re-entry after a rejection: fresh nonce, fresh signature.

        Never called automatically. Use it only after fixing what the node
        complained about (nonce, gas, balance); a timed-out transaction
        should be re-polled with wait_for_receipt instead.
        """
        self.nonces.invalidate()
        tx = unsigned
        if gas_price is not None:
            tx = tx.with_gas_price(0 if self.profile.zero_fee else int(gas_price))
        if gas_limit is not None:
            if int(gas_limit) <= 0:
                raise ValueError("gas limit must be > 0")
            tx = replace(tx, gas=int(gas_limit))
        return await self.submit_and_confirm(tx, timeout_s)
