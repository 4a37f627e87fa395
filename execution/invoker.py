from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_bytes, to_checksum_address

from execution.engine import Receipt, SubmissionEngine
from execution.verifier import DeploymentResult
from infra.fees import fee_data_for
from infra.rpc import extract_revert_data
from orchestrator import config
from orchestrator.errors import InvocationError, InvocationKind, RPCError, TransportError
from orchestrator.network_profile import NetworkProfile
from orchestrator.tx_builder import UnsignedTransaction, build_call, encode_call_data, find_function, output_types

logger = logging.getLogger(__name__)

_SELECTOR_ERROR = b"\x08\xc3\x79\xa0"
_SELECTOR_PANIC = b"\x4e\x48\x7b\x71"


def _as_bytes(data: Union[str, bytes, None]) -> bytes:
    if not data:
        return b""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    try:
        return to_bytes(hexstr=str(data))
    except ValueError:
        return b""


def decode_revert_reason(data: Union[str, bytes, None]) -> Optional[str]:
    raw = _as_bytes(data)
    if raw.startswith(_SELECTOR_ERROR):
        try:
            return str(abi_decode(["string"], raw[4:])[0])
        except DecodingError:
            return "revert (undecodable Error(string))"
    if raw.startswith(_SELECTOR_PANIC):
        try:
            code = abi_decode(["uint256"], raw[4:])[0]
            return f"panic:0x{int(code):x}"
        except DecodingError:
            return "panic"
    return None


def _revert_reason_from_rpc_error(exc: RPCError) -> Optional[str]:
    reason = decode_revert_reason(extract_revert_data(exc.data))
    if reason:
        return reason
    msg = str(exc.message or "")
    lowered = msg.lower()
    if "reverted" in lowered or "revert" in lowered or "out of gas" in lowered or "invalid opcode" in lowered:
        return msg
    return None


async def replay_revert_reason(
    rpc: Any,
    unsigned: UnsignedTransaction,
    *,
    from_addr: str,
    block_number: Optional[int] = None,
) -> Optional[str]:
    """Re-run a failed transaction as eth_call to recover its revert reason.

    Best effort: the replay runs against the post-state of the mined block,
    so the answer can differ from what happened on chain.
    """
    params: Dict[str, Any] = {
        "from": from_addr,
        "data": "0x" + unsigned.data.hex(),
        "gas": hex(int(unsigned.gas)),
    }
    if unsigned.to is not None:
        params["to"] = unsigned.to
    if unsigned.value:
        params["value"] = hex(int(unsigned.value))
    block = hex(int(block_number)) if block_number is not None else "latest"
    try:
        out = await rpc.eth_call(params, block)
    except RPCError as exc:
        return _revert_reason_from_rpc_error(exc)
    except TransportError as exc:
        logger.warning("revert replay for %s skipped: %s", unsigned.to or "<create>", exc)
        return None
    return decode_revert_reason(out)


@dataclass(frozen=True)
class InvocationResult:
    function: str
    read_only: bool
    receipt: Optional[Receipt] = None
    decoded_value: Any = None
    unsigned: Optional[UnsignedTransaction] = None


def _is_view(entry: Mapping[str, Any]) -> bool:
    mut = entry.get("stateMutability")
    if mut is not None:
        return mut in ("view", "pure")
    return bool(entry.get("constant"))


class MethodInvoker:
    """Read-only calls via eth_call, state-changing calls via the submission engine."""

    def __init__(
        self,
        rpc: Any,
        profile: NetworkProfile,
        engine: Optional[SubmissionEngine] = None,
        *,
        call_gas_limit: int = config.CALL_GAS_LIMIT,
        confirm_timeout_s: Optional[float] = None,
    ) -> None:
        self.rpc = rpc
        self.profile = profile
        self.engine = engine
        self.call_gas_limit = int(call_gas_limit)
        self.confirm_timeout_s = confirm_timeout_s

    async def invoke(
        self,
        address: str,
        abi: Sequence[Mapping[str, Any]],
        function_name: str,
        args: Sequence[Any] = (),
        *,
        read_only: Optional[bool] = None,
        gas_limit: Optional[int] = None,
        gas_price_override: Optional[int] = None,
        timeout_s: Optional[float] = None,
        value: int = 0,
    ) -> InvocationResult:
        entry = find_function(abi, function_name, args)
        if read_only is None:
            read_only = _is_view(entry)
        if read_only:
            return await self._call(address, entry, args)
        return await self._transact(address, entry, args, gas_limit, gas_price_override, timeout_s, value)

    async def _call(self, address: str, entry: Dict[str, Any], args: Sequence[Any]) -> InvocationResult:
        name = str(entry.get("name"))
        params: Dict[str, Any] = {"to": to_checksum_address(address), "data": "0x" + encode_call_data(entry, args).hex()}
        if self.engine is not None:
            params["from"] = self.engine.address
        try:
            raw = await self.rpc.eth_call(params, "latest")
        except RPCError as exc:
            reason = _revert_reason_from_rpc_error(exc)
            if reason is None:
                raise
            raise InvocationError(
                f"{name} reverted: {reason}", kind=InvocationKind.REVERTED, reason=reason, context={"to": address, **params}
            ) from exc

        reason = decode_revert_reason(raw)
        if reason:
            raise InvocationError(f"{name} reverted: {reason}", kind=InvocationKind.REVERTED, reason=reason, context={"to": address})
        types = output_types(entry)
        if not types:
            return InvocationResult(function=name, read_only=True, decoded_value=None)
        if not raw:
            raise InvocationError(
                f"{name} returned no data (no code at {address}, or function missing)",
                kind=InvocationKind.DECODE,
                context={"to": address, "data": params["data"]},
            )
        try:
            values = abi_decode(types, raw)
        except DecodingError as exc:
            raise InvocationError(
                f"{name}: cannot decode {len(raw)} byte(s) as {types}: {exc}",
                kind=InvocationKind.DECODE,
                context={"to": address, "result": "0x" + raw.hex()},
            ) from exc
        value = values[0] if len(values) == 1 else tuple(values)
        return InvocationResult(function=name, read_only=True, decoded_value=value)

    async def _transact(
        self,
        address: str,
        entry: Dict[str, Any],
        args: Sequence[Any],
        gas_limit: Optional[int],
        gas_price_override: Optional[int],
        timeout_s: Optional[float],
        value: int,
    ) -> InvocationResult:
        if self.engine is None:
            raise ValueError("state-changing call needs a signer (no submission engine configured)")
        unsigned = build_call(
            address,
            entry,
            args,
            self.profile,
            int(self.call_gas_limit if gas_limit is None else gas_limit),
            gas_price_override,
            fee_data=await fee_data_for(self.profile, self.rpc),
            value=value,
        )
        receipt = await self.engine.submit_and_confirm(
            unsigned, timeout_s if timeout_s is not None else self.confirm_timeout_s
        )
        # No return value: state-changing calls report back through receipt logs.
        return InvocationResult(function=str(entry.get("name")), read_only=False, receipt=receipt, unsigned=unsigned)

    def for_deployment(self, deployment: DeploymentResult) -> "BoundContract":
        if not deployment.usable:
            raise InvocationError(
                f"deployment at {deployment.address} is not usable "
                f"(status={deployment.receipt.status.value}, code_verified={deployment.code_verified})",
                kind=InvocationKind.UNUSABLE_TARGET,
                context=deployment.as_dict(),
            )
        if deployment.artifact is None:
            raise ValueError("deployment has no abi attached")
        return BoundContract(self, str(deployment.address), deployment.artifact.abi)


class BoundContract:
    def __init__(self, invoker: MethodInvoker, address: str, abi: Sequence[Mapping[str, Any]]) -> None:
        self.invoker = invoker
        self.address = address
        self.abi = abi

    async def call(self, function_name: str, *args: Any) -> Any:
        res = await self.invoker.invoke(self.address, self.abi, function_name, args, read_only=True)
        return res.decoded_value

    async def transact(self, function_name: str, *args: Any, **kwargs: Any) -> InvocationResult:
        return await self.invoker.invoke(self.address, self.abi, function_name, args, read_only=False, **kwargs)
