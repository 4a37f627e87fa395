from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from eth_abi import encode as abi_encode, is_encodable
from eth_abi.exceptions import EncodingError as AbiEncodingError
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address

from infra.fees import resolve_gas_price
from orchestrator.compiler import CompiledArtifact
from orchestrator.errors import EncodingError
from orchestrator.network_profile import NetworkProfile


@dataclass(frozen=True)
class UnsignedTransaction:
    chain_id: int
    gas: int
    gas_price: int
    data: bytes
    to: Optional[str] = None
    value: int = 0
    nonce: Optional[int] = None

    @property
    def is_deployment(self) -> bool:
        return self.to is None

    def with_nonce(self, nonce: int) -> "UnsignedTransaction":
        return replace(self, nonce=int(nonce))

    def with_gas_price(self, gas_price: int) -> "UnsignedTransaction":
        return replace(self, gas_price=int(gas_price))

    def to_tx_params(self) -> Dict[str, Any]:
        """Legacy (type 0) params for eth_account. A deployment has no ``to``."""
        if self.nonce is None:
            raise ValueError("nonce not assigned")
        params: Dict[str, Any] = {
            "chainId": int(self.chain_id),
            "nonce": int(self.nonce),
            "gas": int(self.gas),
            "gasPrice": int(self.gas_price),
            "value": int(self.value),
            "data": "0x" + self.data.hex(),
        }
        if self.to is not None:
            params["to"] = self.to
        return params

    def describe(self) -> Dict[str, Any]:
        return {
            "to": self.to,
            "chain_id": self.chain_id,
            "nonce": self.nonce,
            "gas": self.gas,
            "gas_price": self.gas_price,
            "value": self.value,
            "data": "0x" + self.data.hex(),
        }


def abi_type(param: Mapping[str, Any]) -> str:
    """Canonical type string, expanding ``tuple`` into ``(a,b,...)``."""
    typ = str(param.get("type") or "")
    if typ.startswith("tuple"):
        inner = ",".join(abi_type(c) for c in param.get("components") or [])
        return f"({inner}){typ[len('tuple'):]}"
    return typ


def input_types(entry: Optional[Mapping[str, Any]]) -> List[str]:
    return [abi_type(p) for p in (entry or {}).get("inputs") or []]


def output_types(entry: Mapping[str, Any]) -> List[str]:
    return [abi_type(p) for p in entry.get("outputs") or []]


def function_signature(entry: Mapping[str, Any]) -> str:
    return f"{entry.get('name')}({','.join(input_types(entry))})"


def function_selector(entry: Mapping[str, Any]) -> bytes:
    return function_signature_to_4byte_selector(function_signature(entry))


def find_function(abi: Sequence[Mapping[str, Any]], name: str, args: Sequence[Any] = ()) -> Dict[str, Any]:
    """Select the function named ``name``; overloads are told apart by arity."""
    candidates = [dict(e) for e in abi if e.get("type") == "function" and e.get("name") == name]
    if not candidates:
        raise EncodingError(f"function {name!r} not found in abi")
    if len(candidates) == 1:
        return candidates[0]
    by_arity = [e for e in candidates if len(e.get("inputs") or []) == len(args)]
    if len(by_arity) != 1:
        sigs = [function_signature(e) for e in candidates]
        raise EncodingError(f"ambiguous call to {name!r} with {len(args)} argument(s): {sigs}")
    return by_arity[0]


def _coerce(typ: str, value: Any) -> Any:
    if typ.endswith("]"):
        if not isinstance(value, (list, tuple)):
            return value
        base = typ[: typ.rindex("[")]
        return [_coerce(base, v) for v in value]
    if (typ.startswith("uint") or typ.startswith("int")) and isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            return value
    if typ == "address" and isinstance(value, str) and is_address(value):
        return to_checksum_address(value)
    if typ.startswith("bytes") and isinstance(value, str) and value.startswith("0x"):
        try:
            return bytes.fromhex(value[2:])
        except ValueError:
            return value
    return value


def encode_arguments(types: Sequence[str], args: Sequence[Any], *, label: str) -> bytes:
    args = list(args or [])
    if len(types) != len(args):
        raise EncodingError(f"{label}: expected {len(types)} argument(s) {list(types)}, got {len(args)}")
    values = [_coerce(t, v) for t, v in zip(types, args)]
    for i, (t, v) in enumerate(zip(types, values)):
        if not is_encodable(t, v):
            raise EncodingError(f"{label}: argument {i} ({v!r}) is not encodable as {t}")
    try:
        return abi_encode(list(types), values)
    except (AbiEncodingError, TypeError, ValueError) as exc:
        raise EncodingError(f"{label}: {exc}") from exc


def encode_call_data(entry: Mapping[str, Any], args: Sequence[Any]) -> bytes:
    types = input_types(entry)
    return function_selector(entry) + encode_arguments(types, args, label=function_signature(entry))


def _check_gas_limit(gas_limit: int) -> int:
    gas = int(gas_limit)
    if gas <= 0:
        raise ValueError(f"gas limit must be > 0, got {gas_limit}")
    return gas


def build_deployment(
    artifact: CompiledArtifact,
    constructor_args: Sequence[Any],
    profile: NetworkProfile,
    gas_limit: int,
    gas_price_override: Optional[int] = None,
    *,
    fee_data: Optional[Mapping[str, Optional[int]]] = None,
    value: int = 0,
) -> UnsignedTransaction:
    ctor = artifact.constructor()
    encoded = encode_arguments(input_types(ctor), constructor_args, label=f"{artifact.contract_name}.constructor")
    return UnsignedTransaction(
        chain_id=int(profile.chain_id),
        gas=_check_gas_limit(gas_limit),
        gas_price=resolve_gas_price(profile, override=gas_price_override, fee_data=dict(fee_data) if fee_data else None),
        data=artifact.bytecode + encoded,
        to=None,
        value=int(value),
    )


def build_raw_deployment(
    initcode: bytes,
    profile: NetworkProfile,
    gas_limit: int,
    gas_price_override: Optional[int] = None,
) -> UnsignedTransaction:
    """Deployment of hand-written initcode with no abi (EVM probes)."""
    if not initcode:
        raise EncodingError("empty initcode")
    return UnsignedTransaction(
        chain_id=int(profile.chain_id),
        gas=_check_gas_limit(gas_limit),
        gas_price=resolve_gas_price(profile, override=gas_price_override),
        data=bytes(initcode),
    )


def build_call(
    address: str,
    abi_entry: Mapping[str, Any],
    args: Sequence[Any],
    profile: NetworkProfile,
    gas_limit: int,
    gas_price_override: Optional[int] = None,
    *,
    fee_data: Optional[Mapping[str, Optional[int]]] = None,
    value: int = 0,
) -> UnsignedTransaction:
    if not is_address(address):
        raise EncodingError(f"invalid contract address {address!r}")
    return UnsignedTransaction(
        chain_id=int(profile.chain_id),
        gas=_check_gas_limit(gas_limit),
        gas_price=resolve_gas_price(profile, override=gas_price_override, fee_data=dict(fee_data) if fee_data else None),
        data=encode_call_data(abi_entry, args),
        to=to_checksum_address(address),
        value=int(value),
    )
