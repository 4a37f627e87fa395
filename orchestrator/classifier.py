from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

from orchestrator import config
from orchestrator.errors import (
    CompileError,
    DeploymentInconsistentError,
    EncodingError,
    InvocationError,
    InvocationKind,
    PipelineError,
    RPCError,
    Stage,
    SubmissionError,
    SubmissionKind,
    TransportError,
)

T = TypeVar("T")


class FailureKind(str, Enum):
    COMPILE_FAILURE = "CompileFailure"
    ENCODING_FAILURE = "EncodingFailure"
    SUBMISSION_REJECTED = "SubmissionRejected"
    SUBMISSION_TIMEOUT = "SubmissionTimeout"
    ON_CHAIN_REVERT = "OnChainRevert"
    DEPLOYMENT_INCONSISTENT = "DeploymentInconsistent"
    TRANSPORT_FAILURE = "TransportFailure"


_HINTS = {
    FailureKind.COMPILE_FAILURE: "fix the source; nothing was sent to the network",
    FailureKind.ENCODING_FAILURE: "check argument count/types against the abi; nothing was sent to the network",
    FailureKind.SUBMISSION_REJECTED: "fix gas/nonce/balance/chain id, then rebuild and resubmit (no automatic retry)",
    FailureKind.SUBMISSION_TIMEOUT: "outcome unknown: re-poll the tx hash instead of resubmitting",
    FailureKind.ON_CHAIN_REVERT: "transaction was mined and reverted; gas was consumed",
    FailureKind.DEPLOYMENT_INCONSISTENT: "receipt and chain state disagree; check the node, do not redeploy blindly",
    FailureKind.TRANSPORT_FAILURE: "node unreachable or malformed response after retries; check RPC endpoint",
}

# Outcomes where calling again with the same inputs is reasonable.
_RETRYABLE = {FailureKind.TRANSPORT_FAILURE}


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    stage: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        # Node-reported JSON-RPC errors are answers, not transport faults.
        return self.kind in _RETRYABLE and not self.context.get("node_error")

    @property
    def hint(self) -> str:
        return _HINTS[self.kind]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: v for k, v in self.context.items() if _jsonable(v)},
        }


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Explicit result: callers branch on ``failure.kind``, never on message text."""

    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failed(cls, failure: Failure, value: Optional[T] = None) -> "Outcome[T]":
        return cls(value=value, failure=failure)


def _jsonable(v: Any) -> bool:
    return v is None or isinstance(v, (str, int, float, bool, list, dict))


def _stage_name(stage: Any) -> str:
    return stage.value if isinstance(stage, Stage) else str(stage)


def _receipt_context(receipt: Any) -> Dict[str, Any]:
    status = getattr(receipt, "status", None)
    return {
        "tx_hash": getattr(receipt, "tx_hash", None),
        "receipt_status": getattr(status, "value", status),
        "gas_used": getattr(receipt, "gas_used", None),
        "block_number": getattr(receipt, "block_number", None),
        "contract_address": getattr(receipt, "contract_address", None),
    }


def _tx_context(unsigned: Any) -> Dict[str, Any]:
    if unsigned is None or not hasattr(unsigned, "describe"):
        return {}
    return {k: v for k, v in unsigned.describe().items() if v is not None}


def classify_receipt(
    receipt: Any,
    *,
    stage: Any = Stage.CONFIRM,
    reason: Optional[str] = None,
    unsigned: Any = None,
    context: Optional[Dict[str, Any]] = None,
) -> Failure:
    """A mined transaction with status failed -> OnChainRevert."""
    status = getattr(getattr(receipt, "status", None), "value", None)
    if status != "failed":
        raise ValueError(f"receipt status {status!r} is not a failure")
    ctx: Dict[str, Any] = {**_tx_context(unsigned), **(context or {}), **_receipt_context(receipt)}
    if reason:
        ctx["revert_reason"] = reason
    msg = f"transaction {ctx.get('tx_hash')} mined in block {ctx.get('block_number')} with status failed"
    if reason:
        msg += f": {reason}"
    return Failure(FailureKind.ON_CHAIN_REVERT, _stage_name(stage), msg, ctx)


def classify(error: BaseException, *, stage: Any = None, context: Optional[Dict[str, Any]] = None) -> Failure:
    """Map a pipeline exception to its Failure. Pure: no I/O."""
    ctx: Dict[str, Any] = dict(getattr(error, "context", None) or {})
    ctx.update(context or {})
    msg = str(getattr(error, "message", None) or error)
    st = _stage_name(stage if stage is not None else getattr(error, "stage", Stage.NETWORK))

    if isinstance(error, CompileError):
        if error.errors:
            ctx.setdefault("compiler_errors", list(error.errors))
        return Failure(FailureKind.COMPILE_FAILURE, st, msg, ctx)
    if isinstance(error, EncodingError):
        return Failure(FailureKind.ENCODING_FAILURE, st, msg, ctx)
    if isinstance(error, SubmissionError):
        ctx = {**_tx_context(error.unsigned), **ctx}
        ctx.setdefault("tx_hash", error.tx_hash)
        if error.kind == SubmissionKind.TIMEOUT:
            return Failure(FailureKind.SUBMISSION_TIMEOUT, st, msg, ctx)
        ctx.setdefault("reason", error.reason)
        return Failure(FailureKind.SUBMISSION_REJECTED, st, msg, ctx)
    if isinstance(error, InvocationError):
        if error.reason:
            ctx.setdefault("revert_reason", error.reason)
        if error.kind == InvocationKind.REVERTED:
            return Failure(FailureKind.ON_CHAIN_REVERT, st, msg, ctx)
        if error.kind == InvocationKind.UNUSABLE_TARGET:
            return Failure(FailureKind.DEPLOYMENT_INCONSISTENT, st, msg, ctx)
        return Failure(FailureKind.ENCODING_FAILURE, st, msg, ctx)
    if isinstance(error, DeploymentInconsistentError):
        ctx.update({k: v for k, v in _receipt_context(error.receipt).items() if v is not None})
        ctx.setdefault("address", error.address)
        return Failure(FailureKind.DEPLOYMENT_INCONSISTENT, st, msg, ctx)
    if isinstance(error, RPCError):
        ctx.update({"method": error.method, "rpc_code": error.code, "node_error": True})
        return Failure(FailureKind.TRANSPORT_FAILURE, st, msg, ctx)
    if isinstance(error, TransportError):
        ctx.update({"method": error.method, "attempts": error.attempts})
        return Failure(FailureKind.TRANSPORT_FAILURE, st, msg, ctx)
    if isinstance(error, PipelineError):
        return Failure(FailureKind.TRANSPORT_FAILURE, st, msg, ctx)
    if isinstance(error, (ValueError, TypeError)):
        # Local validation before anything is signed (gas limit, chain id, addresses).
        return Failure(FailureKind.ENCODING_FAILURE, _stage_name(stage or Stage.BUILD), msg, ctx)
    raise TypeError(f"cannot classify {type(error).__name__}: {error}")


def _data_prefix(data: Any, limit: int) -> str:
    text = str(data)
    return text if len(text) <= limit else text[:limit] + "..."


def render_report(failure: Failure, *, data_prefix_chars: int = config.REPORT_DATA_PREFIX_CHARS) -> str:
    """Multi-line diagnostic for stderr."""
    ctx = failure.context
    lines: List[str] = [f"[{failure.stage}] {failure.kind.value}: {failure.message}"]
    if ctx.get("reason"):
        lines.append(f"  reason: {ctx['reason']}")
    if ctx.get("revert_reason"):
        lines.append(f"  revert reason: {ctx['revert_reason']}")
    if ctx.get("tx_hash"):
        lines.append(f"  tx hash: {ctx['tx_hash']}")
    if ctx.get("receipt_status") is not None:
        lines.append(
            f"  receipt: status={ctx.get('receipt_status')} gasUsed={ctx.get('gas_used')} block={ctx.get('block_number')}"
        )
    for key in ("address", "contract_address", "from", "to", "chain_id", "nonce", "gas", "gas_price", "method", "attempts"):
        if ctx.get(key) is not None:
            lines.append(f"  {key}: {ctx[key]}")
    if ctx.get("data"):
        lines.append(f"  data: {_data_prefix(ctx['data'], data_prefix_chars)}")
    for err in ctx.get("compiler_errors") or []:
        lines.append("  " + str(err).strip().replace("\n", "\n  "))
    lines.append(f"  hint: {failure.hint}")
    return "\n".join(lines)
