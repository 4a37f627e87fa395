from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Sequence


class Stage(str, Enum):
    COMPILE = "compile"
    BUILD = "build"
    SUBMIT = "submit"
    CONFIRM = "confirm"
    VERIFY = "verify"
    INVOKE = "invoke"
    NETWORK = "network"


class PipelineError(Exception):
    """Base for every failure raised by the deploy/invoke pipeline."""

    stage: Stage = Stage.NETWORK

    def __init__(self, message: str, *, stage: Optional[Stage] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = str(message)
        if stage is not None:
            self.stage = stage
        self.context: Dict[str, Any] = dict(context or {})


class CompileError(PipelineError):
    stage = Stage.COMPILE

    def __init__(self, message: str, *, errors: Sequence[str] = (), context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context=context)
        self.errors = list(errors)


class EncodingError(PipelineError):
    stage = Stage.BUILD


class TransportError(PipelineError):
    """DNS failure, connection refused, malformed JSON-RPC response, rpc timeout.

    Raised only after AsyncRPC exhausted its retries.
    """

    def __init__(self, message: str, *, method: Optional[str] = None, attempts: int = 0, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.method = method
        self.attempts = int(attempts)


class RPCError(PipelineError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, message: str, *, method: Optional[str] = None, code: Optional[int] = None, data: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.method = method
        self.code = code
        self.data = data


class SubmissionKind(str, Enum):
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class SubmissionError(PipelineError):
    stage = Stage.SUBMIT

    def __init__(
        self,
        message: str,
        *,
        kind: SubmissionKind,
        tx_hash: Optional[str] = None,
        reason: Optional[str] = None,
        unsigned: Any = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, stage=Stage.CONFIRM if kind == SubmissionKind.TIMEOUT else Stage.SUBMIT, context=context)
        self.kind = kind
        self.tx_hash = tx_hash
        self.reason = reason
        # Kept so the caller can rebuild/resubmit explicitly.
        self.unsigned = unsigned


class InvocationKind(str, Enum):
    REVERTED = "reverted"
    DECODE = "decode"
    UNUSABLE_TARGET = "unusable_target"


class InvocationError(PipelineError):
    stage = Stage.INVOKE

    def __init__(self, message: str, *, kind: InvocationKind, reason: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context=context)
        self.kind = kind
        self.reason = reason


class DeploymentInconsistentError(PipelineError):
    """Receipt reports success but no code can be read at the contract address."""

    stage = Stage.VERIFY

    def __init__(self, message: str, *, address: Optional[str], receipt: Any = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context=context)
        self.address = address
        self.receipt = receipt
