from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_utils import is_address

from execution.engine import Receipt, ReceiptStatus
from orchestrator import config
from orchestrator.compiler import CompiledArtifact
from orchestrator.errors import DeploymentInconsistentError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentResult:
    address: Optional[str]
    receipt: Receipt
    code_verified: bool
    artifact: Optional[CompiledArtifact] = None

    @property
    def usable(self) -> bool:
        return bool(self.address) and self.receipt.status == ReceiptStatus.SUCCESS and self.code_verified

    def as_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "code_verified": self.code_verified,
            "contract": self.artifact.contract_name if self.artifact else None,
            "receipt": self.receipt.as_dict(),
        }


async def verify_deployed(rpc: Any, address: Optional[str], *, min_code_bytes: int = config.MIN_CODE_BYTES) -> bool:
    if not address or not is_address(address):
        return False
    code = await rpc.get_code(address)
    ok = len(code or b"") >= max(1, int(min_code_bytes))
    logger.info("code at %s: %d bytes (verified=%s)", address, len(code or b""), ok)
    return ok


async def check_deployment(
    rpc: Any,
    receipt: Receipt,
    *,
    artifact: Optional[CompiledArtifact] = None,
    min_code_bytes: int = config.MIN_CODE_BYTES,
) -> DeploymentResult:
    """Gate a deployment receipt on the code actually present at its address.

    A successful receipt with no contract address or no code raises
    DeploymentInconsistentError; a failed receipt simply yields an unusable
    result.
    """
    address = receipt.contract_address
    verified = await verify_deployed(rpc, address, min_code_bytes=min_code_bytes)
    result = DeploymentResult(address=address, receipt=receipt, code_verified=verified, artifact=artifact)
    if receipt.status == ReceiptStatus.SUCCESS and not verified:
        raise DeploymentInconsistentError(
            f"receipt {receipt.tx_hash} reports success but no code found at {address or '<no contract address>'}",
            address=address,
            receipt=receipt,
            context={"min_code_bytes": min_code_bytes},
        )
    return result
