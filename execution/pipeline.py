from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from web3 import Web3

from execution.engine import Receipt, SubmissionEngine
from execution.invoker import InvocationResult, MethodInvoker, replay_revert_reason
from execution.verifier import DeploymentResult, check_deployment
from infra.fees import fee_data_for
from infra.metrics import METRICS
from orchestrator import config
from orchestrator.artifacts import append_jsonl
from orchestrator.classifier import Failure, Outcome, classify, classify_receipt
from orchestrator.compiler import CompiledArtifact, compile_contract
from orchestrator.errors import DeploymentInconsistentError, PipelineError, Stage
from orchestrator.network_profile import Credential, NetworkProfile, Settings
from orchestrator.tx_builder import UnsignedTransaction, build_deployment, build_raw_deployment

logger = logging.getLogger(__name__)

# PUSH1 0x2a PUSH1 0 MSTORE PUSH1 0x20 PUSH1 0 RETURN: runtime code is the 32-byte word 42.
MINIMAL_INITCODE = bytes.fromhex("602a60005260206000f3")


@dataclass(frozen=True)
class DeploymentRequest:
    artifact: CompiledArtifact
    constructor_args: Tuple[Any, ...] = ()
    gas_limit: int = config.DEFAULT_GAS_LIMIT
    gas_price_override: Optional[int] = None

    def __post_init__(self) -> None:
        if int(self.gas_limit) <= 0:
            raise ValueError(f"gas limit must be > 0, got {self.gas_limit}")
        object.__setattr__(self, "constructor_args", tuple(self.constructor_args))


@dataclass
class DeployPipeline:
    """compile -> build -> sign/submit -> confirm -> verify -> invoke.

    Every public coroutine returns an Outcome; failures carry a classified
    Failure instead of escaping as exceptions. One pipeline (one engine)
    per signer: its nonce allocator serializes concurrent flows.
    """

    rpc: Any
    profile: NetworkProfile
    credential: Credential
    confirm_timeout_s: float = config.CONFIRM_TIMEOUT_S
    gas_limit: int = config.DEFAULT_GAS_LIMIT
    call_gas_limit: int = config.CALL_GAS_LIMIT
    poll_interval_s: Optional[float] = None
    events_path: Optional[Path] = None
    compile_fn: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    engine: SubmissionEngine = field(init=False)
    invoker: MethodInvoker = field(init=False)

    def __post_init__(self) -> None:
        self.engine = SubmissionEngine(self.rpc, self.credential, self.profile, poll_interval_s=self.poll_interval_s)
        self.invoker = MethodInvoker(
            self.rpc,
            self.profile,
            self.engine,
            call_gas_limit=self.call_gas_limit,
            confirm_timeout_s=self.confirm_timeout_s,
        )

    @classmethod
    def from_settings(cls, settings: Settings, rpc: Any, **kwargs: Any) -> "DeployPipeline":
        if settings.credential is None:
            raise ValueError("settings carry no credential")
        return cls(
            rpc=rpc,
            profile=settings.profile,
            credential=settings.credential,
            confirm_timeout_s=settings.confirm_timeout_s,
            gas_limit=settings.gas_limit,
            call_gas_limit=settings.call_gas_limit,
            **kwargs,
        )

    # -- bookkeeping ------------------------------------------------------

    def _event(self, event: str, **fields: Any) -> None:
        if self.events_path is not None:
            append_jsonl(self.events_path, {"event": event, **fields})

    def _failed(self, failure: Failure, value: Any = None) -> Outcome[Any]:
        METRICS.inc_reason("failures_by_kind", failure.kind.value)
        logger.error("%s failed at %s: %s", failure.kind.value, failure.stage, failure.message)
        self._event("failure", **failure.as_dict())
        return Outcome.failed(failure, value=value)

    def _classify(self, exc: BaseException, stage: Stage) -> Failure:
        own = getattr(exc, "stage", None)
        # Transport/RPC errors do not know which step they interrupted.
        return classify(exc, stage=own if own not in (None, Stage.NETWORK) else stage)

    # -- stages -----------------------------------------------------------

    def compile(
        self,
        source: str,
        contract_name: str,
        *,
        evm_version: Optional[str] = None,
        optimizer: Optional[Mapping[str, Any]] = None,
        filename: Optional[str] = None,
    ) -> Outcome[CompiledArtifact]:
        target = evm_version or self.profile.evm_version
        if target != self.profile.evm_version:
            logger.warning(
                "compiling for evm %s but network %s runs %s: bytecode may deploy but fail to execute",
                target,
                self.profile.name,
                self.profile.evm_version,
            )
        try:
            artifact = compile_contract(
                source, contract_name, evm_version=target, optimizer=optimizer, filename=filename, compile_fn=self.compile_fn
            )
        except PipelineError as exc:
            return self._failed(classify(exc, stage=Stage.COMPILE))
        self._event("compiled", contract=contract_name, evm_version=target, bytecode_len=len(artifact.bytecode))
        return Outcome.success(artifact)

    async def _confirm_deployment(
        self, unsigned: UnsignedTransaction, artifact: Optional[CompiledArtifact], timeout_s: Optional[float]
    ) -> Outcome[DeploymentResult]:
        stage = Stage.SUBMIT
        try:
            receipt = await self.engine.submit_and_confirm(unsigned, timeout_s if timeout_s is not None else self.confirm_timeout_s)
            stage = Stage.VERIFY
            result = await check_deployment(self.rpc, receipt, artifact=artifact)
        except DeploymentInconsistentError as exc:
            result = DeploymentResult(address=exc.address, receipt=exc.receipt, code_verified=False, artifact=artifact)
            return self._failed(classify(exc), value=result)
        except (PipelineError, ValueError) as exc:
            return self._failed(self._classify(exc, stage))

        self._event("deployed", **result.as_dict())
        if not receipt.succeeded:
            reason = await replay_revert_reason(
                self.rpc, unsigned, from_addr=self.engine.address, block_number=receipt.block_number
            )
            failure = classify_receipt(
                receipt, stage=Stage.CONFIRM, reason=reason, unsigned=unsigned, context={"from": self.engine.address}
            )
            return self._failed(failure, value=result)
        logger.info("deployed %s at %s (block %s)", artifact.contract_name if artifact else "<raw>", result.address, receipt.block_number)
        return Outcome.success(result)

    async def deploy(self, request: DeploymentRequest, *, timeout_s: Optional[float] = None) -> Outcome[DeploymentResult]:
        try:
            unsigned = build_deployment(
                request.artifact,
                request.constructor_args,
                self.profile,
                request.gas_limit,
                request.gas_price_override,
                fee_data=await fee_data_for(self.profile, self.rpc),
            )
        except (PipelineError, ValueError) as exc:
            return self._failed(self._classify(exc, Stage.BUILD))
        return await self._confirm_deployment(unsigned, request.artifact, timeout_s)

    async def deploy_source(
        self,
        source: str,
        contract_name: str,
        constructor_args: Sequence[Any] = (),
        *,
        gas_limit: Optional[int] = None,
        gas_price_override: Optional[int] = None,
        optimizer: Optional[Mapping[str, Any]] = None,
        timeout_s: Optional[float] = None,
    ) -> Outcome[DeploymentResult]:
        compiled = self.compile(source, contract_name, optimizer=optimizer)
        if not compiled.ok:
            return Outcome.failed(compiled.failure)
        try:
            request = DeploymentRequest(
                compiled.value,
                tuple(constructor_args),
                int(self.gas_limit if gas_limit is None else gas_limit),
                gas_price_override,
            )
        except ValueError as exc:
            return self._failed(classify(exc, stage=Stage.BUILD))
        return await self.deploy(request, timeout_s=timeout_s)

    async def deploy_bytecode(
        self, initcode: bytes = MINIMAL_INITCODE, *, gas_limit: int = 1_000_000, timeout_s: Optional[float] = None
    ) -> Outcome[DeploymentResult]:
        """Deploy abi-less initcode; used to check the node's EVM actually runs code."""
        try:
            unsigned = build_raw_deployment(initcode, self.profile, gas_limit)
        except (PipelineError, ValueError) as exc:
            return self._failed(self._classify(exc, Stage.BUILD))
        return await self._confirm_deployment(unsigned, None, timeout_s)

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
    ) -> Outcome[InvocationResult]:
        try:
            res = await self.invoker.invoke(
                address,
                abi,
                function_name,
                args,
                read_only=read_only,
                gas_limit=gas_limit,
                gas_price_override=gas_price_override,
                timeout_s=timeout_s,
            )
        except (PipelineError, ValueError) as exc:
            return self._failed(self._classify(exc, Stage.INVOKE))

        if res.receipt is not None:
            self._event("invoked", function=function_name, to=address, **res.receipt.as_dict())
            if not res.receipt.succeeded:
                reason = await replay_revert_reason(
                    self.rpc, res.unsigned, from_addr=self.engine.address, block_number=res.receipt.block_number
                )
                failure = classify_receipt(
                    res.receipt,
                    stage=Stage.INVOKE,
                    reason=reason,
                    unsigned=res.unsigned,
                    context={"function": function_name, "from": self.engine.address},
                )
                return self._failed(failure, value=res)
        return Outcome.success(res)

    async def invoke_deployment(
        self, deployment: DeploymentResult, function_name: str, args: Sequence[Any] = (), **kwargs: Any
    ) -> Outcome[InvocationResult]:
        """Like invoke(), but refuses deployments that did not pass verification."""
        try:
            bound = self.invoker.for_deployment(deployment)
        except (PipelineError, ValueError) as exc:
            return self._failed(self._classify(exc, Stage.INVOKE))
        return await self.invoke(bound.address, bound.abi, function_name, args, **kwargs)

    async def repoll(self, tx_hash: str, *, timeout_s: Optional[float] = None) -> Outcome[Receipt]:
        """Re-entry after SubmissionTimeout: watch the retained hash again, never resend."""
        try:
            receipt = await self.engine.wait_for_receipt(tx_hash, timeout_s if timeout_s is not None else self.confirm_timeout_s)
        except (PipelineError, ValueError) as exc:
            return self._failed(self._classify(exc, Stage.CONFIRM))
        if not receipt.succeeded:
            return self._failed(classify_receipt(receipt, stage=Stage.CONFIRM), value=receipt)
        return Outcome.success(receipt)

    async def resubmit(
        self,
        unsigned: UnsignedTransaction,
        *,
        gas_price: Optional[int] = None,
        gas_limit: Optional[int] = None,
        timeout_s: Optional[float] = None,
    ) -> Outcome[Receipt]:
        """Re-entry after SubmissionRejected: fresh nonce and signature, caller-fixed parameters."""
        try:
            receipt = await self.engine.resubmit(
                unsigned,
                timeout_s if timeout_s is not None else self.confirm_timeout_s,
                gas_price=gas_price,
                gas_limit=gas_limit,
            )
        except (PipelineError, ValueError) as exc:
            return self._failed(self._classify(exc, Stage.SUBMIT))
        if not receipt.succeeded:
            return self._failed(classify_receipt(receipt, stage=Stage.CONFIRM, unsigned=unsigned), value=receipt)
        return Outcome.success(receipt)

    async def network_info(self) -> Outcome[Dict[str, Any]]:
        """Chain id, head block and signer balance; flags a chain-id mismatch."""
        try:
            chain_id = await self.rpc.chain_id()
            block = await self.rpc.get_block_number()
            balance = await self.rpc.get_balance(self.engine.address)
            nonce = await self.rpc.get_transaction_count(self.engine.address, "pending")
        except (PipelineError, ValueError) as exc:
            return self._failed(self._classify(exc, Stage.NETWORK))
        info = {
            "network": self.profile.name,
            "chain_id": chain_id,
            "profile_chain_id": self.profile.chain_id,
            "chain_id_matches": chain_id == self.profile.chain_id,
            "block_number": block,
            "address": self.engine.address,
            "balance_wei": balance,
            "balance_eth": str(Web3.from_wei(balance, "ether")),
            "pending_nonce": nonce,
            "evm_version": self.profile.evm_version,
            "fee_policy": self.profile.fee_policy.value,
        }
        if not info["chain_id_matches"]:
            logger.warning(
                "node reports chain id %s but profile %s pins %s: signed transactions will be rejected by strict nodes",
                chain_id,
                self.profile.name,
                self.profile.chain_id,
            )
        return Outcome.success(info)


def deployment_record(result: DeploymentResult, pipeline: DeployPipeline) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "address": result.address,
        "tx_hash": result.receipt.tx_hash,
        "block_number": result.receipt.block_number,
        "gas_used": result.receipt.gas_used,
        "chain_id": pipeline.profile.chain_id,
        "network": pipeline.profile.name,
        "deployer": pipeline.engine.address,
        "code_verified": result.code_verified,
    }
    if result.artifact is not None:
        record["contract"] = result.artifact.contract_name
        record["abi"] = list(result.artifact.abi)
    return record
