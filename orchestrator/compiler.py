from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from eth_utils import to_bytes

from orchestrator import config
from orchestrator.errors import CompileError

logger = logging.getLogger(__name__)

CompileFn = Callable[[Dict[str, Any]], Dict[str, Any]]

OUTPUT_SELECTION = {"*": {"*": ["abi", "evm.bytecode.object"]}}


@dataclass(frozen=True)
class CompiledArtifact:
    contract_name: str
    bytecode: bytes
    abi: Tuple[Dict[str, Any], ...]
    warnings: Tuple[str, ...] = ()

    @property
    def bytecode_hex(self) -> str:
        return "0x" + self.bytecode.hex()

    def constructor(self) -> Optional[Dict[str, Any]]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return entry
        return None

    def function_names(self) -> List[str]:
        return [str(e.get("name")) for e in self.abi if e.get("type") == "function"]


def build_compile_request(
    source: str,
    *,
    filename: str,
    evm_version: str,
    optimizer: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    opt = dict(optimizer) if optimizer is not None else {"enabled": config.OPTIMIZER_ENABLED, "runs": config.OPTIMIZER_RUNS}
    return {
        "language": "Solidity",
        "sources": {filename: {"content": source}},
        "settings": {
            "outputSelection": OUTPUT_SELECTION,
            "evmVersion": str(evm_version),
            "optimizer": {"enabled": bool(opt.get("enabled", False)), "runs": int(opt.get("runs", 200))},
        },
    }


def _split_diagnostics(output: Mapping[str, Any]) -> Tuple[List[str], List[str]]:
    errors: List[str] = []
    warnings: List[str] = []
    for diag in output.get("errors") or []:
        msg = str(diag.get("formattedMessage") or diag.get("message") or "").strip()
        if str(diag.get("severity", "")).lower() == "error":
            errors.append(msg)
        else:
            warnings.append(msg)
    return errors, warnings


def _artifact_from_entry(contract_name: str, entry: Mapping[str, Any], warnings: Sequence[str] = ()) -> CompiledArtifact:
    abi = entry.get("abi")
    if isinstance(abi, str):
        abi = json.loads(abi)
    bytecode = entry.get("bytecode")
    if isinstance(bytecode, Mapping):
        bytecode = bytecode.get("object")
    if bytecode is None:
        bytecode = ((entry.get("evm") or {}).get("bytecode") or {}).get("object")
    bytecode = str(bytecode or "").strip()
    if "__$" in bytecode:
        raise CompileError(f"{contract_name}: bytecode has unlinked library references")
    if bytecode.startswith("0x"):
        bytecode = bytecode[2:]
    if not bytecode:
        raise CompileError(f"{contract_name}: empty bytecode (abstract contract or interface?)")
    if abi is None:
        raise CompileError(f"{contract_name}: artifact has no abi")
    return CompiledArtifact(
        contract_name=contract_name,
        bytecode=to_bytes(hexstr=bytecode),
        abi=tuple(dict(e) for e in abi),
        warnings=tuple(warnings),
    )


def extract_artifact(output: Mapping[str, Any], filename: str, contract_name: str) -> CompiledArtifact:
    """Pick ``contract_name`` out of standard-JSON compiler output."""
    errors, warnings = _split_diagnostics(output)
    if errors:
        raise CompileError(f"compilation failed: {errors[0]}", errors=errors)
    for w in warnings:
        logger.warning("solc: %s", w.splitlines()[0] if w else w)

    contracts = output.get("contracts") or {}
    entry = (contracts.get(filename) or {}).get(contract_name)
    if entry is None:
        found = sorted(name for per_file in contracts.values() for name in per_file)
        raise CompileError(f"contract {contract_name!r} not found in compiler output (found: {found})")
    return _artifact_from_entry(contract_name, entry, warnings)


def solcx_compile(request: Dict[str, Any], *, solc_version: Optional[str] = None) -> Dict[str, Any]:
    """Run solc through py-solc-x, installing the pinned version on first use."""
    import solcx
    from solcx.exceptions import SolcError, SolcNotInstalled

    version = solc_version or config.SOLC_VERSION
    try:
        return solcx.compile_standard(request, solc_version=version)
    except SolcNotInstalled:
        logger.info("installing solc %s", version)
        solcx.install_solc(version)
        return solcx.compile_standard(request, solc_version=version)
    except SolcError as exc:
        # compile_standard raises on severity=error; keep the formatted messages.
        output = getattr(exc, "stdout_data", None)
        errors: List[str] = []
        if output:
            try:
                errors, _ = _split_diagnostics(json.loads(output))
            except ValueError:
                errors = []
        message = errors[0] if errors else str(exc).strip().splitlines()[0]
        raise CompileError(f"compilation failed: {message}", errors=errors or [str(exc)]) from exc


def compile_contract(
    source: str,
    contract_name: str,
    *,
    evm_version: str = config.EVM_VERSION,
    optimizer: Optional[Mapping[str, Any]] = None,
    filename: Optional[str] = None,
    solc_version: Optional[str] = None,
    compile_fn: Optional[CompileFn] = None,
) -> CompiledArtifact:
    if not source or not source.strip():
        raise CompileError("empty source")
    if not contract_name:
        raise CompileError("missing contract name")
    fname = filename or f"{contract_name}.sol"
    request = build_compile_request(source, filename=fname, evm_version=evm_version, optimizer=optimizer)
    if compile_fn is None:
        output = solcx_compile(request, solc_version=solc_version)
    else:
        output = compile_fn(request)
    artifact = extract_artifact(output, fname, contract_name)
    logger.info("compiled %s (evm=%s, %d bytes, %d warning(s))", contract_name, evm_version, len(artifact.bytecode), len(artifact.warnings))
    return artifact


def load_artifact(path: Path, contract_name: Optional[str] = None) -> CompiledArtifact:
    """Read a precompiled artifact: raw ``{abi, bytecode}``, Hardhat or Foundry JSON."""
    p = Path(path)
    if not p.exists():
        raise CompileError(f"artifact not found: {p}")
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise CompileError(f"artifact is not valid json: {p}: {exc}") from exc
    if not isinstance(data, dict):
        raise CompileError(f"artifact is not a json object: {p}")
    name = contract_name or str(data.get("contractName") or p.stem)
    return _artifact_from_entry(name, data)
