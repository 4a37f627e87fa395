import json
from pathlib import Path

import pytest

from conftest import STORAGE_ABI, storage_output
from orchestrator.compiler import build_compile_request, compile_contract, extract_artifact, load_artifact
from orchestrator.errors import CompileError

CONTRACTS_DIR = Path(__file__).resolve().parents[1] / "contracts"
SOURCE = "pragma solidity ^0.8.19; contract SimpleStorage { uint256 public number; }"


def test_compile_request_pins_evm_and_optimizer() -> None:
    req = build_compile_request(SOURCE, filename="S.sol", evm_version="london", optimizer={"enabled": True, "runs": 50})
    assert req["language"] == "Solidity"
    assert req["sources"]["S.sol"]["content"] == SOURCE
    assert req["settings"]["evmVersion"] == "london"
    assert req["settings"]["optimizer"] == {"enabled": True, "runs": 50}
    assert "evm.bytecode.object" in req["settings"]["outputSelection"]["*"]["*"]


def test_compile_contract_with_injected_compiler() -> None:
    seen = []

    def fake_solc(request):
        seen.append(request)
        return storage_output()

    art = compile_contract(SOURCE, "SimpleStorage", evm_version="london", compile_fn=fake_solc)
    assert art.contract_name == "SimpleStorage"
    assert art.bytecode.startswith(bytes.fromhex("6080"))
    assert art.bytecode_hex.startswith("0x6080")
    assert "store" in art.function_names()
    assert art.constructor() is None
    assert seen[0]["settings"]["evmVersion"] == "london"


def test_compile_is_deterministic_for_same_input() -> None:
    a = compile_contract(SOURCE, "SimpleStorage", compile_fn=lambda req: storage_output())
    b = compile_contract(SOURCE, "SimpleStorage", compile_fn=lambda req: storage_output())
    assert a == b


def test_compile_error_severity_fails_warning_does_not() -> None:
    warn = {"severity": "warning", "formattedMessage": "Warning: unused variable"}
    art = compile_contract(SOURCE, "SimpleStorage", compile_fn=lambda req: storage_output(errors=[warn]))
    assert art.warnings == ("Warning: unused variable",)

    err = {"severity": "error", "formattedMessage": "ParserError: Expected ';' but got '}'"}
    with pytest.raises(CompileError) as ei:
        compile_contract(SOURCE, "SimpleStorage", compile_fn=lambda req: storage_output(errors=[err]))
    assert "ParserError" in ei.value.message
    assert ei.value.errors == ["ParserError: Expected ';' but got '}'"]


def test_missing_contract_name_lists_found_contracts() -> None:
    with pytest.raises(CompileError) as ei:
        extract_artifact(storage_output(), "SimpleStorage.sol", "Other")
    assert "SimpleStorage" in ei.value.message


def test_empty_bytecode_and_unlinked_library_rejected() -> None:
    out = storage_output()
    out["contracts"]["SimpleStorage.sol"]["SimpleStorage"]["evm"]["bytecode"]["object"] = ""
    with pytest.raises(CompileError):
        extract_artifact(out, "SimpleStorage.sol", "SimpleStorage")

    out["contracts"]["SimpleStorage.sol"]["SimpleStorage"]["evm"]["bytecode"]["object"] = "6080__$abc$__"
    with pytest.raises(CompileError, match="unlinked"):
        extract_artifact(out, "SimpleStorage.sol", "SimpleStorage")


def test_empty_source_rejected() -> None:
    with pytest.raises(CompileError):
        compile_contract("   ", "X", compile_fn=lambda req: {})


def test_load_artifact_accepts_hardhat_shape(tmp_path) -> None:
    path = tmp_path / "SimpleStorage.json"
    path.write_text(json.dumps({"contractName": "SimpleStorage", "abi": STORAGE_ABI, "bytecode": "0x6080604052"}))
    art = load_artifact(path)
    assert art.contract_name == "SimpleStorage"
    assert art.bytecode == bytes.fromhex("6080604052")
    assert len(art.abi) == len(STORAGE_ABI)


def test_load_artifact_missing_or_invalid(tmp_path) -> None:
    with pytest.raises(CompileError):
        load_artifact(tmp_path / "nope.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(CompileError):
        load_artifact(bad)


def test_real_solc_compiles_simple_storage() -> None:
    solcx = pytest.importorskip("solcx")
    from orchestrator import config

    if not any(str(v) == config.SOLC_VERSION for v in solcx.get_installed_solc_versions()):
        pytest.skip(f"solc {config.SOLC_VERSION} not installed")
    source = (CONTRACTS_DIR / "SimpleStorage.sol").read_text(encoding="utf-8")
    art = compile_contract(source, "SimpleStorage", evm_version="london")
    assert len(art.bytecode) > 0
    assert {"store", "retrieve", "increment", "number"} <= set(art.function_names())

    with pytest.raises(CompileError):
        compile_contract(source.replace("uint256 public number;", "uint256 public number"), "SimpleStorage")
