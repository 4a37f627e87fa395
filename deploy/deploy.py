import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from execution.pipeline import DeployPipeline, DeploymentRequest, deployment_record
from infra.metrics import METRICS
from infra.rpc import AsyncRPC
from orchestrator import config
from orchestrator.artifacts import configure_logging, read_deployment, write_deployment, write_json
from orchestrator.classifier import Outcome, classify, render_report
from orchestrator.compiler import CompiledArtifact, load_artifact
from orchestrator.errors import CompileError, PipelineError, Stage
from orchestrator.network_profile import load_settings

PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONTRACTS_DIR = PROJECT_ROOT / "contracts"

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

# Second account for the token scenario (any address works; it only receives).
TOKEN_RECIPIENT = "0x627306090abaB3A6e1400e9345bC60c78a8BEf57"

logger = logging.getLogger("deploy")


def _print(obj: Dict[str, Any]) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _report(outcome: Outcome[Any]) -> int:
    if outcome.ok:
        return EXIT_OK
    print(render_report(outcome.failure), file=sys.stderr)
    return EXIT_FAILURE


def _parse_args_json(raw: Optional[str]) -> List[Any]:
    if not raw:
        return []
    value = json.loads(raw)
    if not isinstance(value, list):
        raise ValueError("--args must be a JSON array")
    return value


def _artifact_from_args(args: argparse.Namespace, pipeline: DeployPipeline) -> Outcome[CompiledArtifact]:
    if getattr(args, "artifact", None):
        try:
            return Outcome.success(load_artifact(Path(args.artifact), args.contract))
        except CompileError as exc:
            return Outcome.failed(classify(exc, stage=Stage.COMPILE))
    if getattr(args, "source", None):
        path = Path(args.source)
        source = path.read_text(encoding="utf-8")
        optimizer = {"enabled": not args.no_optimize, "runs": int(args.optimizer_runs)}
        return pipeline.compile(source, args.contract or path.stem, optimizer=optimizer, filename=path.name)
    if getattr(args, "deployment", None):
        record = read_deployment(Path(args.deployment))
        if not record.get("abi"):
            raise ValueError(f"deployment record {args.deployment} has no abi")
        return Outcome.success(
            CompiledArtifact(contract_name=str(record.get("contract") or "Contract"), bytecode=b"\x00", abi=tuple(record["abi"]))
        )
    raise ValueError("one of --source, --artifact or --deployment is required")


async def cmd_probe(pipeline: DeployPipeline, args: argparse.Namespace) -> int:
    outcome = await pipeline.network_info()
    if outcome.ok:
        _print(outcome.value)
        if not outcome.value["chain_id_matches"]:
            return EXIT_FAILURE
    return _report(outcome)


async def cmd_probe_evm(pipeline: DeployPipeline, args: argparse.Namespace) -> int:
    outcome = await pipeline.deploy_bytecode(timeout_s=args.timeout)
    if outcome.value is not None:
        result = outcome.value
        code = await pipeline.rpc.get_code(result.address) if result.address else b""
        _print({**result.as_dict(), "deployed_code": "0x" + code.hex()})
    return _report(outcome)


async def cmd_deploy(pipeline: DeployPipeline, args: argparse.Namespace) -> int:
    compiled = _artifact_from_args(args, pipeline)
    if not compiled.ok:
        return _report(compiled)
    request = DeploymentRequest(
        artifact=compiled.value,
        constructor_args=tuple(_parse_args_json(args.args)),
        gas_limit=int(pipeline.gas_limit if args.gas_limit is None else args.gas_limit),
        gas_price_override=args.gas_price,
    )
    outcome = await pipeline.deploy(request, timeout_s=args.timeout)
    if outcome.value is not None:
        record = deployment_record(outcome.value, pipeline)
        if outcome.ok and args.out:
            write_deployment(Path(args.out), record)
        _print({k: v for k, v in record.items() if k != "abi"})
    return _report(outcome)


async def cmd_invoke(pipeline: DeployPipeline, args: argparse.Namespace) -> int:
    compiled = _artifact_from_args(args, pipeline)
    if not compiled.ok:
        return _report(compiled)
    address = args.address
    if not address and args.deployment:
        address = read_deployment(Path(args.deployment))["address"]
    if not address:
        raise ValueError("--address (or --deployment) is required")
    outcome = await pipeline.invoke(
        address,
        compiled.value.abi,
        args.function,
        _parse_args_json(args.args),
        read_only=True if args.read_only else None,
        gas_limit=args.gas_limit,
        gas_price_override=args.gas_price,
        timeout_s=args.timeout,
    )
    if outcome.value is not None:
        res = outcome.value
        out: Dict[str, Any] = {"function": res.function, "read_only": res.read_only}
        if res.receipt is not None:
            out["receipt"] = res.receipt.as_dict()
        else:
            out["value"] = res.decoded_value
        _print(out)
    return _report(outcome)


async def cmd_poll(pipeline: DeployPipeline, args: argparse.Namespace) -> int:
    outcome = await pipeline.repoll(args.tx_hash, timeout_s=args.timeout)
    if outcome.value is not None:
        _print(outcome.value.as_dict())
    return _report(outcome)


async def _scenario_storage(pipeline: DeployPipeline, args: argparse.Namespace) -> int:
    source = (CONTRACTS_DIR / "SimpleStorage.sol").read_text(encoding="utf-8")
    deployed = await pipeline.deploy_source(source, "SimpleStorage", timeout_s=args.timeout)
    if not deployed.ok:
        return _report(deployed)
    dep = deployed.value
    logger.info("SimpleStorage deployed to %s", dep.address)

    stored = await pipeline.invoke_deployment(dep, "store", [42], timeout_s=args.timeout)
    if not stored.ok:
        return _report(stored)
    retrieved = await pipeline.invoke_deployment(dep, "retrieve")
    if not retrieved.ok:
        return _report(retrieved)
    incremented = await pipeline.invoke_deployment(dep, "increment", timeout_s=args.timeout)
    if not incremented.ok:
        return _report(incremented)
    number = await pipeline.invoke_deployment(dep, "number")
    if not number.ok:
        return _report(number)

    _print(
        {
            "contract": "SimpleStorage",
            "address": dep.address,
            "store_status": stored.value.receipt.status.value,
            "retrieved": retrieved.value.decoded_value,
            "after_increment": number.value.decoded_value,
        }
    )
    return EXIT_OK if retrieved.value.decoded_value == 42 else EXIT_FAILURE


async def _scenario_token(pipeline: DeployPipeline, args: argparse.Namespace) -> int:
    source = (CONTRACTS_DIR / "SimpleToken.sol").read_text(encoding="utf-8")
    deployed = await pipeline.deploy_source(source, "SimpleToken", [1_000_000], timeout_s=args.timeout)
    if not deployed.ok:
        return _report(deployed)
    dep = deployed.value
    me = pipeline.engine.address
    amount = 100 * 10**18

    steps = [
        ("initial_balance", "balanceOf", [me]),
        ("transfer", "transfer", [TOKEN_RECIPIENT, amount]),
        ("recipient_balance", "balanceOf", [TOKEN_RECIPIENT]),
        ("sender_balance", "balanceOf", [me]),
    ]
    out: Dict[str, Any] = {"contract": "SimpleToken", "address": dep.address}
    for label, fn, fn_args in steps:
        res = await pipeline.invoke_deployment(dep, fn, fn_args, timeout_s=args.timeout)
        if not res.ok:
            return _report(res)
        out[label] = res.value.receipt.status.value if res.value.receipt is not None else res.value.decoded_value
    _print(out)
    return EXIT_OK


async def cmd_scenario(pipeline: DeployPipeline, args: argparse.Namespace) -> int:
    if args.name == "storage":
        return await _scenario_storage(pipeline, args)
    return await _scenario_token(pipeline, args)


COMMANDS = {
    "probe": cmd_probe,
    "probe-evm": cmd_probe_evm,
    "deploy": cmd_deploy,
    "invoke": cmd_invoke,
    "poll": cmd_poll,
    "scenario": cmd_scenario,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deploy and call contracts on a zero-fee private EVM network")
    parser.add_argument("--rpc", default=None, help="RPC URL (default: RPC_URL env or config)")
    parser.add_argument("--private-key", default=None, help="signer private key (default: PRIVATE_KEY env)")
    parser.add_argument("--network", default=None, help="profile name under configs/networks")
    parser.add_argument("--chain-id", type=int, default=None, help="override profile chain id")
    parser.add_argument("--evm-version", default=None, help="override profile evm version")
    parser.add_argument("--fee-policy", default=None, help="zero | query | fixed:<wei>")
    parser.add_argument("--timeout", type=float, default=None, help="confirmation timeout in seconds")
    parser.add_argument("--log-dir", default=None, help="also write run.log here")
    parser.add_argument("--events", default=None, help="append pipeline events (jsonl) here")
    parser.add_argument("--metrics", action="store_true", help="print metrics snapshot to stderr at exit")
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("probe", help="show chain id, block, signer balance; check chain id")
    sub.add_parser("probe-evm", help="deploy minimal raw initcode and show the resulting code")

    def _source_args(p: argparse.ArgumentParser) -> None:
        src = p.add_mutually_exclusive_group()
        src.add_argument("--source", help="Solidity file to compile")
        src.add_argument("--artifact", help="precompiled JSON artifact (abi + bytecode)")
        p.add_argument("--contract", default=None, help="contract name (default: file stem)")
        p.add_argument("--args", default=None, help="JSON array of arguments")
        p.add_argument("--gas-limit", type=int, default=None)
        p.add_argument("--gas-price", type=int, default=None, help="ignored under zero-fee policy")
        p.add_argument("--no-optimize", action="store_true")
        p.add_argument("--optimizer-runs", type=int, default=config.OPTIMIZER_RUNS)

    p_deploy = sub.add_parser("deploy", help="compile (or load) and deploy a contract")
    _source_args(p_deploy)
    p_deploy.add_argument("--out", default=str(PROJECT_ROOT / "deploy" / "deployed.json"), help="deployment record path")

    p_invoke = sub.add_parser("invoke", help="call a function on a deployed contract")
    _source_args(p_invoke)
    p_invoke.add_argument("--deployment", default=None, help="deployment record written by `deploy`")
    p_invoke.add_argument("--address", default=None)
    p_invoke.add_argument("--function", required=True)
    p_invoke.add_argument("--read-only", action="store_true", help="force eth_call (default: from abi mutability)")

    p_poll = sub.add_parser("poll", help="wait again for a transaction that timed out")
    p_poll.add_argument("tx_hash")

    p_scenario = sub.add_parser("scenario", help="end-to-end storage/token walkthrough")
    p_scenario.add_argument("name", choices=["storage", "token"])
    return parser


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings(
        network=args.network,
        rpc_url=args.rpc,
        private_key=args.private_key,
        chain_id=args.chain_id,
        evm_version=args.evm_version,
        fee_policy=args.fee_policy,
        gas_limit=getattr(args, "gas_limit", None),
        confirm_timeout_s=args.timeout,
    )
    logger.info(
        "network=%s chain_id=%s evm=%s fee=%s rpc=%s signer=%s",
        settings.profile.name,
        settings.profile.chain_id,
        settings.profile.evm_version,
        settings.profile.fee_policy.value,
        settings.rpc_url,
        settings.credential.address,
    )
    async with AsyncRPC(settings.rpc_url) as rpc:
        pipeline = DeployPipeline.from_settings(
            settings, rpc, events_path=Path(args.events) if args.events else None
        )
        try:
            return await COMMANDS[args.command](pipeline, args)
        except PipelineError as exc:
            print(render_report(classify(exc)), file=sys.stderr)
            return EXIT_FAILURE


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(Path(args.log_dir) if args.log_dir else None, verbose=args.verbose)
    try:
        code = asyncio.run(_run(args))
    except (ValueError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_USAGE
    finally:
        snapshot = METRICS.snapshot()
        if args.log_dir:
            write_json(Path(args.log_dir) / "metrics.json", snapshot)
        if args.metrics:
            print(json.dumps(snapshot, indent=2), file=sys.stderr)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
