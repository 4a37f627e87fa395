from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from eth_account import Account

from orchestrator import config

logger = logging.getLogger(__name__)

PROFILES_DIR = Path(__file__).resolve().parents[1] / "configs" / "networks"

SUPPORTED_EVM_VERSIONS = (
    "homestead",
    "tangerineWhistle",
    "spuriousDragon",
    "byzantium",
    "constantinople",
    "petersburg",
    "istanbul",
    "berlin",
    "london",
    "paris",
    "shanghai",
    "cancun",
)


class FeePolicy(str, Enum):
    ZERO = "zero"
    FIXED = "fixed"
    QUERY = "query"


@dataclass(frozen=True)
class NetworkProfile:
    name: str
    chain_id: int
    default_gas_price: int
    evm_version: str
    block_time_hint_s: int
    fee_policy: FeePolicy = FeePolicy.ZERO

    def __post_init__(self) -> None:
        if int(self.chain_id) <= 0:
            raise ValueError(f"chain id must be positive, got {self.chain_id}")
        if self.evm_version not in SUPPORTED_EVM_VERSIONS:
            raise ValueError(f"unknown evm version {self.evm_version!r}")
        if int(self.default_gas_price) < 0:
            raise ValueError("default gas price must be >= 0")
        if self.fee_policy == FeePolicy.ZERO and int(self.default_gas_price) != 0:
            raise ValueError("zero-fee profile cannot declare a non-zero default gas price")

    @property
    def zero_fee(self) -> bool:
        return self.fee_policy == FeePolicy.ZERO


@dataclass(frozen=True)
class Credential:
    private_key: str = field(repr=False)
    address: str = field(init=False)

    def __post_init__(self) -> None:
        key = str(self.private_key or "").strip()
        if not key:
            raise ValueError("missing private key")
        if not key.startswith("0x"):
            key = "0x" + key
        object.__setattr__(self, "private_key", key)
        object.__setattr__(self, "address", Account.from_key(key).address)


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    profile: NetworkProfile
    credential: Optional[Credential]
    gas_limit: int
    call_gas_limit: int
    confirm_timeout_s: float


def parse_fee_policy(raw: Any) -> Tuple[FeePolicy, Optional[int]]:
    """Parse "zero" | "query" | "fixed" | "fixed:<wei>"."""
    text = str(raw or "").strip().lower()
    if not text:
        return FeePolicy(config.FEE_POLICY), None
    if text.startswith("fixed:"):
        return FeePolicy.FIXED, int(text.split(":", 1)[1])
    try:
        return FeePolicy(text), None
    except ValueError:
        raise ValueError(f"unknown fee policy {raw!r} (expected zero, query, fixed or fixed:<wei>)") from None


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    data = json.loads(path.read_text(encoding="utf-8"))
    return data if isinstance(data, dict) else None


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return int(raw.strip(), 0)


def load_network_profile(name: Optional[str] = None, *, base_dir: Optional[Path] = None) -> NetworkProfile:
    """Load configs/networks/<name>.json, falling back to orchestrator.config defaults.

    Env overrides: CHAIN_ID, EVM_VERSION, FEE_POLICY, BLOCK_TIME_HINT_S.
    """
    profile_name = str(name or os.getenv("NETWORK_NAME") or config.NETWORK_NAME).strip().lower()
    data = _read_json(Path(base_dir or PROFILES_DIR) / f"{profile_name}.json")
    if data is None:
        logger.info("no profile file for %s, using built-in defaults", profile_name)
        data = {}

    fee_policy, fixed_price = parse_fee_policy(os.getenv("FEE_POLICY") or data.get("fee_policy"))
    default_gas_price = data.get("default_gas_price", config.DEFAULT_GAS_PRICE)
    if fixed_price is not None:
        default_gas_price = fixed_price

    chain_id = _env_int("CHAIN_ID")
    block_time = _env_int("BLOCK_TIME_HINT_S")
    return NetworkProfile(
        name=str(data.get("name") or profile_name),
        chain_id=int(chain_id if chain_id is not None else data.get("chain_id", config.CHAIN_ID)),
        default_gas_price=int(default_gas_price),
        evm_version=str(os.getenv("EVM_VERSION") or data.get("evm_version") or config.EVM_VERSION),
        block_time_hint_s=int(block_time if block_time is not None else data.get("block_time_hint_s", config.BLOCK_TIME_HINT_S)),
        fee_policy=fee_policy,
    )


def load_settings(
    *,
    network: Optional[str] = None,
    rpc_url: Optional[str] = None,
    private_key: Optional[str] = None,
    chain_id: Optional[int] = None,
    evm_version: Optional[str] = None,
    fee_policy: Optional[str] = None,
    gas_limit: Optional[int] = None,
    confirm_timeout_s: Optional[float] = None,
    require_credential: bool = True,
) -> Settings:
    """Explicit args win over env vars, which win over the profile file and config defaults."""
    from infra.rpc import get_rpc_url

    profile = load_network_profile(network)
    overrides: Dict[str, Any] = {}
    if chain_id:
        overrides["chain_id"] = int(chain_id)
    if evm_version:
        overrides["evm_version"] = str(evm_version)
    if fee_policy:
        policy, fixed_price = parse_fee_policy(fee_policy)
        overrides["fee_policy"] = policy
        overrides["default_gas_price"] = 0 if policy == FeePolicy.ZERO else int(fixed_price or profile.default_gas_price)
    if overrides:
        profile = replace(profile, **overrides)

    key = private_key or os.getenv("PRIVATE_KEY")
    credential = Credential(key) if key else None
    if require_credential and credential is None:
        raise ValueError("missing private key (--private-key or PRIVATE_KEY)")

    env_gas = _env_int("GAS_LIMIT")
    limit = int(gas_limit or env_gas or config.DEFAULT_GAS_LIMIT)
    if limit <= 0:
        raise ValueError("gas limit must be > 0")
    timeout = confirm_timeout_s if confirm_timeout_s is not None else os.getenv("CONFIRM_TIMEOUT_S")
    return Settings(
        rpc_url=get_rpc_url(rpc_url),
        profile=profile,
        credential=credential,
        gas_limit=limit,
        call_gas_limit=int(config.CALL_GAS_LIMIT),
        confirm_timeout_s=float(timeout if timeout not in (None, "") else config.CONFIRM_TIMEOUT_S),
    )
