# orchestrator/config.py
# NOTE:
# Do not hardcode private keys in the repo. Provide the signer via env var
# (PRIVATE_KEY) or --private-key and keep it out of git.

# Local node (Quorum / Clique dev network)
RPC_URL = "http://localhost:8545"

# Default network profile (configs/networks/<name>.json)
NETWORK_NAME = "quorum-clique"

# Chain id pinned by the genesis file. Never inferred from the wallet.
CHAIN_ID = 1337

# EVM version enabled at block 0 in genesis. Newer targets (shanghai+) emit
# PUSH0, which london nodes accept at deploy time but cannot execute.
EVM_VERSION = "london"

# Fee policy: "zero" (free gas), "fixed" (DEFAULT_GAS_PRICE) or "query" (eth_gasPrice).
FEE_POLICY = "zero"
DEFAULT_GAS_PRICE = 0

# Clique period (seconds). Receipt polling never runs faster than this.
BLOCK_TIME_HINT_S = 15

# Gas limits (explicit, no estimation)
DEFAULT_GAS_LIMIT = 3_000_000
CALL_GAS_LIMIT = 100_000

# Confirmation wait (seconds). Timeout means "stop watching", not "undo".
CONFIRM_TIMEOUT_S = 120.0
MIN_POLL_INTERVAL_S = 0.25

# RPC timeouts (seconds). All RPC calls are clamped to this range.
RPC_TIMEOUT_MIN_S = 2.0
RPC_TIMEOUT_MAX_S = 10.0
RPC_DEFAULT_TIMEOUT_S = 5.0

# Transport retries (connection reset, http 5xx, rpc timeout). JSON-RPC error
# responses are never retried.
RPC_RETRY_COUNT = 3
RPC_BACKOFF_BASE_S = 0.35

# Compiler
SOLC_VERSION = "0.8.19"
OPTIMIZER_ENABLED = True
OPTIMIZER_RUNS = 200

# Deployed runtime code shorter than this is treated as missing.
MIN_CODE_BYTES = 1

# Diagnostics: how much of the offending tx data goes into a report.
REPORT_DATA_PREFIX_CHARS = 100
