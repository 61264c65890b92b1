from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

DEFAULT_BACKOFF_SCHEDULE: Tuple[int, ...] = (0, 60, 300, 900, 3600, 21600)


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded from environment variables.

    Env vars:
    - PERSISTENCE_BACKEND: 'memory' (default) or 'sqlite'
    - SQLITE_DB_PATH: path to sqlite db file. Default './data/todos.db'
    - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins; '*' by default
    - ENABLE_BASIC_AUTH: 'true' to take the owner identity from HTTP Basic Auth (default: false)
    - BASIC_AUTH_USERNAME / BASIC_AUTH_PASSWORD: credentials when ENABLE_BASIC_AUTH=true
    - DEFAULT_OWNER_ID: owner used when auth is off and no X-Owner-Id header is sent
    - LEDGER_BACKEND: 'memory' (default) or 'web3'
    - LEDGER_SIGNER_ADDRESS: signing identity of the in-memory ledger
    - BLOCKCHAIN_NETWORK: 'sepolia' (default), 'localhost' or 'hardhat'
    - BLOCKCHAIN_RPC_URL: overrides the network's RPC URL
    - BLOCKCHAIN_PRIVATE_KEY: signer key (required for LEDGER_BACKEND=web3)
    - CONTRACT_ADDRESS: overrides the network's TodoRegistry address
    - LEDGER_TX_TIMEOUT_SECONDS: receipt wait timeout (default 120)
    - SYNC_WORKERS: background sync threads (default 4)
    - SYNC_MAX_RETRIES: failed attempts before a todo is left for operators (default 10)
    - SYNC_SWEEP_INTERVAL_SECONDS: sweeper period (default 300)
    - SYNC_SWEEP_BATCH_SIZE: todos retried per sweep (default 10)
    - SYNC_STALE_PENDING_SECONDS: age after which a pending todo counts as lost (default 900)
    - SYNC_SWEEPER_ENABLED: 'true' (default) to run the sweeper thread
    - LOG_LEVEL: logging level name (default INFO)
    """

    persistence_backend: str
    sqlite_db_path: str
    cors_allow_origins: List[str]
    enable_basic_auth: bool
    basic_auth_username: Optional[str]
    basic_auth_password: Optional[str]
    default_owner_id: str = "local"
    ledger_backend: str = "memory"
    ledger_signer_address: str = "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
    blockchain_network: str = "sepolia"
    blockchain_rpc_url: Optional[str] = None
    blockchain_private_key: Optional[str] = None
    contract_address: Optional[str] = None
    ledger_tx_timeout_seconds: float = 120.0
    sync_workers: int = 4
    sync_max_retries: int = 10
    sync_sweep_interval_seconds: float = 300.0
    sync_sweep_batch_size: int = 10
    sync_stale_pending_seconds: float = 900.0
    sync_sweeper_enabled: bool = True
    sync_backoff_schedule: Tuple[int, ...] = field(default=DEFAULT_BACKOFF_SCHEDULE)
    log_level: str = "INFO"


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def _parse_bool(value: str, default: bool = False) -> bool:
    v = value.strip().lower()
    if v in {"1", "true", "yes", "on"}:
        return True
    if v in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int(value: str, default: int, minimum: int = 0) -> int:
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _parse_float(value: str, default: float) -> float:
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def _parse_origins(origins_value: str) -> List[str]:
    """
    Parse CORS origins from env. Supports:
    - '*' to allow all origins
    - Comma-separated list of origins
    """
    value = origins_value.strip()
    if value == "*":
        # Star will be handled in main via allow_origins=["*"]
        return ["*"]
    return [o.strip() for o in value.split(",") if o.strip()]


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return application settings loaded from environment variables."""
    backend = _get_env("PERSISTENCE_BACKEND", "memory").strip().lower()
    if backend not in {"memory", "sqlite"}:
        # Fallback to memory if unsupported
        backend = "memory"

    ledger_backend = _get_env("LEDGER_BACKEND", "memory").strip().lower()
    if ledger_backend not in {"memory", "web3"}:
        ledger_backend = "memory"

    sqlite_path = _get_env("SQLITE_DB_PATH", "./data/todos.db").strip()
    cors_raw = _get_env("CORS_ALLOW_ORIGINS", "*")
    origins = _parse_origins(cors_raw)

    enable_basic_auth = _parse_bool(_get_env("ENABLE_BASIC_AUTH", "false"), False)
    basic_user = os.getenv("BASIC_AUTH_USERNAME") if enable_basic_auth else None
    basic_pass = os.getenv("BASIC_AUTH_PASSWORD") if enable_basic_auth else None

    return Settings(
        persistence_backend=backend,
        sqlite_db_path=sqlite_path,
        cors_allow_origins=origins,
        enable_basic_auth=enable_basic_auth,
        basic_auth_username=basic_user,
        basic_auth_password=basic_pass,
        default_owner_id=_get_env("DEFAULT_OWNER_ID", "local").strip(),
        ledger_backend=ledger_backend,
        ledger_signer_address=_get_env(
            "LEDGER_SIGNER_ADDRESS", "0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"
        ).strip(),
        blockchain_network=_get_env("BLOCKCHAIN_NETWORK", "sepolia").strip().lower(),
        blockchain_rpc_url=os.getenv("BLOCKCHAIN_RPC_URL") or None,
        blockchain_private_key=os.getenv("BLOCKCHAIN_PRIVATE_KEY") or None,
        contract_address=os.getenv("CONTRACT_ADDRESS") or None,
        ledger_tx_timeout_seconds=_parse_float(_get_env("LEDGER_TX_TIMEOUT_SECONDS", "120"), 120.0),
        sync_workers=_parse_int(_get_env("SYNC_WORKERS", "4"), 4, minimum=1),
        sync_max_retries=_parse_int(_get_env("SYNC_MAX_RETRIES", "10"), 10, minimum=1),
        sync_sweep_interval_seconds=_parse_float(_get_env("SYNC_SWEEP_INTERVAL_SECONDS", "300"), 300.0),
        sync_sweep_batch_size=_parse_int(_get_env("SYNC_SWEEP_BATCH_SIZE", "10"), 10, minimum=1),
        sync_stale_pending_seconds=_parse_float(_get_env("SYNC_STALE_PENDING_SECONDS", "900"), 900.0),
        sync_sweeper_enabled=_parse_bool(_get_env("SYNC_SWEEPER_ENABLED", "true"), True),
        log_level=_get_env("LOG_LEVEL", "INFO").strip().upper(),
    )
