from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from core.errors import ConfigError

LAMPORTS_PER_SOL = 1_000_000_000

DEFAULT_SOLANA_RPC = "https://api.mainnet-beta.solana.com"
DEFAULT_JUPITER_API = "https://lite-api.jup.ag/swap/v1"


# ============================================================
# ENV HELPERS
# ============================================================

def _get(env: Mapping[str, str], name: str, default: str = "") -> str:
    return (env.get(name) or default).strip()


def _require(env: Mapping[str, str], name: str) -> str:
    v = _get(env, name)
    if not v:
        raise ConfigError(f"Missing {name}")
    return v


def _int(env: Mapping[str, str], name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = _get(env, name, str(default))
    try:
        v = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if minimum is not None and v < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {v}")
    return v


def _float(env: Mapping[str, str], name: str, default: float, minimum: float = 0.0) -> float:
    raw = _get(env, name, str(default))
    try:
        v = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if v < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {v}")
    return v


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _get(env, name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _optional_int(env: Mapping[str, str], name: str) -> Optional[int]:
    raw = _get(env, name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer (raw units), got {raw!r}") from e


def sol_to_lamports(value: str, name: str = "amount") -> int:
    """'0.5' -> 500_000_000, exactly. Sub-lamport precision is refused."""
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise ConfigError(f"{name} is not a SOL amount: {value!r}") from e
    if not d.is_finite() or d < 0:
        raise ConfigError(f"{name} must be a non-negative SOL amount: {value!r}")
    lamports = d * LAMPORTS_PER_SOL
    if lamports != lamports.to_integral_value():
        raise ConfigError(f"{name} has sub-lamport precision: {value!r}")
    return int(lamports)


# ============================================================
# FEED SERVICE
# ============================================================

@dataclass(frozen=True)
class SolanaWatchSettings:
    rpc_url: str
    watch_address: str
    token_mint: str
    token_decimals: int = 6
    token_symbol: str = "TOKEN"
    initial_supply: Optional[int] = None    # raw units
    poll_seconds: float = 15.0
    backfill: int = 20
    rpc_timeout: float = 20.0


@dataclass(frozen=True)
class EthereumWatchSettings:
    rpc_url: str
    token_address: str
    buyback_address: str = ""
    input_token_address: str = ""
    token_decimals: int = 18
    token_symbol: str = "TOKEN"
    input_symbol: str = "WETH"
    input_decimals: int = 18
    initial_supply: Optional[int] = None    # raw units
    poll_seconds: float = 15.0
    confirmations: int = 3
    max_block_range: int = 2000
    backfill_blocks: int = 5000
    rpc_timeout: float = 20.0


@dataclass(frozen=True)
class FeedSettings:
    host: str = "0.0.0.0"
    port: int = 8080
    window_size: int = 50
    queue_size: int = 256
    solana: Optional[SolanaWatchSettings] = None
    ethereum: Optional[EthereumWatchSettings] = None


def load_feed_settings(env: Optional[Mapping[str, str]] = None) -> FeedSettings:
    env = os.environ if env is None else env
    timeout = _float(env, "RPC_TIMEOUT_SECONDS", 20.0, minimum=1.0)

    solana = None
    sol_addr = _get(env, "SOLANA_WATCH_ADDRESS") or _get(env, "TREASURY_WALLET")
    mint = _get(env, "TOKEN_MINT")
    if sol_addr and mint:
        solana = SolanaWatchSettings(
            rpc_url=_get(env, "SOLANA_RPC_URL") or _get(env, "RPC_URL", DEFAULT_SOLANA_RPC),
            watch_address=sol_addr,
            token_mint=mint,
            token_decimals=_int(env, "TOKEN_DECIMALS", 6, minimum=0),
            token_symbol=_get(env, "TOKEN_SYMBOL", "TOKEN"),
            initial_supply=_optional_int(env, "SOLANA_INITIAL_SUPPLY"),
            poll_seconds=_float(env, "SOLANA_POLL_SECONDS", 15.0, minimum=1.0),
            backfill=_int(env, "SOLANA_BACKFILL", 20, minimum=1),
            rpc_timeout=timeout,
        )

    ethereum = None
    eth_rpc = _get(env, "ETH_RPC_URL")
    eth_token = _get(env, "ETH_TOKEN_ADDRESS")
    if eth_rpc and eth_token:
        ethereum = EthereumWatchSettings(
            rpc_url=eth_rpc,
            token_address=eth_token.lower(),
            buyback_address=_get(env, "ETH_BUYBACK_ADDRESS").lower(),
            input_token_address=_get(env, "ETH_INPUT_TOKEN").lower(),
            input_symbol=_get(env, "ETH_INPUT_SYMBOL", "WETH"),
            input_decimals=_int(env, "ETH_INPUT_DECIMALS", 18, minimum=0),
            token_decimals=_int(env, "ETH_TOKEN_DECIMALS", 18, minimum=0),
            token_symbol=_get(env, "ETH_TOKEN_SYMBOL") or _get(env, "TOKEN_SYMBOL", "TOKEN"),
            initial_supply=_optional_int(env, "ETH_INITIAL_SUPPLY"),
            poll_seconds=_float(env, "ETH_POLL_SECONDS", 15.0, minimum=1.0),
            confirmations=_int(env, "ETH_CONFIRMATIONS", 3, minimum=0),
            max_block_range=_int(env, "ETH_MAX_BLOCK_RANGE", 2000, minimum=1),
            backfill_blocks=_int(env, "ETH_BACKFILL_BLOCKS", 5000, minimum=0),
            rpc_timeout=timeout,
        )

    return FeedSettings(
        host=_get(env, "FEED_HOST", "0.0.0.0"),
        port=_int(env, "PORT", 8080, minimum=1),
        window_size=_int(env, "FEED_WINDOW_SIZE", 50, minimum=1),
        queue_size=_int(env, "FEED_QUEUE_SIZE", 256, minimum=1),
        solana=solana,
        ethereum=ethereum,
    )


# ============================================================
# FEED CLIENT
# ============================================================

@dataclass(frozen=True)
class FeedClientSettings:
    api_url: str = "http://localhost:8080"
    ws_url: str = "ws://localhost:8080/ws"
    reconnect_seconds: float = 5.0
    snapshot_limit: int = 50
    timeout: float = 10.0


def load_feed_client_settings(env: Optional[Mapping[str, str]] = None) -> FeedClientSettings:
    env = os.environ if env is None else env
    return FeedClientSettings(
        api_url=_get(env, "FEED_API_URL", "http://localhost:8080").rstrip("/"),
        ws_url=_get(env, "FEED_WS_URL", "ws://localhost:8080/ws"),
        reconnect_seconds=_float(env, "FEED_RECONNECT_SECONDS", 5.0, minimum=0.0),
        snapshot_limit=_int(env, "FEED_SNAPSHOT_LIMIT", 50, minimum=1),
    )


# ============================================================
# TREASURY AGENT
# ============================================================

@dataclass(frozen=True)
class TreasurySettings:
    rpc_url: str
    keypair_path: str
    token_mint: str
    expected_wallet: str = ""
    token_decimals: int = 6
    token_program: str = "token-2022"
    threshold_lamports: int = 500_000_000
    buyback_ratio: float = 0.70
    fee_reserve_lamports: int = 10_000_000
    slippage_bps: int = 100
    priority_fee_lamports: int = 50_000
    burn_tokens: bool = True
    dry_run: bool = False
    watch_interval: float = 60.0
    rpc_timeout: float = 20.0
    confirm_timeout: float = 60.0
    submit_retries: int = 3
    jupiter_api_url: str = DEFAULT_JUPITER_API
    program_id: str = ""
    telegram_bot_token: str = ""
    telegram_chat_id: Optional[int] = None


def load_treasury_settings(env: Optional[Mapping[str, str]] = None) -> TreasurySettings:
    env = os.environ if env is None else env

    ratio = _float(env, "BUYBACK_RATIO", 0.70)
    if not 0.0 <= ratio <= 1.0:
        raise ConfigError(f"BUYBACK_RATIO must be within [0, 1], got {ratio}")

    program = _get(env, "TOKEN_PROGRAM", "token-2022").lower()
    if program not in ("token", "token-2022"):
        raise ConfigError(f"TOKEN_PROGRAM must be 'token' or 'token-2022', got {program!r}")

    chat_id = None
    chat_raw = _get(env, "TELEGRAM_CHAT_ID")
    if chat_raw:
        try:
            chat_id = int(chat_raw)
        except ValueError as e:
            raise ConfigError("TELEGRAM_CHAT_ID must be an integer.") from e

    return TreasurySettings(
        rpc_url=_get(env, "RPC_URL", DEFAULT_SOLANA_RPC),
        keypair_path=os.path.expanduser(_get(env, "TREASURY_KEYPAIR_PATH", "./treasury-keypair.json")),
        token_mint=_require(env, "TOKEN_MINT"),
        expected_wallet=_get(env, "TREASURY_WALLET"),
        token_decimals=_int(env, "TOKEN_DECIMALS", 6, minimum=0),
        token_program=program,
        threshold_lamports=sol_to_lamports(_get(env, "BUYBACK_THRESHOLD_SOL", "0.5"), "BUYBACK_THRESHOLD_SOL"),
        buyback_ratio=ratio,
        fee_reserve_lamports=sol_to_lamports(_get(env, "FEE_RESERVE_SOL", "0.01"), "FEE_RESERVE_SOL"),
        slippage_bps=_int(env, "SLIPPAGE_BPS", 100, minimum=0),
        priority_fee_lamports=_int(env, "PRIORITY_FEE_LAMPORTS", 50_000, minimum=0),
        burn_tokens=_bool(env, "BURN_TOKENS", True),
        dry_run=_bool(env, "DRY_RUN", False),
        watch_interval=_float(env, "WATCH_INTERVAL_SECONDS", 60.0, minimum=1.0),
        rpc_timeout=_float(env, "RPC_TIMEOUT_SECONDS", 20.0, minimum=1.0),
        confirm_timeout=_float(env, "CONFIRM_TIMEOUT_SECONDS", 60.0, minimum=1.0),
        submit_retries=_int(env, "SUBMIT_RETRIES", 3, minimum=1),
        jupiter_api_url=_get(env, "JUPITER_API_URL", DEFAULT_JUPITER_API).rstrip("/"),
        program_id=_get(env, "PROGRAM_ID"),
        telegram_bot_token=_get(env, "TELEGRAM_BOT_TOKEN"),
        telegram_chat_id=chat_id,
    )
