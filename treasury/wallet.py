from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Union

from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    WRAPPED_SOL_MINT,
)

from core.errors import ConfigError

logger = logging.getLogger(__name__)


def load_keypair(path: Union[str, Path]) -> Keypair:
    """Solana CLI keypair file: a JSON array of 64 byte values."""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Treasury keypair not found: {p}")
    try:
        raw = json.loads(p.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Treasury keypair unreadable: {p}: {e}") from e
    if not isinstance(raw, list) or len(raw) != 64:
        raise ConfigError(f"Treasury keypair must be a JSON array of 64 integers: {p}")
    try:
        return Keypair.from_bytes(bytes(raw))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Treasury keypair invalid: {e}") from e


def check_wallet(keypair: Keypair, expected: str) -> None:
    if not expected:
        return
    actual = str(keypair.pubkey())
    if actual != expected.strip():
        raise ConfigError(f"Keypair address {actual} does not match TREASURY_WALLET {expected}")


def parse_pubkey(value: str, name: str) -> Pubkey:
    try:
        return Pubkey.from_string(value.strip())
    except ValueError as e:
        raise ConfigError(f"{name} is not a valid address: {value!r}") from e


def token_program_id(name: str) -> Pubkey:
    if name == "token":
        return TOKEN_PROGRAM_ID
    if name == "token-2022":
        return TOKEN_2022_PROGRAM_ID
    raise ConfigError(f"Unknown token program {name!r}")


def associated_token_address(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    addr, _ = Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return addr


def wsol_account(owner: Pubkey) -> Pubkey:
    return associated_token_address(owner, WRAPPED_SOL_MINT, TOKEN_PROGRAM_ID)
