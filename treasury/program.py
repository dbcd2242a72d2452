from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Tuple

from solders.pubkey import Pubkey

from core.errors import ConfigError, DataError, RpcError

logger = logging.getLogger(__name__)

COLLECTION_CONFIG_SEED = b"collection_config"
WASTE_PIT_SEED = b"sacred_waste_pit"

DISCRIMINATOR_SIZE = 8


@dataclass(frozen=True)
class CollectionConfig:
    authority: str
    name: str
    symbol: str
    uri: str
    treasury: str
    premium_fee: int            # lamports
    total_minted: int
    total_burned: int
    bump: int


def find_config_address(program_id: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([COLLECTION_CONFIG_SEED], program_id)


def find_waste_pit_address(program_id: Pubkey) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([WASTE_PIT_SEED], program_id)


class _Reader:
    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    def take(self, n: int) -> bytes:
        end = self.offset + n
        if end > len(self.data):
            raise DataError(f"account data truncated at byte {self.offset} (need {n})")
        out = self.data[self.offset:end]
        self.offset = end
        return out

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self.take(32)))

    def string(self) -> str:
        (n,) = struct.unpack("<I", self.take(4))
        try:
            return self.take(n).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DataError(f"bad utf-8 string in account data: {e}") from e

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def u8(self) -> int:
        return self.take(1)[0]


def decode_collection_config(data: bytes) -> CollectionConfig:
    r = _Reader(data, DISCRIMINATOR_SIZE)
    if len(data) < DISCRIMINATOR_SIZE:
        raise DataError("account data shorter than its discriminator")
    return CollectionConfig(
        authority=r.pubkey(),
        name=r.string(),
        symbol=r.string(),
        uri=r.string(),
        treasury=r.pubkey(),
        premium_fee=r.u64(),
        total_minted=r.u64(),
        total_burned=r.u64(),
        bump=r.u8(),
    )


def verify_treasury(rpc, program_id: Pubkey, treasury: Pubkey) -> CollectionConfig:
    """The program's config must name this keypair as its treasury."""
    address, _ = find_config_address(program_id)
    try:
        data = rpc.get_account_data(str(address))
    except RpcError as e:
        raise ConfigError(f"Could not read program config {address}: {e}") from e
    if data is None:
        raise ConfigError(f"Program config {address} does not exist; is the program initialized?")
    try:
        config = decode_collection_config(data)
    except DataError as e:
        raise ConfigError(f"Program config {address} is unreadable: {e}") from e
    if config.treasury != str(treasury):
        raise ConfigError(f"Program treasury is {config.treasury}, keypair is {treasury}")
    logger.info("Program config %s: treasury verified, %d burned so far", address, config.total_burned)
    return config
