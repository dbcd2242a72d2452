from __future__ import annotations

import logging
from typing import Callable, List, Optional

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID, WRAPPED_SOL_MINT
from spl.token.instructions import SyncNativeParams, sync_native

from core.errors import ExecutionError
from treasury.submit import TransactionSubmitter
from treasury.wallet import wsol_account

logger = logging.getLogger(__name__)

# associated token program: 0 = Create, 1 = CreateIdempotent
CREATE_IDEMPOTENT = bytes([1])

ALREADY_EXISTS_MARKERS = ("already in use", "already exists", "IllegalOwner")


def create_ata_idempotent_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, ata: Pubkey,
                             token_program: Pubkey = TOKEN_PROGRAM_ID) -> Instruction:
    return Instruction(
        ASSOCIATED_TOKEN_PROGRAM_ID,
        CREATE_IDEMPOTENT,
        [
            AccountMeta(payer, True, True),
            AccountMeta(ata, False, True),
            AccountMeta(owner, False, False),
            AccountMeta(mint, False, False),
            AccountMeta(SYSTEM_PROGRAM_ID, False, False),
            AccountMeta(token_program, False, False),
        ],
    )


def wrap_instructions(owner: Pubkey, ata: Pubkey, lamports: int) -> List[Instruction]:
    """Move lamports into the wSOL account, then sync so its token amount follows."""
    return [
        transfer(TransferParams(from_pubkey=owner, to_pubkey=ata, lamports=int(lamports))),
        sync_native(SyncNativeParams(program_id=TOKEN_PROGRAM_ID, account=ata)),
    ]


def _already_exists(err: Exception) -> bool:
    text = str(err)
    return any(m in text for m in ALREADY_EXISTS_MARKERS)


class SolWrapper:
    """Turns native SOL into wSOL in the treasury's associated account."""

    def __init__(self, rpc, keypair: Keypair, submitter: TransactionSubmitter,
                 blockhash: Optional[Callable[[], str]] = None):
        self.rpc = rpc
        self.keypair = keypair
        self.owner = keypair.pubkey()
        self.account = wsol_account(self.owner)
        self.submitter = submitter
        self._blockhash = blockhash or rpc.get_latest_blockhash

    def _sign(self, ixs: List[Instruction]) -> Transaction:
        bh = Hash.from_string(self._blockhash())
        return Transaction.new_signed_with_payer(ixs, self.owner, [self.keypair], bh)

    def _submit(self, ixs: List[Instruction]) -> str:
        tx = self._sign(ixs)
        return self.submitter.submit(bytes(tx), str(tx.signatures[0]))

    def account_exists(self) -> bool:
        return self.rpc.get_account_info(str(self.account)) is not None

    def balance(self) -> int:
        return self.rpc.get_token_account_balance(str(self.account)) or 0

    def ensure_account(self) -> Optional[str]:
        """Create the wSOL account if missing. Returns the signature, or None if it existed."""
        if self.account_exists():
            logger.debug("wSOL account %s exists", self.account)
            return None
        ix = create_ata_idempotent_ix(self.owner, self.owner, WRAPPED_SOL_MINT, self.account)
        try:
            sig = self._submit([ix])
        except ExecutionError as e:
            if _already_exists(e) or self.account_exists():
                logger.info("wSOL account %s created concurrently; continuing", self.account)
                return None
            raise
        logger.info("Created wSOL account %s (%s)", self.account, sig)
        return sig

    def wrap(self, lamports: int) -> Optional[str]:
        """Ensure the account, then wrap `lamports`. Returns the wrap signature."""
        self.ensure_account()
        if lamports <= 0:
            return None
        sig = self._submit(wrap_instructions(self.owner, self.account, lamports))
        logger.info("Wrapped %d lamports into %s (%s)", lamports, self.account, sig)
        return sig
