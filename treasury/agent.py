"""
Treasury agent: one buyback-and-burn cycle at a time.

    balances -> decision -> quote -> wrap SOL -> swap+burn (one tx) -> confirm

Every amount is integer lamports or raw token units. Nothing here updates
public stats: the chain watchers learn about the buyback only once it is
confirmed on-chain.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction
from spl.token.constants import WRAPPED_SOL_MINT
from spl.token.instructions import BurnCheckedParams, burn_checked

from chains.solana_rpc import SolanaRpc
from core.config import TreasurySettings
from core.errors import BuybackError, CycleInProgressError, DataError
from core.models import TreasuryState, raw_to_decimal
from core.telegram_client import BuybackNotifier
from links import explorer_tx_link
from treasury import program
from treasury.jupiter import JupiterClient, SwapQuote, decode_lookup_table
from treasury.planner import BuybackDecision, evaluate, lamports_to_sol
from treasury.submit import TransactionSubmitter
from treasury.wallet import (
    associated_token_address,
    check_wallet,
    load_keypair,
    parse_pubkey,
    token_program_id,
)
from treasury.wrap import SolWrapper

logger = logging.getLogger(__name__)

# quotes moving the price more than this (percent) are logged as warnings
PRICE_IMPACT_WARN_PCT = Decimal("1")


class CycleOutcome(str, Enum):
    BELOW_THRESHOLD = "below_threshold"
    NOTHING_TO_SPEND = "nothing_to_spend"
    DRY_RUN = "dry_run"
    COMPLETED = "completed"


@dataclass
class CycleReport:
    outcome: CycleOutcome
    state: TreasuryState
    decision: BuybackDecision
    quote: Optional[SwapQuote] = None
    burn_amount: int = 0                    # raw token units
    signatures: Dict[str, str] = field(default_factory=dict)


class TreasuryAgent:
    def __init__(
        self,
        settings: TreasurySettings,
        keypair: Keypair,
        rpc: Optional[SolanaRpc] = None,
        jupiter: Optional[JupiterClient] = None,
        submitter: Optional[TransactionSubmitter] = None,
        notifier: Optional[BuybackNotifier] = None,
    ):
        self.settings = settings
        self.keypair = keypair
        self.owner = keypair.pubkey()
        self.mint = parse_pubkey(settings.token_mint, "TOKEN_MINT")
        self.token_program = token_program_id(settings.token_program)
        self.token_account = associated_token_address(self.owner, self.mint, self.token_program)

        self.rpc = rpc or SolanaRpc(settings.rpc_url, timeout=settings.rpc_timeout)
        self.jupiter = jupiter or JupiterClient(settings.jupiter_api_url, timeout=settings.rpc_timeout)
        self.submitter = submitter or TransactionSubmitter(
            self.rpc,
            confirm_timeout=settings.confirm_timeout,
            retries=settings.submit_retries,
        )
        self.wrapper = SolWrapper(self.rpc, keypair, self.submitter)
        self.notifier = notifier or BuybackNotifier(None)

        self._cycle_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: TreasurySettings) -> "TreasuryAgent":
        """Load and verify everything a cycle needs. Raises ConfigError."""
        keypair = load_keypair(settings.keypair_path)
        check_wallet(keypair, settings.expected_wallet)
        agent = cls(
            settings,
            keypair,
            notifier=BuybackNotifier.from_settings(settings.telegram_bot_token, settings.telegram_chat_id),
        )
        if settings.program_id:
            program.verify_treasury(agent.rpc, parse_pubkey(settings.program_id, "PROGRAM_ID"), agent.owner)
        logger.info("Treasury %s ready (mint %s, %s)", agent.owner, agent.mint, settings.token_program)
        return agent

    # ------------------------------------------------------------
    # state
    # ------------------------------------------------------------

    def read_state(self) -> TreasuryState:
        s = self.settings
        return TreasuryState(
            sol_balance_lamports=self.rpc.get_balance(str(self.owner)),
            token_balance=self.rpc.get_token_account_balance(str(self.token_account)) or 0,
            threshold_lamports=s.threshold_lamports,
            buyback_ratio=s.buyback_ratio,
            fee_reserve_lamports=s.fee_reserve_lamports,
        )

    def check(self, price_usd: Optional[Decimal] = None) -> Dict[str, Any]:
        """Read-only status report. Submits nothing."""
        state = self.read_state()
        decision = evaluate(state)
        report: Dict[str, Any] = {
            "wallet": str(self.owner),
            "solBalance": lamports_to_sol(state.sol_balance_lamports),
            "tokenBalance": raw_to_decimal(state.token_balance, self.settings.token_decimals),
            "threshold": lamports_to_sol(state.threshold_lamports),
            "ratio": state.buyback_ratio,
            "feeReserve": lamports_to_sol(state.fee_reserve_lamports),
            "ready": decision.eligible,
            "buybackAmount": decision.buyback_sol,
            "shortfall": decision.shortfall_sol,
        }
        if price_usd is not None:
            tokens = Decimal(report["tokenBalance"])
            report["tokenValueUsd"] = format(tokens * price_usd, "f")
        if self.settings.program_id:
            pid = parse_pubkey(self.settings.program_id, "PROGRAM_ID")
            report["configAddress"] = str(program.find_config_address(pid)[0])
            report["wastePitAddress"] = str(program.find_waste_pit_address(pid)[0])
        return report

    # ------------------------------------------------------------
    # cycle
    # ------------------------------------------------------------

    def run_cycle(self) -> CycleReport:
        if not self._cycle_lock.acquire(blocking=False):
            raise CycleInProgressError("a buyback cycle is already running")
        try:
            return self._cycle()
        except BuybackError as e:
            self.notifier.cycle_aborted(str(e), getattr(e, "signature", None) or "")
            raise
        finally:
            self._cycle_lock.release()

    def _cycle(self) -> CycleReport:
        s = self.settings
        state = self.read_state()
        decision = evaluate(state)
        report = CycleReport(outcome=CycleOutcome.BELOW_THRESHOLD, state=state, decision=decision)

        if not decision.eligible:
            logger.info(
                "Balance %s SOL below threshold %s SOL; short by %s SOL",
                lamports_to_sol(state.sol_balance_lamports),
                lamports_to_sol(state.threshold_lamports),
                decision.shortfall_sol,
            )
            return report
        if decision.buyback_lamports <= 0:
            logger.info("Nothing to spend above the fee reserve")
            report.outcome = CycleOutcome.NOTHING_TO_SPEND
            return report

        quote = self.jupiter.quote(str(WRAPPED_SOL_MINT), str(self.mint), decision.buyback_lamports, s.slippage_bps)
        report.quote = quote
        report.burn_amount = state.token_balance + quote.min_out_amount if s.burn_tokens else 0
        impact = quote.price_impact_percent
        logger.info(
            "Buyback %s SOL -> ~%s tokens (min %s, impact %s%%)",
            decision.buyback_sol,
            raw_to_decimal(quote.out_amount, s.token_decimals),
            raw_to_decimal(quote.min_out_amount, s.token_decimals),
            "?" if impact is None else format(impact, "f"),
        )
        if impact is not None and impact > PRICE_IMPACT_WARN_PCT:
            logger.warning("High price impact on buyback quote: %s%%", format(impact, "f"))

        if s.dry_run:
            logger.info("DRY_RUN: not wrapping, signing or sending")
            report.outcome = CycleOutcome.DRY_RUN
            return report

        # a wSOL balance left by an earlier aborted cycle counts toward this one
        to_wrap = max(0, decision.buyback_lamports - self.wrapper.balance())
        wrap_sig = self.wrapper.wrap(to_wrap)
        if wrap_sig:
            report.signatures["wrap"] = wrap_sig

        tx = self._build_swap_and_burn(quote, report.burn_amount)
        sig = str(tx.signatures[0])
        report.signatures["swap"] = sig
        self.submitter.submit(bytes(tx), sig)
        report.outcome = CycleOutcome.COMPLETED

        burned = raw_to_decimal(report.burn_amount, s.token_decimals)
        logger.info("🔥 Buyback confirmed: %s SOL, burned %s (%s)", decision.buyback_sol, burned, sig)
        self.notifier.buyback_completed(sig, decision.buyback_sol, burned, explorer_tx_link("solana", sig))
        return report

    def _build_swap_and_burn(self, quote: SwapQuote, burn_amount: int) -> VersionedTransaction:
        s = self.settings
        ixs = self.jupiter.swap_instructions(quote, str(self.owner), s.priority_fee_lamports)
        instructions = ixs.ordered()
        if burn_amount > 0:
            instructions.append(
                burn_checked(
                    BurnCheckedParams(
                        program_id=self.token_program,
                        account=self.token_account,
                        mint=self.mint,
                        owner=self.owner,
                        amount=int(burn_amount),
                        decimals=s.token_decimals,
                        signers=[],
                    )
                )
            )

        tables = []
        for address in ixs.lookup_tables:
            data = self.rpc.get_account_data(address)
            if data is None:
                raise DataError(f"lookup table {address} not found")
            tables.append(decode_lookup_table(address, data))

        blockhash = Hash.from_string(self.rpc.get_latest_blockhash())
        message = MessageV0.try_compile(self.owner, instructions, tables, blockhash)
        return VersionedTransaction(message, [self.keypair])
