"""
Send-and-confirm for signed Solana transactions.

A transaction is signed exactly once by the caller. On a transient send
failure the same bytes are re-sent, and only after checking that the
signature has not already landed, so a retry can never produce a second
buyback. Once a send is accepted, confirmation problems are reported and
never answered with another send.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from core.backoff import Backoff
from core.errors import ExecutionError, RpcError, TransientError

logger = logging.getLogger(__name__)

CONFIRMED = ("confirmed", "finalized")


class TransactionSubmitter:
    def __init__(
        self,
        rpc,
        confirm_timeout: float = 60.0,
        retries: int = 3,
        poll_interval: float = 1.5,
        backoff: Optional[Backoff] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rpc = rpc
        self.confirm_timeout = float(confirm_timeout)
        self.retries = max(1, int(retries))
        self.poll_interval = float(poll_interval)
        self.backoff = backoff or Backoff(base=1.0, cap=8.0, jitter=0.0)
        self._sleep = sleep
        self._clock = clock

    def _status(self, signature: str) -> Optional[dict]:
        try:
            statuses = self.rpc.get_signature_statuses([signature])
        except TransientError as e:
            logger.debug("Status lookup for %s failed: %s", signature, e)
            return None
        return statuses[0] if statuses else None

    def send(self, raw: bytes, signature: str) -> str:
        """Deliver the signed bytes, re-sending on transient failure only."""
        self.backoff.reset()
        for attempt in range(1, self.retries + 1):
            if attempt > 1 and self._status(signature) is not None:
                logger.info("Tx %s already landed; not re-sending", signature)
                return signature
            try:
                self.rpc.send_transaction(raw)
                logger.info("Tx %s sent (attempt %d/%d)", signature, attempt, self.retries)
                return signature
            except RpcError as e:
                raise ExecutionError(f"transaction rejected: {e}", signature=signature) from e
            except TransientError as e:
                if attempt == self.retries:
                    raise ExecutionError(
                        f"send failed after {self.retries} attempts: {e}", signature=signature
                    ) from e
                delay = self.backoff.next()
                logger.warning("Send of %s failed (%s); retrying in %.1fs", signature, e, delay)
                self._sleep(delay)
        return signature

    def confirm(self, signature: str) -> None:
        deadline = self._clock() + self.confirm_timeout
        while True:
            status = self._status(signature)
            if status:
                if status.get("err") is not None:
                    raise ExecutionError(f"transaction failed on-chain: {status.get('err')}", signature=signature)
                if status.get("confirmationStatus") in CONFIRMED:
                    logger.info("Tx %s %s", signature, status.get("confirmationStatus"))
                    return
            if self._clock() >= deadline:
                raise ExecutionError(
                    f"not confirmed within {self.confirm_timeout:.0f}s; check the explorer before retrying",
                    signature=signature,
                )
            self._sleep(self.poll_interval)

    def submit(self, raw: bytes, signature: str) -> str:
        self.send(raw, signature)
        self.confirm(signature)
        return signature
