from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .project_constants import VERIFY_ATTEMPTS, VERIFY_RETRY_DELAY_S
from .round_state import (
    DuplicateDepositError,
    EntryError,
    Participant,
    RoundEndedError,
    to_lamports,
)
from .scheduler import RoundScheduler
from .verify import PaymentVerifier, is_simulated, verify_with_retries
from .wallet import is_valid_address

log = logging.getLogger(__name__)


class InvalidBetError(EntryError):
    pass


class VerificationFailedError(EntryError):
    def __init__(
        self,
        message: str = "Transaction verification failed. Please try again.",
    ) -> None:
        super().__init__(message)


class EntryDesk:
    """Admits bets into the live round once their deposit checks out."""

    def __init__(
        self,
        scheduler: RoundScheduler,
        verifier: PaymentVerifier,
        attempts: int = VERIFY_ATTEMPTS,
        retry_delay_s: float = VERIFY_RETRY_DELAY_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.scheduler = scheduler
        self.verifier = verifier
        self.attempts = attempts
        self.retry_delay_s = retry_delay_s
        self._sleep = sleep

    async def place_bet(
        self, identity: str, amount: float, transfer_id: Optional[str] = None
    ) -> Participant:
        if not identity:
            raise InvalidBetError("Missing wallet identity.")
        if to_lamports(amount) <= 0:
            raise InvalidBetError("Bet amount must be positive.")

        rnd = self.scheduler.round
        if rnd is None or not rnd.accepting_entries:
            raise RoundEndedError()
        if rnd.has_reference(transfer_id):
            raise DuplicateDepositError(transfer_id)

        if is_simulated(transfer_id):
            log.info("Simulated entry from %s for %s SOL", identity, amount)
        else:
            if not transfer_id:
                raise InvalidBetError("Missing transfer id.")
            if not is_valid_address(identity):
                raise InvalidBetError("Invalid wallet address.")
            ok = await verify_with_retries(
                self.verifier,
                transfer_id,
                amount,
                identity,
                rnd.receiving_address,
                attempts=self.attempts,
                delay_s=self.retry_delay_s,
                sleep=self._sleep,
            )
            if not ok:
                raise VerificationFailedError()

        # The round may have ended or been replaced while we awaited the ledger.
        if self.scheduler.round is not rnd or not rnd.accepting_entries:
            log.info("Discarding entry from %s: round closed during verification", identity)
            raise RoundEndedError()
        # A concurrent submission of the same deposit may have been admitted meanwhile.
        if rnd.has_reference(transfer_id):
            raise DuplicateDepositError(transfer_id)

        participant, first_of_round = rnd.admit(
            identity, amount, transfer_id, self.scheduler.now()
        )
        log.info(
            "Admitted %s: stake=%s pot=%s", identity, participant.stake, rnd.total_pot
        )
        await self.scheduler.on_admitted(participant, first_of_round)
        return participant
