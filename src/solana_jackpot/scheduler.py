from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .draw import select_winner
from .project_constants import GRACE_PERIOD_MS, ROUND_DURATION_MS, TICK_INTERVAL_MS
from .round_state import Participant, Phase, Round
from .wallet import RoundWallet

log = logging.getLogger(__name__)

Publish = Callable[[Dict[str, Any]], Awaitable[None]]


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class RoundScheduler:
    """
    Drives the round lifecycle: waiting -> active -> ended -> resetting -> waiting.

    Owns the single live `Round` and its `RoundWallet`. `publish` receives a
    snapshot dict after every state change. All timers run as tasks on the
    current event loop and use the injected `sleep`, so tests can drive time.

    A wallet that still holds stake without a payout receipt when its round
    is torn down has its keypair written under `recovery_dir`.
    """

    def __init__(
        self,
        wallet_factory: Callable[[], RoundWallet],
        publish: Publish,
        clock: Callable[[], float] = monotonic_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        round_duration_ms: float = ROUND_DURATION_MS,
        tick_interval_ms: float = TICK_INTERVAL_MS,
        grace_period_ms: float = GRACE_PERIOD_MS,
        recovery_dir: Optional[str] = None,
    ) -> None:
        self._wallet_factory = wallet_factory
        self._publish = publish
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self.round_duration_ms = round_duration_ms
        self.tick_interval_ms = tick_interval_ms
        self.grace_period_ms = grace_period_ms
        self.recovery_dir = recovery_dir

        self.wallet: Optional[RoundWallet] = None
        self.round: Optional[Round] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._reset_task: Optional[asyncio.Task] = None
        self._end_task: Optional[asyncio.Task] = None

    def now(self) -> float:
        return self._clock()

    async def start(self) -> Round:
        self._new_round()
        await self.push()
        return self.round

    async def stop(self) -> None:
        await self._cancel_timers()
        if self._end_task is not None and not self._end_task.done():
            self._end_task.cancel()
            try:
                await self._end_task
            except asyncio.CancelledError:
                pass
        if self.round is not None:
            self._retire(self.round, self.wallet)

    async def push(self) -> None:
        if self.round is None:
            return
        try:
            await self._publish(self.round.snapshot())
        except Exception:
            log.exception("Failed to publish round snapshot")

    def _new_round(self) -> None:
        self.wallet = self._wallet_factory()
        self.round = Round(self.wallet.address)
        log.info("New round open at %s", self.round.receiving_address)

    def _retire(self, rnd: Round, wallet: Optional[RoundWallet]) -> None:
        if wallet is None or rnd.total_lamports <= 0 or rnd.payout_receipt:
            return
        if not self.recovery_dir:
            log.error(
                "Round at %s holds %.9f SOL without payout and no recovery directory is set",
                rnd.receiving_address,
                rnd.total_pot,
            )
            return
        try:
            path = wallet.save_recovery_key(self.recovery_dir)
        except OSError:
            log.exception("Could not save recovery key for %s", rnd.receiving_address)
            return
        log.warning(
            "Round at %s holds %.9f SOL without payout; keypair saved to %s",
            rnd.receiving_address,
            rnd.total_pot,
            path,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def on_admitted(self, participant: Participant, first_of_round: bool) -> None:
        rnd = self.round
        if first_of_round and rnd.phase is Phase.WAITING:
            rnd.start_countdown(self.now(), self.round_duration_ms)
            self._tick_task = asyncio.create_task(self._tick_loop(rnd))
            log.info("Countdown started by %s", participant.identity)
        await self.push()

    async def _tick_loop(self, rnd: Round) -> None:
        while self.round is rnd and rnd.phase is Phase.ACTIVE:
            await self._sleep(self.tick_interval_ms / 1000)
            try:
                await self.tick()
            except Exception:
                log.exception("Tick failed for round at %s", rnd.receiving_address)

    async def tick(self) -> None:
        rnd = self.round
        if rnd is None or rnd.phase is not Phase.ACTIVE:
            return
        remaining = rnd.update_countdown(self.now(), self.round_duration_ms)
        if remaining > 0:
            await self.push()
            return

        # Winner is declared synchronously inside the task's first step, so
        # later ticks see ENDED and return above.
        self._end_task = asyncio.create_task(self._end_round(rnd, self.wallet))
        # shielded: cancelling the tick task must not abort a payout
        await asyncio.shield(self._end_task)

    async def _end_round(self, rnd: Round, wallet: RoundWallet) -> None:
        winner = select_winner(rnd.participants, rnd.total_pot, rng=self._rng)
        rnd.declare_winner(winner.identity)
        log.info(
            "Round at %s won by %s (%.2f%% of %.9f SOL)",
            rnd.receiving_address,
            winner.identity,
            winner.win_probability_percent,
            rnd.total_pot,
        )
        await self.push()

        receipt = await wallet.disburse(winner.identity)
        if receipt:
            rnd.record_payout(receipt)
        else:
            log.warning("No payout for round at %s", rnd.receiving_address)
            self._retire(rnd, wallet)
        await self.push()

        if self.round is rnd:
            self._reset_task = asyncio.create_task(self._reset_after_grace(rnd))

    async def _reset_after_grace(self, rnd: Round) -> None:
        await self._sleep(self.grace_period_ms / 1000)
        if self.round is rnd:
            self._reset_task = None
            await self.reset()

    async def reset(self) -> Round:
        """
        Tears down the live round and opens a fresh one, whatever its phase.
        A payout already under way is allowed to finish first.
        """
        end_task = self._end_task
        if end_task is not None and not end_task.done() and end_task is not asyncio.current_task():
            log.info("Waiting for in-flight payout before reset")
            await asyncio.shield(end_task)
        await self._cancel_timers()
        old, old_wallet = self.round, self.wallet
        if old is not None:
            old.phase = Phase.RESETTING
            log.info("Resetting round at %s", old.receiving_address)
            # an ended round already retired its wallet in _end_round
            if old.winner is None:
                self._retire(old, old_wallet)
        self._new_round()
        await self.push()
        return self.round

    async def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in (self._tick_task, self._reset_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tick_task = None
        self._reset_task = None
