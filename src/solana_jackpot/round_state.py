"""
The live round: who is in, how much is in the pot, and where the round is in
its lifecycle. Every mutation of round data goes through `Round`.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from .project_constants import LAMPORTS_PER_SOL


class Phase(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    ENDED = "ended"
    RESETTING = "resetting"


class EntryError(Exception):
    """An entry was refused; the message is safe to show to the player."""


class RoundEndedError(EntryError):
    def __init__(self, message: str = "Round has ended; wait for the next round.") -> None:
        super().__init__(message)


class DuplicateDepositError(EntryError):
    def __init__(self, reference: str) -> None:
        super().__init__(f"Transaction {reference} was already used for an entry.")


def to_lamports(sol: float) -> int:
    return int(round(sol * LAMPORTS_PER_SOL))


def to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


@dataclass
class Participant:
    identity: str
    stake_lamports: int
    admitted_at: float
    last_deposit_reference: Optional[str] = None
    win_probability_percent: float = 0.0

    @property
    def stake(self) -> float:
        return to_sol(self.stake_lamports)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "stake": self.stake,
            "winProbabilityPercent": self.win_probability_percent,
            "admittedAt": self.admitted_at,
            "lastDepositReference": self.last_deposit_reference,
        }


class Round:
    def __init__(self, receiving_address: str) -> None:
        self.receiving_address = receiving_address
        self.phase = Phase.WAITING
        self._participants: "OrderedDict[str, Participant]" = OrderedDict()
        self.total_lamports = 0
        self._references: Set[str] = set()
        self.started_at: Optional[float] = None
        self.countdown_remaining_ms = 0.0
        self.winner: Optional[str] = None
        self.payout_receipt: Optional[str] = None

    @property
    def participants(self) -> List[Participant]:
        return list(self._participants.values())

    @property
    def total_pot(self) -> float:
        return to_sol(self.total_lamports)

    def has_reference(self, reference: Optional[str]) -> bool:
        return reference is not None and reference in self._references

    @property
    def is_active(self) -> bool:
        return self.phase is Phase.ACTIVE

    @property
    def accepting_entries(self) -> bool:
        return self.winner is None and self.phase in (Phase.WAITING, Phase.ACTIVE)

    def admit(
        self,
        identity: str,
        amount: float,
        reference: Optional[str],
        now: float,
    ) -> Tuple[Participant, bool]:
        """
        Adds `amount` SOL to `identity`'s stake, creating the participant on
        first entry. Returns the participant and whether this was the first
        admission of the round. A deposit reference counts once per round.
        """
        if not self.accepting_entries:
            raise RoundEndedError()
        if self.has_reference(reference):
            raise DuplicateDepositError(reference)
        lamports = to_lamports(amount)
        if lamports <= 0:
            raise ValueError(f"Stake must be at least one lamport: {amount}")

        first_of_round = not self._participants
        participant = self._participants.get(identity)
        if participant is None:
            participant = Participant(identity=identity, stake_lamports=0, admitted_at=now)
            self._participants[identity] = participant

        participant.stake_lamports += lamports
        participant.last_deposit_reference = reference
        self.total_lamports += lamports
        if reference is not None:
            self._references.add(reference)
        self._recompute_odds()
        return participant, first_of_round

    def _recompute_odds(self) -> None:
        for p in self._participants.values():
            if self.total_lamports > 0:
                p.win_probability_percent = 100 * p.stake_lamports / self.total_lamports
            else:
                p.win_probability_percent = 0.0

    def start_countdown(self, now: float, duration_ms: float) -> None:
        if self.phase is not Phase.WAITING:
            return
        self.phase = Phase.ACTIVE
        self.started_at = now
        self.countdown_remaining_ms = duration_ms

    def update_countdown(self, now: float, duration_ms: float) -> float:
        # Recomputed from the start instant; never increases while active.
        if self.phase is Phase.ACTIVE and self.started_at is not None:
            remaining = max(duration_ms - (now - self.started_at), 0.0)
            self.countdown_remaining_ms = min(self.countdown_remaining_ms, remaining)
        return self.countdown_remaining_ms

    def declare_winner(self, identity: str) -> None:
        if self.winner is not None:
            raise RuntimeError(f"Winner already declared: {self.winner}")
        if identity not in self._participants:
            raise ValueError(f"Unknown participant: {identity}")
        self.winner = identity
        self.countdown_remaining_ms = 0.0
        self.phase = Phase.ENDED

    def record_payout(self, receipt: str) -> None:
        self.payout_receipt = receipt

    def snapshot(self) -> Dict[str, Any]:
        return {
            "receivingAddress": self.receiving_address,
            "participants": [p.to_dict() for p in self._participants.values()],
            "totalPot": self.total_pot,
            "countdownRemaining": int(self.countdown_remaining_ms),
            "isActive": self.is_active,
            "winner": self.winner,
            "payoutReceipt": self.payout_receipt,
            "phase": self.phase.value,
        }
