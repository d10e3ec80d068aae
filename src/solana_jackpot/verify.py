"""
On-chain deposit verification.

A deposit is accepted only when the ledger shows a successful System Program
transfer from the claimed sender to the round's receiving address whose
amount matches the claimed stake. The ledger may return the message in either
of two encodings; both are normalized into `DecodedInstruction` lists before
any check runs.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .project_constants import (
    AMOUNT_TOLERANCE_SOL,
    COMMITMENT_LADDER,
    LAMPORTS_PER_SOL,
    SETTLE_DELAY_S,
    SIMULATION_PREFIX,
    SYSTEM_PROGRAM_ID,
    VERIFY_ATTEMPTS,
    VERIFY_RETRY_DELAY_S,
)
from .rpc import RpcClient

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class DecodedInstruction:
    program_id: str
    accounts: List[str]


@dataclass(frozen=True)
class LegacyEncoding:
    """Instructions name their program and accounts directly."""

    account_keys: List[str]
    instructions: List[Dict[str, Any]]


@dataclass(frozen=True)
class CompiledEncoding:
    """Instructions reference `account_keys` by index."""

    account_keys: List[str]
    instructions: List[Dict[str, Any]]


MessageEncoding = Union[LegacyEncoding, CompiledEncoding]


def is_simulated(transfer_id: str | None) -> bool:
    return bool(transfer_id) and transfer_id.startswith(SIMULATION_PREFIX)


def _key_str(key: Any) -> str:
    # jsonParsed responses wrap keys as {"pubkey": ..., "signer": ...}
    if isinstance(key, dict):
        return str(key["pubkey"])
    return str(key)


def classify_message(message: Dict[str, Any]) -> MessageEncoding:
    account_keys = [_key_str(k) for k in message.get("accountKeys") or []]
    instructions = message.get("instructions")
    if not isinstance(instructions, list):
        raise ValueError("message has no instruction list")
    if instructions and "programIdIndex" in instructions[0]:
        return CompiledEncoding(account_keys, instructions)
    return LegacyEncoding(account_keys, instructions)


def _decode_legacy(enc: LegacyEncoding) -> List[DecodedInstruction]:
    return [
        DecodedInstruction(
            program_id=_key_str(ix["programId"]),
            accounts=[_key_str(a) for a in ix.get("accounts", [])],
        )
        for ix in enc.instructions
    ]


def _decode_compiled(enc: CompiledEncoding) -> List[DecodedInstruction]:
    keys = enc.account_keys
    return [
        DecodedInstruction(
            program_id=keys[ix["programIdIndex"]],
            accounts=[keys[i] for i in ix.get("accounts", [])],
        )
        for ix in enc.instructions
    ]


def decode_instructions(enc: MessageEncoding) -> List[DecodedInstruction]:
    if isinstance(enc, CompiledEncoding):
        return _decode_compiled(enc)
    return _decode_legacy(enc)


def find_transfer(instructions: List[DecodedInstruction]) -> Optional[DecodedInstruction]:
    for ix in instructions:
        if ix.program_id == SYSTEM_PROGRAM_ID and len(ix.accounts) >= 2:
            return ix
    return None


def received_sol(record: Dict[str, Any], account_keys: List[str], receiver: str) -> float:
    meta = record["meta"]
    idx = account_keys.index(receiver)
    delta = int(meta["postBalances"][idx]) - int(meta["preBalances"][idx])
    return delta / LAMPORTS_PER_SOL


class PaymentVerifier:
    def __init__(
        self,
        rpc: Optional[RpcClient],
        settle_delay_s: float = SETTLE_DELAY_S,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.rpc = rpc
        self.settle_delay_s = settle_delay_s
        self._sleep = sleep

    async def verify(
        self,
        transfer_id: str,
        expected_amount: float,
        claimed_sender: str,
        receiving_address: Optional[str],
    ) -> bool:
        if self.rpc is None or not receiving_address:
            return False

        try:
            log.info(
                "Verifying transfer %s: amount=%s sender=%s",
                transfer_id,
                expected_amount,
                claimed_sender,
            )
            # Let the transfer propagate before the first lookup
            await self._sleep(self.settle_delay_s)

            record = await self._fetch_record(transfer_id)
            if record is None:
                return await self._status_only(transfer_id)

            return self._check_record(
                record, expected_amount, claimed_sender, receiving_address
            )
        except Exception:
            log.exception("Error verifying transfer %s", transfer_id)
            return False

    async def _fetch_record(self, transfer_id: str) -> Optional[Dict[str, Any]]:
        for commitment in COMMITMENT_LADDER:
            try:
                record = await self.rpc.get_transaction(transfer_id, commitment)
            except Exception as e:
                log.debug("getTransaction(%s) at %s failed: %s", transfer_id, commitment, e)
                continue
            if record and record.get("meta") is not None:
                log.debug("Transfer %s found at %s", transfer_id, commitment)
                return record
        return None

    async def _status_only(self, transfer_id: str) -> bool:
        status = await self.rpc.get_signature_status(transfer_id)
        if not status or status.get("err") is not None:
            log.info("Transfer %s not found or failed", transfer_id)
            return False
        if not status.get("confirmationStatus"):
            return False
        # Amount and receiver are unchecked on this path.
        log.warning(
            "Transfer %s accepted on signature status only (%s); amount not verified",
            transfer_id,
            status["confirmationStatus"],
        )
        return True

    def _check_record(
        self,
        record: Dict[str, Any],
        expected_amount: float,
        claimed_sender: str,
        receiving_address: str,
    ) -> bool:
        meta = record["meta"]
        if meta.get("err") is not None:
            log.info("Transfer failed on-chain: %s", meta["err"])
            return False

        encoding = classify_message(record["transaction"]["message"])
        transfer = find_transfer(decode_instructions(encoding))
        if transfer is None:
            log.info("No System Program transfer in transaction")
            return False

        sender, receiver = transfer.accounts[0], transfer.accounts[1]
        if sender != claimed_sender:
            log.info("Sender mismatch: %s vs %s", sender, claimed_sender)
            return False
        if receiver != receiving_address:
            log.info("Receiver mismatch: %s vs %s", receiver, receiving_address)
            return False

        observed = received_sol(record, encoding.account_keys, receiver)
        if abs(observed - expected_amount) > AMOUNT_TOLERANCE_SOL:
            log.info("Amount mismatch: expected %s, got %s", expected_amount, observed)
            return False

        log.info("Transfer verified: %s SOL from %s", observed, sender)
        return True


async def verify_with_retries(
    verifier: PaymentVerifier,
    transfer_id: str,
    expected_amount: float,
    claimed_sender: str,
    receiving_address: Optional[str],
    attempts: int = VERIFY_ATTEMPTS,
    delay_s: float = VERIFY_RETRY_DELAY_S,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    for attempt in range(1, attempts + 1):
        ok = await verifier.verify(
            transfer_id, expected_amount, claimed_sender, receiving_address
        )
        if ok:
            return True
        log.info("Verification attempt %d/%d failed for %s", attempt, attempts, transfer_id)
        if attempt < attempts:
            await sleep(delay_s)
    return False
