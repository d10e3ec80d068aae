from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest
from solders.hash import Hash
from solders.keypair import Keypair

from solana_jackpot.project_constants import SYSTEM_PROGRAM_ID
from solana_jackpot.scheduler import RoundScheduler
from solana_jackpot.wallet import RoundWallet


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def no_sleep(_seconds: float) -> None:
    return None


class FakeClock:
    """Millisecond clock whose sleepers wake only when the test advances time."""

    def __init__(self) -> None:
        self.now_ms = 0.0
        self._waiters: List[tuple] = []

    def __call__(self) -> float:
        return self.now_ms

    async def sleep(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now_ms + seconds * 1000, fut))
        await fut

    async def advance(self, ms: float) -> None:
        # let freshly created tasks reach their first sleep
        await settle()
        self.now_ms += ms
        for waiter in list(self._waiters):
            deadline, fut = waiter
            if fut.done():
                self._waiters.remove(waiter)
            elif deadline <= self.now_ms:
                fut.set_result(None)
                self._waiters.remove(waiter)
        await settle()


class FakeRpc:
    def __init__(
        self,
        records: Optional[Dict[str, Any]] = None,
        status: Optional[Dict[str, Any]] = None,
        balance: int = 0,
    ) -> None:
        self.records = records or {}
        self.status = status
        self.balance = balance
        self.sent: List[bytes] = []
        self.lookups: List[str] = []
        self.fail_send = False

    async def get_transaction(self, signature: str, commitment: str = "confirmed"):
        self.lookups.append(commitment)
        record = self.records.get(commitment)
        if isinstance(record, Exception):
            raise record
        return record

    async def get_signature_status(self, signature: str):
        return self.status

    async def get_balance(self, address: str, commitment: str = "confirmed") -> int:
        return self.balance

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        return str(Hash.default())

    async def send_transaction(self, raw_tx: bytes) -> str:
        if self.fail_send:
            raise RuntimeError("RPC error: blockhash not found")
        self.sent.append(raw_tx)
        return "payout-signature"

    async def confirm_transaction(self, signature: str, commitment: str = "confirmed", **_: Any) -> bool:
        return True


class FakeConnection:
    def __init__(self, frames: Optional[List[str]] = None) -> None:
        self.frames = frames or []
        self.sent: List[str] = []

    async def send(self, message: str) -> None:
        self.sent.append(message)

    def messages(self) -> List[Dict[str, Any]]:
        return [json.loads(m) for m in self.sent]

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame


class CountingWallet(RoundWallet):
    def __init__(self, receipt: Optional[str] = None) -> None:
        super().__init__(rpc=None, platform_address=None)
        self.receipt = receipt
        self.disbursed_to: List[str] = []

    async def disburse(self, winner: str) -> Optional[str]:
        self.disbursed_to.append(winner)
        return self.receipt


def new_address() -> str:
    return str(Keypair().pubkey())


def transfer_meta(lamports: int, err: Any = None) -> Dict[str, Any]:
    return {
        "err": err,
        "preBalances": [10_000_000_000, 0, 1],
        "postBalances": [10_000_000_000 - lamports - 5_000, lamports, 1],
    }


def compiled_record(
    sender: str,
    receiver: str,
    lamports: int,
    err: Any = None,
    program_id: str = SYSTEM_PROGRAM_ID,
) -> Dict[str, Any]:
    return {
        "meta": transfer_meta(lamports, err),
        "transaction": {
            "message": {
                "accountKeys": [sender, receiver, program_id],
                "instructions": [{"programIdIndex": 2, "accounts": [0, 1], "data": "3Bxs4h24hBtQy9rw"}],
            }
        },
    }


def legacy_record(sender: str, receiver: str, lamports: int) -> Dict[str, Any]:
    return {
        "meta": transfer_meta(lamports),
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": sender, "signer": True, "writable": True},
                    {"pubkey": receiver, "signer": False, "writable": True},
                    {"pubkey": SYSTEM_PROGRAM_ID, "signer": False, "writable": False},
                ],
                "instructions": [
                    {"programId": SYSTEM_PROGRAM_ID, "accounts": [sender, receiver]}
                ],
            }
        },
    }


class Published:
    def __init__(self) -> None:
        self.snapshots: List[Dict[str, Any]] = []

    async def __call__(self, snapshot: Dict[str, Any]) -> None:
        self.snapshots.append(snapshot)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def published() -> Published:
    return Published()


@pytest.fixture
def wallets() -> List[CountingWallet]:
    return []


@pytest.fixture
def make_scheduler(clock, published, wallets):
    def factory(
        receipt: Optional[str] = None, recovery_dir: Optional[str] = None
    ) -> RoundScheduler:
        def new_wallet() -> CountingWallet:
            wallet = CountingWallet(receipt)
            wallets.append(wallet)
            return wallet

        return RoundScheduler(
            wallet_factory=new_wallet,
            publish=published,
            clock=clock,
            sleep=clock.sleep,
            recovery_dir=recovery_dir,
        )

    return factory
