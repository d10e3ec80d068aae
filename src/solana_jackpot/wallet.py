from __future__ import annotations

import json
import logging
import math
import os
from typing import Optional, Tuple

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from .project_constants import FEE_RESERVE_LAMPORTS, PLATFORM_FEE_RATE
from .rpc import RpcClient

log = logging.getLogger(__name__)


def split_pot(balance_lamports: int) -> Optional[Tuple[int, int]]:
    """
    Returns (platform_fee, winner_amount) in lamports, or None when the
    balance cannot cover the reserve plus a positive payout on both legs.
    """
    remainder = balance_lamports - FEE_RESERVE_LAMPORTS
    platform_fee = math.floor(remainder * PLATFORM_FEE_RATE)
    winner_amount = remainder - platform_fee
    if platform_fee <= 0 or winner_amount <= 0:
        return None
    return platform_fee, winner_amount


def is_valid_address(address: str) -> bool:
    try:
        return len(base58.b58decode(address)) == 32
    except ValueError:
        return False


class RoundWallet:
    """Receiving address for one round. Never reused once the round resets."""

    def __init__(
        self,
        rpc: Optional[RpcClient],
        platform_address: Optional[str],
        keypair: Optional[Keypair] = None,
    ) -> None:
        self.rpc = rpc
        self.platform_address = platform_address
        self.keypair = keypair or Keypair()

    @property
    def address(self) -> str:
        return str(self.keypair.pubkey())

    def save_recovery_key(self, directory: str) -> str:
        """
        Writes the round keypair in solana-keygen JSON format to
        `<directory>/<address>.json`, readable by the owner only.
        """
        os.makedirs(directory, mode=0o700, exist_ok=True)
        path = os.path.join(directory, f"{self.address}.json")
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(list(bytes(self.keypair)), f)
        return path

    def build_payout(
        self, winner: str, winner_amount: int, platform_fee: int, blockhash: str
    ) -> Transaction:
        owner = self.keypair.pubkey()
        ixs = [
            transfer(
                TransferParams(
                    from_pubkey=owner,
                    to_pubkey=Pubkey.from_string(self.platform_address),
                    lamports=platform_fee,
                )
            ),
            transfer(
                TransferParams(
                    from_pubkey=owner,
                    to_pubkey=Pubkey.from_string(winner),
                    lamports=winner_amount,
                )
            ),
        ]
        msg = Message(ixs, owner)
        return Transaction([self.keypair], msg, Hash.from_string(blockhash))

    async def disburse(self, winner: str) -> Optional[str]:
        """Pays out the whole balance. Attempted once; failures return None."""
        if self.rpc is None:
            log.warning("No ledger connection; payout to %s skipped", winner)
            return None
        if not self.platform_address:
            log.error("PLATFORM_WALLET not set; payout to %s skipped", winner)
            return None

        try:
            balance = await self.rpc.get_balance(self.address)
            split = split_pot(balance)
            if split is None:
                log.warning(
                    "Balance %d lamports at %s too small to pay out", balance, self.address
                )
                return None
            platform_fee, winner_amount = split

            blockhash = await self.rpc.get_latest_blockhash()
            tx = self.build_payout(winner, winner_amount, platform_fee, blockhash)
            sig = await self.rpc.send_transaction(bytes(tx))
            log.info(
                "Payout sent: %d lamports to %s, fee %d lamports (%s)",
                winner_amount,
                winner,
                platform_fee,
                sig,
            )
            if not await self.rpc.confirm_transaction(sig, commitment="confirmed"):
                log.warning("Payout %s not confirmed before timeout", sig)
            return sig
        except Exception:
            log.exception(
                "Payout from %s to %s failed; funds remain at the round address",
                self.address,
                winner,
            )
            return None
