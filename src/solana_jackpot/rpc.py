from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

log = logging.getLogger(__name__)

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


class RpcError(RuntimeError):
    """The ledger answered with a JSON-RPC error."""


class RpcClient:
    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.client = httpx.AsyncClient(timeout=timeout_s, transport=transport)
        self._next_id = 0

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "RpcClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _call(self, method: str, params: List[Any]) -> Any:
        self._next_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id,
            "method": method,
            "params": params,
        }
        data = await self._post(payload)
        return data.get("result")

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = await self.client.post(self.rpc_url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if "error" in data:
            raise RpcError(f"RPC error: {data['error']}")
        return data

    async def get_health(self) -> bool:
        try:
            return await self._call("getHealth", []) == "ok"
        except (httpx.HTTPError, RpcError, ValueError) as e:
            log.warning("RPC health check failed: %s", e)
            return False

    async def get_transaction(
        self, signature: str, commitment: str = "confirmed"
    ) -> Optional[Dict[str, Any]]:
        """Returns the raw transaction record, or None if the node has not seen it."""
        return await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "json",
                    "commitment": commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        return values[0]

    async def get_balance(self, address: str, commitment: str = "confirmed") -> int:
        """Returns the balance of an address in lamports."""
        result = await self._call("getBalance", [address, {"commitment": commitment}])
        return int(result["value"])

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> str:
        result = await self._call(
            "getLatestBlockhash", [{"commitment": commitment}]
        )
        if not result or "blockhash" not in result.get("value", {}):
            raise RpcError("getLatestBlockhash returned no blockhash.")
        return result["value"]["blockhash"]

    async def send_transaction(self, raw_tx: bytes) -> str:
        encoded = base64.b64encode(raw_tx).decode("ascii")
        return await self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": "confirmed"}],
        )

    async def confirm_transaction(
        self,
        signature: str,
        commitment: str = "confirmed",
        timeout_s: float = 60.0,
        poll_interval_s: float = 1.0,
    ) -> bool:
        """Polls the signature status until it reaches `commitment` or times out."""
        wanted = _COMMITMENT_RANK[commitment]
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            status = await self.get_signature_status(signature)
            if status:
                if status.get("err") is not None:
                    raise RpcError(f"Transaction {signature} failed: {status['err']}")
                level = status.get("confirmationStatus")
                if level is not None and _COMMITMENT_RANK.get(level, -1) >= wanted:
                    return True
            await asyncio.sleep(poll_interval_s)
        return False
