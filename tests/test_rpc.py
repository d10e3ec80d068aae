import asyncio
import base64
import json

import httpx
import pytest

from conftest import new_address, no_sleep
from solana_jackpot.config import Settings
from solana_jackpot.entry import EntryDesk, VerificationFailedError
from solana_jackpot.rpc import RpcClient, RpcError
from solana_jackpot.scheduler import RoundScheduler
from solana_jackpot.server import build_rpc
from solana_jackpot.verify import PaymentVerifier
from solana_jackpot.wallet import RoundWallet

RPC_URL = "http://ledger.test"


class Ledger:
    """JSON-RPC answers keyed by method; a list is consumed one call at a time."""

    def __init__(self, **answers):
        self.answers = answers
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        answer = self.answers[body["method"]]
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, httpx.Response):
            return answer
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **answer})

    def client(self) -> RpcClient:
        return RpcClient(RPC_URL, transport=httpx.MockTransport(self))


def test_error_member_raises_rpc_error():
    ledger = Ledger(getBalance={"error": {"code": -32602, "message": "Invalid param"}})

    async def go():
        async with ledger.client() as rpc:
            with pytest.raises(RpcError, match="Invalid param"):
                await rpc.get_balance(new_address())

    asyncio.run(go())


def test_http_failure_propagates_from_calls():
    ledger = Ledger(getBalance=httpx.Response(503))

    async def go():
        async with ledger.client() as rpc:
            with pytest.raises(httpx.HTTPStatusError):
                await rpc.get_balance(new_address())

    asyncio.run(go())


def test_signature_status_is_unwrapped():
    status = {"slot": 1, "confirmations": None, "err": None, "confirmationStatus": "finalized"}
    ledger = Ledger(
        getSignatureStatuses=[
            {"result": {"context": {"slot": 1}, "value": [status]}},
            {"result": {"context": {"slot": 1}, "value": [None]}},
            {"result": None},
        ]
    )

    async def go():
        async with ledger.client() as rpc:
            assert await rpc.get_signature_status("sig") == status
            assert await rpc.get_signature_status("sig") is None
            assert await rpc.get_signature_status("sig") is None

    asyncio.run(go())
    assert ledger.requests[0]["params"] == [["sig"], {"searchTransactionHistory": True}]


def test_confirm_waits_for_requested_commitment():
    def status(level):
        return {"result": {"value": [{"err": None, "confirmationStatus": level}]}}

    ledger = Ledger(getSignatureStatuses=[{"result": {"value": [None]}}, status("processed"), status("confirmed")])

    async def go():
        async with ledger.client() as rpc:
            return await rpc.confirm_transaction("sig", poll_interval_s=0)

    assert asyncio.run(go()) is True
    assert len(ledger.requests) == 3


def test_confirm_raises_on_failed_transaction():
    ledger = Ledger(
        getSignatureStatuses={
            "result": {"value": [{"err": {"InstructionError": [0, "Custom"]}, "confirmationStatus": "confirmed"}]}
        }
    )

    async def go():
        async with ledger.client() as rpc:
            with pytest.raises(RpcError, match="failed"):
                await rpc.confirm_transaction("sig", poll_interval_s=0)

    asyncio.run(go())


def test_confirm_times_out():
    ledger = Ledger()

    async def go():
        async with ledger.client() as rpc:
            return await rpc.confirm_transaction("sig", timeout_s=0)

    assert asyncio.run(go()) is False
    assert ledger.requests == []


def test_health():
    async def check(answer):
        async with Ledger(getHealth=answer).client() as rpc:
            return await rpc.get_health()

    assert asyncio.run(check({"result": "ok"})) is True
    assert asyncio.run(check({"error": {"code": -32005, "message": "Node is behind"}})) is False
    assert asyncio.run(check(httpx.Response(500))) is False
    assert asyncio.run(check(httpx.Response(200, text="not json"))) is False


def test_send_transaction_encodes_base64_and_balance_is_int():
    ledger = Ledger(
        sendTransaction={"result": "payout-sig"},
        getBalance={"result": {"context": {"slot": 1}, "value": 1_500_000_000}},
        getLatestBlockhash={"result": {"value": {"blockhash": "EETubP5AKHgjPAhzPAFcb8BAY1hMH639CWCFTqi3hq1k"}}},
    )

    async def go():
        async with ledger.client() as rpc:
            sig = await rpc.send_transaction(b"\x01\x02\x03")
            balance = await rpc.get_balance("addr")
            blockhash = await rpc.get_latest_blockhash()
            return sig, balance, blockhash

    sig, balance, blockhash = asyncio.run(go())
    assert sig == "payout-sig"
    assert balance == 1_500_000_000
    assert blockhash == "EETubP5AKHgjPAhzPAFcb8BAY1hMH639CWCFTqi3hq1k"
    assert ledger.requests[0]["params"][0] == base64.b64encode(b"\x01\x02\x03").decode()


def test_missing_blockhash_raises():
    ledger = Ledger(getLatestBlockhash={"result": {"value": {}}})

    async def go():
        async with ledger.client() as rpc:
            with pytest.raises(RpcError):
                await rpc.get_latest_blockhash()

    asyncio.run(go())


def test_unhealthy_ledger_at_startup_means_simulation_only():
    settings = Settings(rpc_url=RPC_URL)
    transport = httpx.MockTransport(lambda request: httpx.Response(500))

    async def go():
        rpc = await build_rpc(settings, transport=transport)
        assert rpc is None

        scheduler = RoundScheduler(
            wallet_factory=lambda: RoundWallet(rpc, None), publish=_ignore
        )
        await scheduler.start()
        desk = EntryDesk(scheduler, PaymentVerifier(rpc, sleep=no_sleep), sleep=no_sleep)
        with pytest.raises(VerificationFailedError):
            await desk.place_bet(new_address(), 1.0, "realsig")
        simulated = await desk.place_bet("A", 1.0, "simulated_1")
        assert simulated.stake == 1.0
        await scheduler.stop()

    asyncio.run(go())


def test_healthy_ledger_is_kept():
    ledger = Ledger(getHealth={"result": "ok"})

    async def go():
        rpc = await build_rpc(Settings(rpc_url=RPC_URL), transport=httpx.MockTransport(ledger))
        assert isinstance(rpc, RpcClient)
        await rpc.close()

    asyncio.run(go())


def test_no_rpc_url_means_simulation_only():
    assert asyncio.run(build_rpc(Settings(rpc_url=None))) is None


async def _ignore(_snapshot):
    return None
