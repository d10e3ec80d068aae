from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

import httpx
from websockets.asyncio.server import ServerConnection, serve as ws_serve
from websockets.exceptions import ConnectionClosed

from . import protocol
from .config import Settings
from .entry import EntryDesk
from .round_state import EntryError
from .rpc import RpcClient
from .scheduler import RoundScheduler
from .verify import PaymentVerifier
from .wallet import RoundWallet, is_valid_address

log = logging.getLogger(__name__)


class Broadcaster:
    """Fan-out of outbound frames to every open subscriber connection."""

    def __init__(self) -> None:
        self.connections: Set[Any] = set()

    def add(self, connection: Any) -> None:
        self.connections.add(connection)

    def discard(self, connection: Any) -> None:
        self.connections.discard(connection)

    async def send(self, connection: Any, message: str) -> bool:
        try:
            await connection.send(message)
            return True
        except ConnectionClosed:
            self.discard(connection)
            return False

    async def broadcast(self, message: str) -> None:
        dead = []
        for connection in list(self.connections):
            try:
                await connection.send(message)
            except ConnectionClosed:
                dead.append(connection)
        for connection in dead:
            self.discard(connection)

    async def publish_snapshot(self, snapshot: Dict[str, Any]) -> None:
        await self.broadcast(protocol.game_update(snapshot))


class GameServer:
    def __init__(
        self,
        scheduler: RoundScheduler,
        desk: EntryDesk,
        broadcaster: Broadcaster,
    ) -> None:
        self.scheduler = scheduler
        self.desk = desk
        self.broadcaster = broadcaster

    async def handler(self, connection: ServerConnection) -> None:
        self.broadcaster.add(connection)
        log.info("Subscriber connected (%d total)", len(self.broadcaster.connections))
        try:
            if self.scheduler.round is not None:
                await self.broadcaster.send(
                    connection, protocol.game_update(self.scheduler.round.snapshot())
                )
            async for raw in connection:
                await self.handle_message(connection, raw)
        except ConnectionClosed:
            pass
        finally:
            self.broadcaster.discard(connection)
            log.info(
                "Subscriber disconnected (%d remaining)", len(self.broadcaster.connections)
            )

    async def handle_message(self, connection: Any, raw: Any) -> None:
        try:
            msg = protocol.parse_message(raw)
        except protocol.MalformedMessageError as e:
            log.debug("Malformed message: %s", e)
            await self.broadcaster.send(connection, protocol.error("Invalid message format"))
            return

        try:
            if isinstance(msg, protocol.ResetGame):
                log.info("Reset requested by subscriber")
                await self.scheduler.reset()
                return

            participant = await self.desk.place_bet(
                msg.identity, msg.amount, msg.transfer_id
            )
            await self.broadcaster.send(
                connection,
                protocol.bet_placed(
                    f"Bet placed: {msg.amount} SOL (total stake {participant.stake} SOL)"
                ),
            )
        except EntryError as e:
            await self.broadcaster.send(connection, protocol.error(str(e)))
        except Exception:
            log.exception("Error handling %s", type(msg).__name__)
            await self.broadcaster.send(connection, protocol.error("Internal error"))


async def build_rpc(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Optional[RpcClient]:
    if settings.simulation_only:
        log.warning("No RPC configured; only simulated entries will be accepted")
        return None
    rpc = RpcClient(
        settings.rpc_url, timeout_s=settings.rpc_timeout_s, transport=transport
    )
    if not await rpc.get_health():
        log.warning("Ledger unreachable at startup; only simulated entries will be accepted")
        await rpc.close()
        return None
    return rpc


async def serve(settings: Settings) -> None:
    if settings.platform_address and not is_valid_address(settings.platform_address):
        raise SystemExit(f"Invalid PLATFORM_WALLET: {settings.platform_address}")

    rpc = await build_rpc(settings)
    broadcaster = Broadcaster()
    scheduler = RoundScheduler(
        wallet_factory=lambda: RoundWallet(rpc, settings.platform_address),
        publish=broadcaster.publish_snapshot,
        recovery_dir=settings.recovery_dir,
    )
    desk = EntryDesk(scheduler, PaymentVerifier(rpc))
    server = GameServer(scheduler, desk, broadcaster)

    await scheduler.start()
    try:
        async with ws_serve(server.handler, settings.host, settings.port):
            log.info("Listening on ws://%s:%d", settings.host, settings.port)
            await asyncio.Future()
    finally:
        await scheduler.stop()
        if rpc is not None:
            await rpc.close()
