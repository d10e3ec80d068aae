from __future__ import annotations

import argparse
import asyncio
import logging

from .config import Settings
from .project_constants import FEE_RESERVE_LAMPORTS, LAMPORTS_PER_SOL
from .rpc import RpcClient
from .server import serve
from .verify import PaymentVerifier
from .wallet import split_pot


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def cmd_serve(args: argparse.Namespace) -> int:
    settings = Settings.from_env(
        rpc_url_override=args.rpc_url,
        platform_address_override=args.platform_wallet,
        host_override=args.host,
        port_override=args.port,
        timeout_override=args.timeout,
        recovery_dir_override=args.recovery_dir,
    )
    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logging.getLogger("serve").info("Shutting down")
    return 0


async def _verify_once(args: argparse.Namespace, settings: Settings) -> bool:
    async with RpcClient(settings.rpc_url, timeout_s=settings.rpc_timeout_s) as rpc:
        verifier = PaymentVerifier(rpc, settle_delay_s=0)
        return await verifier.verify(args.signature, args.amount, args.sender, args.receiver)


def cmd_verify(args: argparse.Namespace) -> int:
    """Checks one deposit against the ledger, the same way the server does."""
    settings = Settings.from_env(rpc_url_override=args.rpc_url, timeout_override=args.timeout)
    if settings.simulation_only:
        raise SystemExit("Missing RPC_URL (or HELIUS_API_KEY). Put it in .env or pass --rpc-url.")

    ok = asyncio.run(_verify_once(args, settings))
    print("✅ DEPOSIT VERIFIED" if ok else "❌ DEPOSIT NOT VERIFIED")
    print(f"Signature     : {args.signature}")
    print(f"Sender        : {args.sender}")
    print(f"Receiver      : {args.receiver}")
    print(f"Amount        : {args.amount} SOL")
    return 0 if ok else 1


def cmd_split(args: argparse.Namespace) -> int:
    split = split_pot(args.lamports)
    print(f"Balance       : {args.lamports} lamports ({args.lamports / LAMPORTS_PER_SOL} SOL)")
    print(f"Fee reserve   : {FEE_RESERVE_LAMPORTS} lamports")
    if split is None:
        print("Nothing to pay out.")
        return 1
    platform_fee, winner_amount = split
    print(f"Platform fee  : {platform_fee} lamports")
    print(f"Winner        : {winner_amount} lamports ({winner_amount / LAMPORTS_PER_SOL} SOL)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="solana-jackpot",
        description="Timed, stake-weighted SOL jackpot rounds over WebSocket.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--rpc-url", default=None, help="Override RPC URL (else use env).")
    p.add_argument("--timeout", type=float, default=None, help="RPC timeout seconds.")

    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the jackpot WebSocket server.")
    s.add_argument("--host", default=None, help="Listen address (else WS_HOST).")
    s.add_argument("--port", type=int, default=None, help="Listen port (else WS_PORT).")
    s.add_argument(
        "--platform-wallet",
        default=None,
        help="Address receiving the platform fee (else PLATFORM_WALLET).",
    )
    s.add_argument(
        "--recovery-dir",
        default=None,
        help="Where keys of unpaid round wallets are saved (else RECOVERY_DIR).",
    )
    s.set_defaults(func=cmd_serve)

    v = sub.add_parser("verify", help="Verify one deposit transaction on-chain.")
    v.add_argument("--signature", required=True, help="Transaction signature.")
    v.add_argument("--amount", required=True, type=float, help="Expected amount in SOL.")
    v.add_argument("--sender", required=True, help="Expected sender address.")
    v.add_argument("--receiver", required=True, help="Round receiving address.")
    v.set_defaults(func=cmd_verify)

    sp = sub.add_parser("split", help="Show how a round balance would be paid out.")
    sp.add_argument("--lamports", required=True, type=int, help="Round balance in lamports.")
    sp.set_defaults(func=cmd_split)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    raise SystemExit(args.func(args))
