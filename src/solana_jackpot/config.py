from __future__ import annotations

import os
from dataclasses import dataclass
from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    rpc_url: str | None
    platform_address: str | None = None
    host: str = "0.0.0.0"
    port: int = 8080
    rpc_timeout_s: float = 30.0
    recovery_dir: str = "recovery_keys"

    @property
    def simulation_only(self) -> bool:
        return not self.rpc_url

    @staticmethod
    def from_env(
        rpc_url_override: str | None = None,
        platform_address_override: str | None = None,
        host_override: str | None = None,
        port_override: int | None = None,
        timeout_override: float | None = None,
        recovery_dir_override: str | None = None,
    ) -> "Settings":
        load_dotenv()

        return Settings(
            rpc_url=_resolve_rpc_url(rpc_url_override),
            platform_address=platform_address_override
            or os.getenv("PLATFORM_WALLET", "").strip()
            or None,
            host=host_override or os.getenv("WS_HOST", "").strip() or "0.0.0.0",
            port=port_override or int(os.getenv("WS_PORT", "8080")),
            rpc_timeout_s=timeout_override or float(os.getenv("RPC_TIMEOUT", "30")),
            recovery_dir=recovery_dir_override
            or os.getenv("RECOVERY_DIR", "").strip()
            or "recovery_keys",
        )


def _resolve_rpc_url(override: str | None) -> str | None:
    # If user provides --rpc-url, trust it.
    if override:
        return override

    env_rpc = os.getenv("RPC_URL", "").strip()
    if env_rpc:
        return env_rpc

    helius_key = os.getenv("HELIUS_API_KEY", "").strip()
    if helius_key:
        return f"https://mainnet.helius-rpc.com/?api-key={helius_key}"

    # No ledger configured: only simulated entries can be admitted.
    return None
