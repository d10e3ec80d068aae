"""
Wire messages exchanged with WebSocket subscribers.

Every frame is a JSON object tagged by its `type` field.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union


class MalformedMessageError(ValueError):
    pass


@dataclass(frozen=True)
class PlaceBet:
    identity: str
    amount: float
    transfer_id: Optional[str] = None


@dataclass(frozen=True)
class ResetGame:
    pass


Inbound = Union[PlaceBet, ResetGame]


def _field(data: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


def _parse_place_bet(data: Dict[str, Any]) -> PlaceBet:
    identity = _field(data, "identity", "publicKey")
    if not isinstance(identity, str) or not identity.strip():
        raise MalformedMessageError("placeBet requires an identity")

    amount = data.get("amount")
    if isinstance(amount, bool):
        raise MalformedMessageError("placeBet requires a numeric amount")
    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise MalformedMessageError("placeBet requires a numeric amount")
    if not math.isfinite(amount):
        raise MalformedMessageError("placeBet requires a finite amount")

    transfer_id = _field(data, "transferId", "signature")
    if transfer_id is not None and not isinstance(transfer_id, str):
        raise MalformedMessageError("transferId must be a string")

    return PlaceBet(identity=identity.strip(), amount=amount, transfer_id=transfer_id)


def parse_message(raw: Union[str, bytes]) -> Inbound:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedMessageError("Message must be a JSON object")

    mtype = data.get("type")
    if mtype == "placeBet":
        return _parse_place_bet(data)
    if mtype == "resetGame":
        return ResetGame()
    raise MalformedMessageError(f"Unknown message type: {mtype!r}")


def game_update(snapshot: Dict[str, Any]) -> str:
    return json.dumps({"type": "gameUpdate", "data": snapshot})


def bet_placed(message: str) -> str:
    return json.dumps({"type": "betPlaced", "message": message})


def error(message: str) -> str:
    return json.dumps({"type": "error", "message": message})
