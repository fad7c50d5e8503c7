# app/routes/websocket.py
"""
WebSocket endpoint.

- /ws : canal de jeu. Attribution implicite d'un rôle à la connexion (P1 puis P2),
  puis boucle d'écoute {"type": ..., "payload": {...}}.
- Types entrants: join, get_commitment, player_commit, player_reveal, reset_game, ping.
- Toute action refusée (GameError ou payload invalide) est renvoyée au seul demandeur
  sous forme d'`error_message`.
"""
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

import anyio
import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadValidationError

from app.models.messages import (
    GetCommitmentPayload,
    InboundMessage,
    PlayerCommitPayload,
    PlayerRevealPayload,
)
from app.services.session_engine import ENGINE, GameError
from app.services.ws_manager import WS

logger = logging.getLogger(__name__)

router = APIRouter()

GAME_FULL_MESSAGE = "Game is full. Please try again later."


async def _on_join(connection_id: str, payload: Dict[str, Any]) -> None:
    role = await ENGINE.join(connection_id)
    if role is None:
        await WS.send_type(connection_id, "error_message", {"message": GAME_FULL_MESSAGE})


async def _on_get_commitment(connection_id: str, payload: Dict[str, Any]) -> None:
    data = GetCommitmentPayload.model_validate(payload)
    await ENGINE.request_commitment_params(connection_id, data.playerId, data.move, data.salt)


async def _on_player_commit(connection_id: str, payload: Dict[str, Any]) -> None:
    data = PlayerCommitPayload.model_validate(payload)
    await ENGINE.confirm_commit(connection_id, data.playerId, data.commitment)


async def _on_player_reveal(connection_id: str, payload: Dict[str, Any]) -> None:
    data = PlayerRevealPayload.model_validate(payload)
    await ENGINE.request_reveal(connection_id, data.playerId)


async def _on_reset_game(connection_id: str, payload: Dict[str, Any]) -> None:
    await ENGINE.request_reset(connection_id)


async def _on_ping(connection_id: str, payload: Dict[str, Any]) -> None:
    await WS.send_type(connection_id, "pong", {})


HANDLERS: Dict[str, Callable[[str, Dict[str, Any]], Awaitable[None]]] = {
    "join": _on_join,
    "get_commitment": _on_get_commitment,
    "player_commit": _on_player_commit,
    "player_reveal": _on_player_reveal,
    "reset_game": _on_reset_game,
    "ping": _on_ping,
}


async def dispatch(connection_id: str, msg: InboundMessage) -> None:
    handler = HANDLERS.get(msg.type)
    if handler is None:
        await WS.send_type(connection_id, "error_message", {"message": f"Unknown event type: {msg.type}"})
        return
    try:
        await handler(connection_id, msg.payload)
    except GameError as exc:
        await WS.send_type(connection_id, "error_message", {"message": exc.message})
    except PayloadValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        await WS.send_type(connection_id, "error_message", {"message": f"Invalid {msg.type} payload: {fields}"})


@router.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """
    Boucle d'écoute des joueurs.
    - Connexion : attribution du rôle, ou "game full" puis fermeture.
    - Messages non JSON : ignorés.
    - Déconnexion : libération du rôle (et reset si la partie était en cours).
    """
    connection_id = await WS.connect(ws)
    logger.info("Player connected: %s", connection_id)
    role = await ENGINE.join(connection_id)
    if role is None:
        await WS.send_type(connection_id, "error_message", {"message": GAME_FULL_MESSAGE})
        await WS.disconnect(connection_id)
        return

    try:
        while True:
            raw = await ws.receive_text()
            try:
                msg = InboundMessage.model_validate(orjson.loads(raw))
            except (orjson.JSONDecodeError, PayloadValidationError):
                # Message non JSON / sans type -> ignore
                continue
            try:
                await dispatch(connection_id, msg)
            except Exception:
                logger.exception("Unhandled error while processing %s from %s", msg.type, connection_id)
                await WS.send_type(connection_id, "error_message", {"message": "Internal server error."})
    except WebSocketDisconnect:
        pass
    finally:
        logger.info("Player disconnected: %s", connection_id)
        WS.forget(connection_id)
        # la tâche peut être annulée par le serveur : le reset doit aller jusqu'au bout
        with anyio.CancelScope(shield=True):
            await ENGINE.handle_disconnect(connection_id)
