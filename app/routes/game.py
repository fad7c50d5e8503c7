"""
Module routes/game.py
Rôle:
- Endpoints publics (lecture seule) sur la partie en cours.

Intégrations:
- ENGINE: snapshot de la Session (même forme que `game_state_update`).
- WS: statistiques de connexions.
"""
from fastapi import APIRouter
from typing import Any, Dict

from app.services.session_engine import ENGINE
from app.services.ws_manager import WS

router = APIRouter(prefix="/game", tags=["game"])


@router.get("/state")
async def game_state() -> Dict[str, Any]:
    """Snapshot courant + journal du plus récent au plus ancien (affichage)."""
    snapshot = ENGINE.snapshot()
    return {
        "gameState": snapshot,
        "log": list(reversed(snapshot["messageLog"])),
        "resetCooldownActive": ENGINE.debouncer.cooldown_active,
    }


@router.get("/peers")
def game_peers() -> Dict[str, Any]:
    """Rôles occupés et nombre de sockets ouvertes."""
    seated = sorted(ENGINE.session.slots.keys())
    return {**WS.stats(), "seated": seated}
