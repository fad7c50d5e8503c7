"""
Service: reset_debouncer.py
Rôle:
- Fusionner les demandes de reset concurrentes (les deux clients, ou un reset automatique
  déclenché par une déconnexion) en un seul reset effectif.
- Fenêtre de refroidissement (`RESET_COOLDOWN_SECONDS`, 2 s par défaut) pendant laquelle
  toute nouvelle demande est considérée comme déjà satisfaite.

Décisions:
- ACCEPTED       → le moteur remplace la Session et diffuse state + reset signal.
- ALREADY_RESET  → rien n'est remplacé, le moteur rediffuse state + reset signal.
- REJECTED       → partie en cours, le demandeur est informé de la phase courante.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .game_state import Session

logger = logging.getLogger(__name__)


class ResetDecision(str, Enum):
    ACCEPTED = "accepted"
    ALREADY_RESET = "already_reset"
    REJECTED = "rejected"


@dataclass
class ResetDebouncer:
    cooldown_seconds: float = 2.0
    cooldown_active: bool = False
    _timer: Optional[asyncio.TimerHandle] = field(default=None, init=False, repr=False)

    def evaluate(self, session: Session, *, forced: bool = False) -> ResetDecision:
        """
        `forced=True` (déconnexion en cours de partie) ignore les conditions d'éligibilité
        mais respecte quand même la fenêtre de refroidissement.
        """
        if self.cooldown_active:
            logger.info("Reset ignored: a reset happened less than %ss ago", self.cooldown_seconds)
            return ResetDecision.ALREADY_RESET
        if not forced and not session.reset_eligible():
            logger.info("Reset ignored: game in progress (turn=%s)", session.turn)
            return ResetDecision.REJECTED
        self._start_cooldown()
        return ResetDecision.ACCEPTED

    def _start_cooldown(self) -> None:
        self.cancel()
        self.cooldown_active = True
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.cooldown_seconds, self._clear)

    def _clear(self) -> None:
        logger.debug("Reset cooldown cleared")
        self.cooldown_active = False
        self._timer = None

    def cancel(self) -> None:
        """Annule le timer en cours (arrêt de l'app) et lève le refroidissement."""
        if self._timer is not None:
            self._timer.cancel()
        self._clear()
