"""
Service: game_state.py
Rôle :
- Décrire l'état d'une partie de pierre-feuille-ciseaux à engagement (Session) et de ses
  deux participants (P1, P2).
- Fournir la table de victoire et le snapshot JSON diffusé aux clients.

Cycle de vie :
- Une Session est créée au démarrage puis REMPLACÉE (jamais remise à zéro en place) à
  chaque reset, pour qu'aucune référence à un ancien participant ne survive.
- Un Participant est créé à l'attribution d'un rôle et détruit à la déconnexion ou au reset.

Le module ne fait aucune I/O : seules les mutations du moteur de session le touchent.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import uuid4

ROLE_P1 = "P1"
ROLE_P2 = "P2"
ROLES = (ROLE_P1, ROLE_P2)

TURN_P1_COMMIT = "P1_COMMIT"
TURN_P2_COMMIT = "P2_COMMIT"
TURN_P1_REVEAL = "P1_REVEAL"
TURN_P2_REVEAL = "P2_REVEAL"
TURN_GAME_OVER = "GAME_OVER"
TURN_SEQUENCE = (TURN_P1_COMMIT, TURN_P2_COMMIT, TURN_P1_REVEAL, TURN_P2_REVEAL, TURN_GAME_OVER)

RESULT_DRAW = "Draw"

MOVE_NAMES = {0: "Rock", 1: "Paper", 2: "Scissors"}
VALID_MOVES = frozenset(MOVE_NAMES)

# (coup P1, coup P2) gagnants pour P1
_P1_WINS = {(0, 2), (1, 0), (2, 1)}

INITIAL_LOG_MESSAGE = "Game reset. Player 1, please choose your move and salt."


def determine_winner(p1_move: int, p2_move: int) -> str:
    """Retourne "P1", "P2" ou "Draw"."""
    if p1_move == p2_move:
        return RESULT_DRAW
    if (p1_move, p2_move) in _P1_WINS:
        return ROLE_P1
    return ROLE_P2


def other_role(role: str) -> str:
    return ROLE_P2 if role == ROLE_P1 else ROLE_P1


def commit_turn(role: str) -> str:
    return f"{role}_COMMIT"


def reveal_turn(role: str) -> str:
    return f"{role}_REVEAL"


@dataclass
class Participant:
    role: str
    connection_id: str
    move: Optional[int] = None
    salt: Optional[str] = None
    commitment: Optional[str] = None
    has_committed: bool = False
    has_revealed: bool = False
    proof_verified: Optional[bool] = None

    @property
    def has_commit_params(self) -> bool:
        return self.move is not None and self.salt is not None and self.commitment is not None

    def set_commit_params(self, move: int, salt: str, commitment: str) -> None:
        """move/salt/commitment sont posés ensemble, une seule fois."""
        if self.move is not None or self.salt is not None or self.commitment is not None:
            raise ValueError(f"commit parameters already set for {self.role}")
        self.move = move
        self.salt = salt
        self.commitment = commitment

    def public_view(self) -> Dict[str, Any]:
        """Vue diffusée : coup et sel restent cachés tant que le joueur n'a pas révélé."""
        view: Dict[str, Any] = {
            "id": self.role,
            "hasCommitted": self.has_committed,
            "hasRevealed": self.has_revealed,
            "proofVerified": self.proof_verified,
            "commitment": self.commitment if self.has_committed else None,
        }
        if self.has_revealed:
            view["move"] = self.move
            view["salt"] = self.salt
        return view


@dataclass
class Session:
    session_id: str = field(default_factory=lambda: uuid4().hex)
    slots: Dict[str, Participant] = field(default_factory=dict)
    turn: str = TURN_P1_COMMIT
    log: List[str] = field(default_factory=lambda: [INITIAL_LOG_MESSAGE])
    winner: Optional[str] = None

    # -----------------------------
    # Rôles
    # -----------------------------
    def participant(self, role: str) -> Optional[Participant]:
        return self.slots.get(role)

    def role_of(self, connection_id: str) -> Optional[str]:
        for role, participant in self.slots.items():
            if participant.connection_id == connection_id:
                return role
        return None

    def seat(self, connection_id: str) -> Optional[str]:
        """Attribue P1 puis P2 ; None si la partie est complète."""
        existing = self.role_of(connection_id)
        if existing:
            return existing
        for role in ROLES:
            if role not in self.slots:
                self.slots[role] = Participant(role=role, connection_id=connection_id)
                return role
        return None

    def vacate(self, role: str) -> Optional[Participant]:
        return self.slots.pop(role, None)

    def has_committed(self, role: str) -> bool:
        participant = self.slots.get(role)
        return bool(participant and participant.has_committed)

    # -----------------------------
    # Journal / phases
    # -----------------------------
    def log_message(self, message: str) -> None:
        self.log.append(message)

    def advance(self, turn: str) -> None:
        """Avance la phase ; jamais de retour en arrière (seul un reset recrée la Session)."""
        if TURN_SEQUENCE.index(turn) < TURN_SEQUENCE.index(self.turn):
            raise ValueError(f"cannot move turn back from {self.turn} to {turn}")
        self.turn = turn

    def reset_eligible(self) -> bool:
        if self.turn == TURN_GAME_OVER:
            return True
        return (
            self.turn == TURN_P1_COMMIT
            and not self.has_committed(ROLE_P1)
            and not self.has_committed(ROLE_P2)
        )

    def snapshot(self, is_processing_zk: bool = False) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "players": {role: p.public_view() for role, p in self.slots.items()},
            "currentTurn": self.turn,
            "messageLog": list(self.log),
            "winner": self.winner,
            "isProcessingZK": is_processing_zk,
        }
