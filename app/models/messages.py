"""
Models / messages.py
Rôle:
- Valider les payloads entrants du canal WebSocket `/ws`.

Notes:
- `playerId` est restreint à "P1" | "P2" (Literal) : toute autre valeur est une erreur
  de validation, avant même l'authentification du rôle.
- `move` est validé plus finement par le moteur (0, 1 ou 2) pour renvoyer le même message
  que le reste des refus.
"""
from pydantic import BaseModel, ConfigDict, StrictInt
from typing import Literal, Optional

Role = Literal["P1", "P2"]


class InboundMessage(BaseModel):
    """Enveloppe de tout message client : {"type": ..., "payload": {...}}."""
    type: str
    payload: dict = {}

    model_config = ConfigDict(extra="allow")


class GetCommitmentPayload(BaseModel):
    playerId: Role
    move: StrictInt
    salt: str


class PlayerCommitPayload(BaseModel):
    playerId: Role
    commitment: Optional[str] = None  # valeur renvoyée par le client, indicative seulement


class PlayerRevealPayload(BaseModel):
    playerId: Role

    # tout coup/sel envoyé ici est ignoré : seule la valeur serveur est vérifiée
    model_config = ConfigDict(extra="ignore")
