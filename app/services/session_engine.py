"""
Service: session_engine.py
Rôle:
- Seul propriétaire de la Session : attribution des rôles, phases commit/reveal, vainqueur.
- Sérialise les appels au prouveur via la porte ZK et applique leur résultat.
- Diffuse l'état après chaque mutation (jamais avant).

Phases: P1_COMMIT → P2_COMMIT → P1_REVEAL → P2_REVEAL → GAME_OVER

WS (sortants):
- player_assigned (unicast), commitment_generated (unicast), error_message, info_message
- game_state_update, loading_update, game_result, game_reset_signal (broadcast)

Toutes les mutations ont lieu sur la boucle asyncio. Le seul point de suspension qui
précède une mutation est l'appel prouveur (exécuté dans un thread via anyio) : son
résultat n'est appliqué que si la Session et le Participant d'origine sont toujours en place.

API interne exposée aux routes:
- ENGINE.join(conn), ENGINE.handle_disconnect(conn)
- ENGINE.request_commitment_params(conn, role, move, salt)
- ENGINE.confirm_commit(conn, role, commitment)
- ENGINE.request_reveal(conn, role)
- ENGINE.request_reset(conn)
- ENGINE.snapshot()
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import anyio

from app.config.settings import settings
from app.services.field_codec import canonicalize_salt, is_hex_string
from app.services.game_state import (
    ROLE_P1,
    ROLE_P2,
    ROLES,
    TURN_GAME_OVER,
    TURN_P1_COMMIT,
    TURN_P1_REVEAL,
    TURN_P2_COMMIT,
    TURN_P2_REVEAL,
    VALID_MOVES,
    Participant,
    Session,
    commit_turn,
    determine_winner,
    other_role,
    reveal_turn,
)
from app.services.prover_bridge import NargoProverBridge, ProverBridge, ProverError
from app.services.reset_debouncer import ResetDebouncer, ResetDecision
from app.services.ws_manager import WS
from app.services.zk_gate import ZkOperationGate

logger = logging.getLogger(__name__)


# -------------------- erreurs --------------------

class GameError(Exception):
    """Action refusée : le message est renvoyé tel quel au seul demandeur."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(GameError):
    pass


class TurnStateError(GameError):
    pass


class ValidationError(GameError):
    pass


class ServerBusyError(GameError):
    pass


class MissingPlayerDataError(GameError):
    pass


# -------------------- moteur de session --------------------

@dataclass
class SessionEngine:
    """
    `channel` doit exposer `send_type(conn, type, payload)` et `broadcast_type(type, payload)`
    (coroutines), comme `WSManager`.
    """
    bridge: ProverBridge
    channel: Any
    gate: ZkOperationGate = field(default_factory=ZkOperationGate)
    debouncer: ResetDebouncer = field(default_factory=ResetDebouncer)
    session: Session = field(default_factory=Session)
    strict_commitment_match: bool = False

    # === état courant ===
    def snapshot(self) -> Dict[str, Any]:
        return self.session.snapshot(is_processing_zk=self.gate.busy)

    def _replace_session(self) -> None:
        logger.info("Resetting game state: players cleared, turn to %s", TURN_P1_COMMIT)
        self.session = Session()

    def _is_current(self, session: Session, participant: Participant) -> bool:
        return self.session is session and session.slots.get(participant.role) is participant

    # === diffusion ===
    async def broadcast_state(self, message: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"gameState": self.snapshot()}
        if message:
            payload["message"] = message
        await self.channel.broadcast_type("game_state_update", payload)

    async def _send_error(self, connection_id: str, message: str) -> None:
        await self.channel.send_type(connection_id, "error_message", {"message": message})

    async def _broadcast_loading(self, is_loading: bool, message: str = "") -> None:
        await self.channel.broadcast_type("loading_update", {"isLoading": is_loading, "message": message})

    async def _broadcast_reset(self, message: str) -> None:
        await self.broadcast_state(message)
        await self.channel.broadcast_type("game_reset_signal", {})

    # === garde-fous ===
    def _authenticate(self, connection_id: str, role: Any) -> Participant:
        participant = self.session.participant(role) if role in ROLES else None
        if participant is None or participant.connection_id != connection_id:
            logger.warning(
                "Role authentication failed: connection %s claims %s (owner=%s)",
                connection_id,
                role,
                participant.connection_id if participant else None,
            )
            raise AuthenticationError("Role authentication failed. Your game session might be outdated.")
        return participant

    def _acquire_gate(self, owner: str) -> None:
        if not self.gate.try_acquire(owner):
            raise ServerBusyError("Server is busy with a ZK operation. Please wait.")

    async def _call_prover(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await anyio.to_thread.run_sync(fn, *args)

    # === connexions ===
    async def join(self, connection_id: str) -> Optional[str]:
        """Attribue un rôle libre ; None si la partie est complète (l'appelant prévient le client)."""
        session = self.session
        existing = session.role_of(connection_id)
        role = existing or session.seat(connection_id)
        if role is None:
            logger.info("Game full, connection %s refused", connection_id)
            return None

        await self.channel.send_type(connection_id, "player_assigned", {"playerId": role})
        if existing:
            return role

        logger.info("Connection %s assigned as %s", connection_id, role)
        session.log_message(f"{role} joined.")
        if role == ROLE_P2 and session.turn == TURN_P1_COMMIT and session.has_committed(ROLE_P1):
            session.advance(TURN_P2_COMMIT)
            session.log_message("P2 to commit.")
        await self.broadcast_state(f"{role} joined. Current Turn: {session.turn}")
        return role

    async def handle_disconnect(self, connection_id: str) -> None:
        session = self.session
        role = session.role_of(connection_id)
        if role is None:
            return
        session.vacate(role)
        session.log_message(f"{role} disconnected.")
        logger.info("Active %s (connection %s) disconnected, slot cleared", role, connection_id)

        if session.turn == TURN_GAME_OVER:
            await self.broadcast_state(f"{role} disconnected after game over.")
            return

        decision = self.debouncer.evaluate(session, forced=True)
        if decision is ResetDecision.ACCEPTED:
            logger.info("%s disconnected mid-game, resetting game", role)
            self._replace_session()
            await self._broadcast_reset(f"Player {role} disconnected. Game has been reset.")
        else:
            await self._broadcast_reset("Game is resetting...")

    # === engagement ===
    async def request_commitment_params(self, connection_id: str, role: str, move: Any, salt: Any) -> None:
        participant = self._authenticate(connection_id, role)
        session = self.session
        if session.turn != commit_turn(role) or participant.has_committed:
            raise TurnStateError(f"Not your turn ({session.turn}) or already committed.")
        if participant.commitment is not None:
            raise TurnStateError(f"Commitment already generated for {role}. Confirm commit.")
        if isinstance(move, bool) or not isinstance(move, int) or move not in VALID_MOVES:
            raise ValidationError("Invalid move/salt.")
        if not isinstance(salt, str) or not salt.strip():
            raise ValidationError("Invalid move/salt.")
        salt_hex = canonicalize_salt(salt)
        if not is_hex_string(salt_hex) or salt_hex == "0x":
            raise ValidationError("Invalid move/salt.")

        self._acquire_gate(f"commit:{role}")
        try:
            await self._broadcast_loading(True, f"Generating commitment for {role}...")
            try:
                commitment = await self._call_prover(self.bridge.derive_commitment, move, salt_hex)
            except ProverError as exc:
                logger.error("Commitment generation failed for %s: %s", role, exc)
                session.log_message(f"Error generating commitment for {role}.")
                await self._send_error(connection_id, f"Commitment failed: {exc}")
            else:
                if not self._is_current(session, participant):
                    logger.info("Discarding commitment for %s: session changed meanwhile", role)
                else:
                    participant.set_commit_params(move, salt_hex, commitment)
                    session.log_message(f"{role} received commitment parameters. Confirm commit.")
                    await self.channel.send_type(
                        connection_id,
                        "commitment_generated",
                        {"playerId": role, "commitment": commitment, "move": move, "salt": salt_hex},
                    )
        finally:
            self.gate.release()
            await self._broadcast_loading(False)
            await self.broadcast_state()

    async def confirm_commit(self, connection_id: str, role: str, commitment: Any) -> None:
        participant = self._authenticate(connection_id, role)
        session = self.session
        if session.turn != commit_turn(role) or participant.has_committed:
            raise TurnStateError(f"Commit turn/state error. Current turn: {session.turn}")
        if not participant.has_commit_params:
            raise TurnStateError(f"No commitment generated yet for {role}. Request one first.")

        echoed = str(commitment or "").strip().lower()
        if echoed != participant.commitment:
            logger.warning(
                "Client/server commitment mismatch for %s: client=%s server=%s",
                role,
                echoed,
                participant.commitment,
            )
            if self.strict_commitment_match:
                raise ValidationError("Commitment does not match the server-generated value.")

        participant.has_committed = True
        session.log_message(f"{role} committed.")
        if role == ROLE_P1 and session.participant(ROLE_P2) is not None:
            session.advance(TURN_P2_COMMIT)
            session.log_message("P2 to commit.")
        elif role == ROLE_P1:
            session.log_message("P1 committed. Waiting for P2 to join and commit.")
        else:
            session.advance(TURN_P1_REVEAL)
            session.log_message("P1 to reveal.")
        await self.broadcast_state()

    # === révélation ===
    async def request_reveal(self, connection_id: str, role: str) -> None:
        participant = self._authenticate(connection_id, role)
        session = self.session
        if session.turn != reveal_turn(role) or not participant.has_committed or participant.has_revealed:
            raise TurnStateError(f"Reveal turn/state error. Current turn: {session.turn}")
        if not participant.has_commit_params:
            raise MissingPlayerDataError(f"Server player data error: nothing stored for {role}.")

        self._acquire_gate(f"reveal:{role}")
        try:
            await self._broadcast_loading(True, f"Verifying {role}'s move...")
            try:
                # valeurs stockées côté serveur uniquement
                verified = await self._call_prover(
                    self.bridge.verify_reveal, participant.move, participant.salt, participant.commitment
                )
            except ProverError as exc:
                logger.error("Reveal verification errored for %s: %s", role, exc)
                session.log_message(f"Error during {role}'s reveal: {exc}.")
                await self._send_error(connection_id, f"Error during reveal/proof process: {exc}")
            else:
                if not self._is_current(session, participant):
                    logger.info("Discarding reveal result for %s: session changed meanwhile", role)
                elif verified:
                    await self._apply_verified_reveal(session, participant)
                else:
                    await self._apply_failed_reveal(session, participant, connection_id)
        finally:
            self.gate.release()
            await self._broadcast_loading(False)
            await self.broadcast_state()

    async def _apply_verified_reveal(self, session: Session, participant: Participant) -> None:
        role = participant.role
        participant.has_revealed = True
        participant.proof_verified = True
        session.log_message(f"{role} revealed move {participant.move}. ZK Proof Verified!")

        if role == ROLE_P1:
            if session.has_committed(ROLE_P2):
                session.advance(TURN_P2_REVEAL)
                session.log_message("P2 to reveal.")
                return
            session.advance(TURN_GAME_OVER)
            session.winner = ROLE_P1
            session.log_message("P2 has not committed or is disconnected. P1 wins by default.")
            await self.channel.broadcast_type(
                "game_result",
                {"winner": ROLE_P1, "p1Move": participant.move, "p2Move": None, "message": "P2 did not commit. P1 wins."},
            )
            return

        session.advance(TURN_GAME_OVER)
        p1 = session.participant(ROLE_P1)
        if p1 is not None and p1.proof_verified and participant.proof_verified:
            winner = determine_winner(p1.move, participant.move)
            session.winner = winner
            message = f"Game Over! P1 played move {p1.move}, P2 played move {participant.move}. Winner: {winner}"
            session.log_message(message)
            logger.info(message)
            await self.channel.broadcast_type(
                "game_result",
                {"winner": winner, "p1Move": p1.move, "p2Move": participant.move, "message": message},
            )
        else:
            session.log_message("Game Over, but one or more proofs failed verification.")
            await self.channel.broadcast_type(
                "error_message", {"message": "Proof verification failed for one or more players."}
            )

    async def _apply_failed_reveal(self, session: Session, participant: Participant, connection_id: str) -> None:
        role = participant.role
        participant.proof_verified = False
        session.log_message(f"ZK proof FAIL for {role}.")
        logger.error("%s ZK proof FAILED", role)
        session.advance(TURN_GAME_OVER)
        rival = other_role(role)
        if session.has_committed(rival):
            session.winner = rival
            session.log_message(f"{rival} wins: {role}'s proof failed verification.")
        await self._send_error(connection_id, "ZK proof verification failed.")

    # === reset ===
    async def request_reset(self, connection_id: str) -> ResetDecision:
        session = self.session
        decision = self.debouncer.evaluate(session)
        if decision is ResetDecision.ACCEPTED:
            self._replace_session()
            logger.info("Game reset by connection %s", connection_id)
            await self._broadcast_reset("Game has been reset. New game starting.")
        elif decision is ResetDecision.ALREADY_RESET:
            await self._broadcast_reset("Game is resetting...")
        else:
            await self.channel.send_type(
                connection_id,
                "info_message",
                {"message": f"Game cannot be reset now (Phase: {session.turn}). Wait for game to end."},
            )
            await self.channel.send_type(
                connection_id,
                "game_state_update",
                {"gameState": self.snapshot(), "message": f"Current game phase: {session.turn}"},
            )
        return decision


ENGINE = SessionEngine(
    bridge=NargoProverBridge.from_settings(),
    channel=WS,
    debouncer=ResetDebouncer(cooldown_seconds=settings.RESET_COOLDOWN_SECONDS),
    strict_commitment_match=settings.STRICT_COMMITMENT_MATCH,
)
