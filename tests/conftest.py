from __future__ import annotations

import hashlib
import threading
from typing import Any, List, Optional, Tuple

import pytest

from app.services.field_codec import reduce_field_literal
from app.services.prover_bridge import ProverBridge
from app.services.reset_debouncer import ResetDebouncer
from app.services.session_engine import SessionEngine


class FakeProverBridge(ProverBridge):
    """Engagement = sha256(move:salt) réduit dans le corps ; aucune I/O."""

    def __init__(self) -> None:
        self.derive_calls: List[Tuple[int, str]] = []
        self.verify_calls: List[Tuple[int, str, str]] = []
        self.derive_error: Optional[Exception] = None
        self.verify_error: Optional[Exception] = None
        self.verify_result: Optional[bool] = None
        self.release = threading.Event()
        self.release.set()

    @staticmethod
    def commitment_for(move: int, salt: str) -> str:
        digest = hashlib.sha256(f"{move}:{salt.lower()}".encode()).hexdigest()
        return reduce_field_literal(int(digest, 16))

    def derive_commitment(self, move: int, salt: str) -> str:
        self.release.wait(timeout=5)
        self.derive_calls.append((move, salt))
        if self.derive_error:
            raise self.derive_error
        return self.commitment_for(move, salt)

    def verify_reveal(self, move: int, salt: str, commitment: str) -> bool:
        self.release.wait(timeout=5)
        self.verify_calls.append((move, salt, commitment))
        if self.verify_error:
            raise self.verify_error
        if self.verify_result is not None:
            return self.verify_result
        return self.commitment_for(move, salt) == commitment


class RecordingChannel:
    """Remplace WSManager : garde (cible, type, payload), cible None = broadcast."""

    def __init__(self) -> None:
        self.sent: List[Tuple[Optional[str], str, Any]] = []

    async def send_type(self, connection_id: str, event_type: str, payload: Any) -> bool:
        self.sent.append((connection_id, event_type, payload))
        return True

    async def broadcast_type(self, event_type: str, payload: Any) -> int:
        self.sent.append((None, event_type, payload))
        return 1

    def of_type(self, event_type: str, target: Any = "any") -> list:
        return [
            payload
            for tgt, etype, payload in self.sent
            if etype == event_type and (target == "any" or tgt == target)
        ]

    def types(self) -> List[str]:
        return [etype for _tgt, etype, _payload in self.sent]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def bridge() -> FakeProverBridge:
    return FakeProverBridge()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def engine(bridge, channel) -> SessionEngine:
    return SessionEngine(
        bridge=bridge,
        channel=channel,
        debouncer=ResetDebouncer(cooldown_seconds=0.05),
    )
