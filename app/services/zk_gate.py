"""
Porte ZK : au plus une opération prouveur en vol pour toute la partie.

Le drapeau n'est manipulé que depuis la boucle asyncio (pas d'await entre le test et la
prise), le verrou ne sert qu'à protéger les lectures depuis d'autres threads (/health).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Optional


@dataclass
class ZkOperationGate:
    _lock: Lock = field(default_factory=Lock, init=False, repr=False)
    _owner: Optional[str] = field(default=None, init=False)

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._owner is not None

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def try_acquire(self, owner: str = "zk") -> bool:
        with self._lock:
            if self._owner is not None:
                return False
            self._owner = owner
            return True

    def release(self) -> None:
        with self._lock:
            self._owner = None
