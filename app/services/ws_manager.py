# app/services/ws_manager.py
"""
Service: ws_manager.py
- Registre connection_id -> WebSocket (un identifiant opaque par socket accepté).
- Snapshots immuables pour éviter "dictionary changed size during iteration".
- Envois typés {"type": ..., "payload": ...} sérialisés avec orjson.
- Un envoi qui échoue retire la socket morte du registre (sans lever).
- Admin: stats(), close_all().
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Dict, Optional
from uuid import uuid4

import orjson
from starlette.websockets import WebSocket

logger = logging.getLogger(__name__)


def encode_event(event_type: str, payload: Any) -> str:
    return orjson.dumps({"type": event_type, "payload": payload}).decode("utf-8")


@dataclass
class WSManager:
    _lock: RLock = field(default_factory=RLock, init=False, repr=False)
    # connection_id -> WebSocket
    connections: Dict[str, WebSocket] = field(default_factory=dict)

    async def connect(self, ws: WebSocket) -> str:
        """Accepte la connexion WS et lui attribue un connection_id."""
        await ws.accept()
        connection_id = uuid4().hex
        with self._lock:
            self.connections[connection_id] = ws
        return connection_id

    def forget(self, connection_id: str) -> Optional[WebSocket]:
        with self._lock:
            return self.connections.pop(connection_id, None)

    async def disconnect(self, connection_id: str) -> None:
        """Ferme proprement la connexion et nettoie le registre."""
        ws = self.forget(connection_id)
        if ws is None:
            return
        try:
            await ws.close()
        except Exception:
            # déjà fermée côté client
            pass

    async def _send_text_one(self, connection_id: str, ws: WebSocket, data: str) -> bool:
        """Envoie à un WS; renvoie True si succès, sinon False (et retire le WS mort)."""
        try:
            await ws.send_text(data)
            return True
        except Exception:
            logger.debug("Dropping dead socket %s", connection_id, exc_info=True)
            self.forget(connection_id)
            return False

    # ---------- snapshots immuables ----------
    def _snapshot(self) -> list[tuple[str, WebSocket]]:
        with self._lock:
            return list(self.connections.items())

    # ---------- envois typés ----------
    async def send_type(self, connection_id: str, event_type: str, payload: Any) -> bool:
        with self._lock:
            ws = self.connections.get(connection_id)
        if ws is None:
            return False
        return await self._send_text_one(connection_id, ws, encode_event(event_type, payload))

    async def broadcast_type(self, event_type: str, payload: Any) -> int:
        data = encode_event(event_type, payload)
        success = 0
        for connection_id, ws in self._snapshot():
            if await self._send_text_one(connection_id, ws, data):
                success += 1
        return success

    # ---------- admin ----------
    def stats(self) -> dict:
        with self._lock:
            return {"connections_total": len(self.connections)}

    async def close_all(self) -> dict:
        """Ferme TOUTES les sockets."""
        for connection_id, _ws in self._snapshot():
            await self.disconnect(connection_id)
        return self.stats()


WS = WSManager()
