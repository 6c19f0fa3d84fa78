# examwatch/backend/broadcast.py
from __future__ import annotations

import json
import logging
from typing import Any, Protocol, Set

from pydantic import BaseModel

from backend import schemas

logger = logging.getLogger(__name__)

EVENT = "event"
STUDENT_UPDATE = "student_update"
STATS_UPDATE = "stats_update"


class Connection(Protocol):
    async def send_text(self, data: str) -> None: ...


def _jsonable(payload: Any) -> Any:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True)
    return payload


class BroadcastChannel:
    """
    Conjunto de conexiones en vivo (websockets). Cada mensaje se serializa
    una vez y se envía a todas; las que fallan se descartan. Sin ack ni
    reenvío: quien se conecta tarde debe pedir el estado por la API.
    """

    def __init__(self) -> None:
        self.connections: Set[Connection] = set()

    def __len__(self) -> int:
        return len(self.connections)

    def connect(self, ws: Connection) -> None:
        self.connections.add(ws)
        logger.info("🔌 Cliente conectado (%d activos)", len(self.connections))

    def disconnect(self, ws: Connection) -> None:
        if ws in self.connections:
            self.connections.discard(ws)
            logger.info("👋 Cliente desconectado (%d activos)", len(self.connections))

    async def broadcast(self, kind: str, payload: Any) -> int:
        """
        Envía a todos los websockets conectados, limpiando los muertos.
        Devuelve cuántos recibieron el mensaje.
        """
        message = json.dumps({"type": kind, "data": _jsonable(payload)})
        dead = []
        delivered = 0
        for ws in list(self.connections):
            try:
                await ws.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning("⚠️ Conexión descartada al enviar '%s': %s", kind, e)
                dead.append(ws)
        for ws in dead:
            self.connections.discard(ws)
        return delivered

    async def send_event(self, event: schemas.EventResponse) -> int:
        return await self.broadcast(EVENT, event)

    async def send_student_update(self, student: schemas.StudentResponse) -> int:
        return await self.broadcast(STUDENT_UPDATE, student)

    async def send_stats(self, stats: schemas.DashboardStats) -> int:
        return await self.broadcast(STATS_UPDATE, stats)
