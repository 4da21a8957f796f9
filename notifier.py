# notifier.py
"""Fan-out of state snapshots to connected websocket observers."""

from __future__ import annotations

from typing import Any, Dict, Protocol, Set

import structlog

log = structlog.get_logger(__name__)


class Observer(Protocol):
    async def send_json(self, data: Any) -> None: ...


class Notifier:
    def __init__(self) -> None:
        self._clients: Set[Observer] = set()

    def __len__(self) -> int:
        return len(self._clients)

    async def connect(self, client: Observer, snapshot: Dict[str, Any]) -> None:
        """Register `client` and push the current snapshot right away."""
        self._clients.add(client)
        try:
            await client.send_json(snapshot)
        except Exception as e:
            log.debug("observer_send_failed", error=str(e))
            self._clients.discard(client)

    def disconnect(self, client: Observer) -> None:
        self._clients.discard(client)

    async def broadcast(self, payload: Dict[str, Any]) -> None:
        if not self._clients:
            return
        dead = []
        for client in list(self._clients):
            try:
                await client.send_json(payload)
            except Exception as e:
                log.debug("observer_send_failed", error=str(e))
                dead.append(client)
        for client in dead:
            self._clients.discard(client)
