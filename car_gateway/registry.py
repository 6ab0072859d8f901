"""Registry of open client sessions and status fan-out."""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List

from fastapi import WebSocket
from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ClientSession:
    """One client's WebSocket connection."""
    client_id: str
    websocket: WebSocket
    connected_at: float = field(default_factory=time.time)
    messages_received: int = 0
    invalid_messages: int = 0

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: Dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(data))


class ClientRegistry:
    """
    Tracks open client sessions and broadcasts to them.

    Membership changes and the broadcast snapshot are taken under one lock;
    sends happen outside it so a slow client cannot block registration.
    Each send is bounded by ``send_timeout`` so a stalled client cannot
    hold up the caller either.
    """

    def __init__(self, send_timeout: float = 1.0) -> None:
        self.send_timeout = send_timeout
        self._sessions: Dict[str, ClientSession] = {}
        self._lock = asyncio.Lock()

    async def register(self, session: ClientSession) -> None:
        async with self._lock:
            self._sessions[session.client_id] = session
        logger.info(f"Client registered: {session.client_id} ({len(self._sessions)} open)")

    async def unregister(self, session: ClientSession) -> bool:
        """Remove a session. Returns True if it was registered."""
        async with self._lock:
            removed = self._sessions.pop(session.client_id, None) is not None
        if removed:
            logger.info(f"Client unregistered: {session.client_id} ({len(self._sessions)} open)")
        return removed

    async def broadcast(self, data: Dict[str, Any]) -> int:
        """
        Send ``data`` to every open session.

        Sessions that are not writable are skipped; their own close handler
        removes them. A send that does not finish within ``send_timeout``
        counts as failed for that session only.

        Returns:
            Number of sessions the message was delivered to
        """
        async with self._lock:
            targets: List[ClientSession] = [s for s in self._sessions.values() if s.is_open]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(asyncio.wait_for(session.send_json(data), timeout=self.send_timeout)
              for session in targets),
            return_exceptions=True,
        )
        delivered = 0
        for session, result in zip(targets, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning(f"Broadcast to {session.client_id} timed out")
            elif isinstance(result, Exception):
                logger.debug(f"Broadcast to {session.client_id} failed: {result}")
            else:
                delivered += 1
        return delivered

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session: object) -> bool:
        return isinstance(session, ClientSession) and self._sessions.get(session.client_id) is session
