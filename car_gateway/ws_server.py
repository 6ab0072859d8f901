"""
WebSocket Server for the control UI.

Handles:
- FastAPI WebSocket endpoint at / (and /ws)
- Client session registration for status broadcasts
- Intent parsing and forwarding to the gateway
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .errors import MalformedClientMessage
from .message import ClientIntent
from .registry import ClientRegistry, ClientSession

logger = logging.getLogger(__name__)

SessionCallback = Callable[[ClientSession], Awaitable[None]]
IntentCallback = Callable[[ClientSession, ClientIntent], Awaitable[None]]
InvalidCallback = Callable[[ClientSession, str], Awaitable[None]]


class WebSocketServer:
    """
    WebSocket server for control clients.

    Every accepted connection becomes a ClientSession in the registry
    until it closes or errors. Inbound frames are parsed into intents;
    malformed frames never end the session.
    """

    def __init__(
        self,
        registry: ClientRegistry,
        on_intent: Optional[IntentCallback] = None,
        on_invalid_message: Optional[InvalidCallback] = None,
        on_client_connected: Optional[SessionCallback] = None,
        on_client_disconnected: Optional[SessionCallback] = None,
        health: Optional[Callable[[], dict]] = None,
        lifespan: Any = None,
    ):
        """
        Initialize WebSocket server.

        Args:
            registry: Registry of open client sessions
            on_intent: Callback for every parsed client intent
            on_invalid_message: Callback for frames that failed to parse
            on_client_connected: Callback after a session is registered
            on_client_disconnected: Callback after a session is removed
            health: Provider for the /health payload
            lifespan: FastAPI lifespan context for startup/shutdown
        """
        self.registry = registry
        self.on_intent = on_intent
        self.on_invalid_message = on_invalid_message
        self.on_client_connected = on_client_connected
        self.on_client_disconnected = on_client_disconnected
        self.health = health

        self._client_counter = 0

        # Statistics
        self._total_messages = 0
        self._invalid_messages = 0

        self.app = FastAPI(title="Car Control Gateway", lifespan=lifespan)

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_routes()

    def _setup_routes(self):
        """Set up FastAPI routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            payload = {"status": "ok", "clients": len(self.registry)}
            if self.health:
                payload.update(self.health())
            return payload

        @self.app.websocket("/")
        async def websocket_root(websocket: WebSocket):
            await self._handle_websocket(websocket)

        @self.app.websocket("/ws")
        async def websocket_control(websocket: WebSocket):
            await self._handle_websocket(websocket)

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Handle incoming WebSocket connection."""
        await websocket.accept()

        self._client_counter += 1
        session = ClientSession(client_id=f"client_{self._client_counter}", websocket=websocket)
        await self.registry.register(session)

        logger.info(f"Client connected: {session.client_id} from {websocket.client}")

        try:
            if self.on_client_connected:
                await self.on_client_connected(session)
            await self._receive_messages(session)
        except WebSocketDisconnect:
            logger.info(f"Client disconnected: {session.client_id}")
        except Exception as e:
            logger.error(f"Error handling client {session.client_id}: {e}")
        finally:
            await self.registry.unregister(session)
            if self.on_client_disconnected:
                await self.on_client_disconnected(session)

    async def _receive_messages(self, session: ClientSession) -> None:
        """Receive and process messages from a client."""
        while True:
            message = await session.websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            self._total_messages += 1
            session.messages_received += 1

            try:
                intent = ClientIntent.from_json(self._frame_text(message))
            except MalformedClientMessage as e:
                self._invalid_messages += 1
                session.invalid_messages += 1
                logger.warning(f"Invalid message from {session.client_id}: {e}")
                if self.on_invalid_message:
                    await self.on_invalid_message(session, str(e))
                continue

            logger.debug(f"Received from {session.client_id}: {intent}")

            if self.on_intent:
                try:
                    await self.on_intent(session, intent)
                except Exception as e:
                    logger.error(f"Error in intent callback: {e}")

    @staticmethod
    def _frame_text(message: dict) -> str:
        """Text of a text or binary frame; binary frames must be UTF-8."""
        if message.get("text") is not None:
            return message["text"]
        data = message.get("bytes")
        if data is None:
            raise MalformedClientMessage("Empty frame")
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedClientMessage("Binary frame is not valid UTF-8") from e

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "connected_clients": len(self.registry),
            "total_messages": self._total_messages,
            "invalid_messages": self._invalid_messages,
        }
