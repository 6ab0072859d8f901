#!/usr/bin/env python3
"""
Car Gateway - Main Entry Point

This server accepts control clients over WebSocket and:
- Relays their drive commands to the car over one shared TCP connection
- Keeps the car connection alive with heartbeats
- Broadcasts car connection status to every client
- Sends a final STOP to the car on shutdown

Configuration comes from environment variables (see ``config.py``) and
the command line flags below.

Usage:
    export CAR_HOST=192.168.4.1
    python -m car_gateway.main --port 3000
"""

import argparse
import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn

from .commands import CommandSet
from .config import GatewayConfig
from .message import (
    INTENT_COMMAND,
    INTENT_CONNECT,
    INTENT_DISCONNECT,
    ClientIntent,
    StatusEvent,
    error_message,
)
from .errors import UnknownAction
from .registry import ClientRegistry, ClientSession
from .vehicle_link import VehicleLink
from .ws_server import WebSocketServer

logger = logging.getLogger(__name__)


class ServerGateway:
    """
    Main server gateway integrating WebSocket clients and the car link.

    Architecture:
        Client -> WebSocket -> ServerGateway -> VehicleLink -> TCP (car)
        VehicleLink status -> ServerGateway -> ClientRegistry -> all clients
    """

    def __init__(self, config: GatewayConfig):
        """
        Initialize server gateway.

        Args:
            config: Gateway configuration
        """
        self.config = config
        self.host = config.server_host
        self.port = config.server_port

        self.commands = CommandSet.build(config.default_speed, config.turning_speed)
        self.registry = ClientRegistry(send_timeout=config.client_send_timeout_ms / 1000.0)

        self.link = VehicleLink(
            host=config.car_host,
            port=config.car_port,
            on_status=self._on_status,
            heartbeat_interval=config.heartbeat_interval_ms / 1000.0,
            connect_timeout=config.connect_timeout_ms / 1000.0,
            send_debounce=config.send_debounce_ms / 1000.0,
            shutdown_timeout=config.shutdown_stop_timeout_ms / 1000.0,
            commands=self.commands,
        )

        self.ws_server = WebSocketServer(
            registry=self.registry,
            on_intent=self._on_intent,
            on_invalid_message=self._on_invalid_message,
            on_client_connected=self._on_client_connected,
            on_client_disconnected=self._on_client_disconnected,
            health=self.get_stats,
            lifespan=self._lifespan,
        )

        self._running = False

    async def start(self) -> None:
        """Start all server components."""
        if self._running:
            return
        logger.info("Starting Car Gateway...")
        await self.link.start()
        self._running = True
        logger.info(f"Car Gateway started on {self.host}:{self.port}")
        logger.info(f"Target car: {self.config.car_host}:{self.config.car_port}")

    async def stop(self) -> None:
        """Stop all server components, sending a final STOP to the car."""
        if not self._running:
            return
        logger.info("Stopping Car Gateway...")
        self._running = False
        await self.link.shutdown()
        logger.info("Car Gateway stopped")

    @asynccontextmanager
    async def _lifespan(self, app):
        await self.start()
        try:
            yield
        finally:
            await self.stop()

    async def _on_status(self, status: StatusEvent) -> None:
        """Fan a car status change out to every client."""
        await self.registry.broadcast(status.to_dict())

    async def _on_client_connected(self, session: ClientSession) -> None:
        """Tell a newly connected client the current car status."""
        await session.send_json(self.link.status.to_dict())

    async def _on_client_disconnected(self, session: ClientSession) -> None:
        if not self.config.stop_on_last_client:
            return
        if len(self.registry) == 0 and self.link.connected:
            logger.info("Last client disconnected. Stopping car.")
            await self.link.send_command(self.commands.stop, "Last Client Disconnect")

    async def _on_intent(self, session: ClientSession, intent: ClientIntent) -> None:
        """Handle a parsed intent from a client."""
        if intent.kind == INTENT_CONNECT:
            if not self.link.connected:
                await self.link.connect()
            else:
                logger.info("Already connected to car.")
                await self.registry.broadcast(self.link.status.to_dict())

        elif intent.kind == INTENT_DISCONNECT:
            await self.link.disconnect("Client request")

        elif intent.kind == INTENT_COMMAND:
            try:
                payload = self._payload_for(intent.action)
            except UnknownAction as e:
                logger.warning(f"Unknown action received from {session.client_id}: {intent.action}")
                await self._reply_error(session, str(e))
                return
            await self.link.send_command(payload, f"Client Action: {intent.action}")

    async def _on_invalid_message(self, session: ClientSession, reason: str) -> None:
        await self._reply_error(session, reason)

    def _payload_for(self, action: Optional[str]) -> bytes:
        payload = self.commands.for_action(action) if action else None
        if payload is None:
            raise UnknownAction(action)
        return payload

    async def _reply_error(self, session: ClientSession, text: str) -> None:
        """Send an error frame, then the real status so the client's view stays correct."""
        try:
            await session.send_json(error_message(text))
            await session.send_json(self.link.status.to_dict())
        except Exception as e:
            logger.debug(f"Could not reply to {session.client_id}: {e}")

    def get_app(self):
        """Get the FastAPI application for uvicorn."""
        return self.ws_server.app

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "car": self.link.get_stats(),
            "ws_server": self.ws_server.get_stats(),
        }


async def run_server(gateway: ServerGateway) -> None:
    """Run the server with uvicorn."""
    config = uvicorn.Config(
        gateway.get_app(),
        host=gateway.host,
        port=gateway.port,
        log_level=gateway.config.log_level.lower(),
        access_log=True,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def main_async(config: GatewayConfig) -> None:
    """Async main entry point."""
    gateway = ServerGateway(config)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            pass

    try:
        server_task = asyncio.create_task(run_server(gateway))
        shutdown_task = asyncio.create_task(shutdown_event.wait())

        done, pending = await asyncio.wait(
            [server_task, shutdown_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if server_task in done and server_task.exception() is not None:
            raise server_task.exception()

    finally:
        # Lifespan shutdown normally ran already; this covers a cancelled server
        await gateway.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Car Control Gateway",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--host", type=str, default=None, help="Bind address (SERVER_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (SERVER_PORT)")
    parser.add_argument("--car-host", type=str, default=None, help="Car IP address (CAR_HOST)")
    parser.add_argument("--car-port", type=int, default=None, help="Car TCP port (CAR_PORT)")
    parser.add_argument(
        "--heartbeat-ms", type=int, default=None,
        help="Heartbeat interval in ms (HEARTBEAT_INTERVAL_MS)",
    )
    parser.add_argument(
        "--connect-timeout-ms", type=int, default=None,
        help="Car connect timeout in ms (CONNECT_TIMEOUT_MS)",
    )
    parser.add_argument(
        "--debounce-ms", type=int, default=None,
        help="Minimum gap between commands in ms (SEND_DEBOUNCE_MS)",
    )
    parser.add_argument("--default-speed", type=int, default=None, help="Forward speed (DEFAULT_SPEED)")
    parser.add_argument("--turning-speed", type=int, default=None, help="Turning speed (TURNING_SPEED)")
    parser.add_argument(
        "--stop-on-last-client", action="store_true", default=None,
        help="Send STOP when the last client disconnects (STOP_ON_LAST_CLIENT)",
    )
    parser.add_argument("--log-level", type=str, default=None, help="Logging level (LOG_LEVEL)")
    return parser


def load_config(argv=None) -> GatewayConfig:
    """Environment configuration with command line overrides applied."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return GatewayConfig.from_env().with_overrides({
            "server_host": args.host,
            "server_port": args.port,
            "car_host": args.car_host,
            "car_port": args.car_port,
            "heartbeat_interval_ms": args.heartbeat_ms,
            "connect_timeout_ms": args.connect_timeout_ms,
            "send_debounce_ms": args.debounce_ms,
            "default_speed": args.default_speed,
            "turning_speed": args.turning_speed,
            "stop_on_last_client": args.stop_on_last_client,
            "log_level": args.log_level.upper() if args.log_level else None,
        })
    except ValueError as e:
        parser.error(str(e))


def main() -> None:
    """Main entry point."""
    config = load_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
