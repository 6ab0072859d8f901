"""
Vehicle Link - the single TCP connection to the car.

Handles:
- Connect with timeout, keepalive/no-delay socket options
- Heartbeat timer while connected
- Command writes with debounce and de-duplication
- Funneling every socket fault into one disconnect path

All state lives on one actor task. Public coroutines enqueue an event and
wait for the actor to process it; socket, timer and write-completion
callbacks enqueue events tagged with the connection generation they
belong to, so events from a torn-down connection are ignored.
"""

import asyncio
import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple

from .commands import DEFAULT_COMMANDS, HEARTBEAT, CommandSet
from .errors import ConnectTimeout, GatewayError, SendFailure, SocketError
from .message import StatusEvent

logger = logging.getLogger(__name__)

StatusCallback = Callable[[StatusEvent], Awaitable[None]]


class LinkState(str, Enum):
    """Connection state of the car link."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# Actor events

@dataclass
class _Connect:
    pass


@dataclass
class _Disconnect:
    reason: str


@dataclass
class _Send:
    payload: bytes
    source: str
    generation: Optional[int] = None


@dataclass
class _Opened:
    generation: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter


@dataclass
class _Fault:
    """Connect failure, socket close/error or failed write."""
    generation: int
    error: GatewayError

    @property
    def reason(self) -> str:
        return str(self.error)


@dataclass
class _Shutdown:
    pass


class VehicleLink:
    """
    Owner of the one TCP connection to the car.

    State machine:
        DISCONNECTED --connect--> CONNECTING --open--> CONNECTED
        CONNECTING --timeout/error/close--> DISCONNECTED
        CONNECTED --error/close/disconnect/send failure--> DISCONNECTED

    Invariants:
    - At most one socket is held at any time
    - The heartbeat task exists iff the state is CONNECTED
    - ``_last_sent_command`` is the last non-heartbeat payload written on
      the current connection and is cleared on every disconnect
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_status: Optional[StatusCallback] = None,
        heartbeat_interval: float = 1.0,
        connect_timeout: float = 5.0,
        send_debounce: float = 0.05,
        shutdown_timeout: float = 0.5,
        commands: CommandSet = DEFAULT_COMMANDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the link.

        Args:
            host: Car IP address
            port: Car TCP port
            on_status: Coroutine called with every status change
            heartbeat_interval: Seconds between heartbeats while connected
            connect_timeout: Seconds allowed for the TCP connect
            send_debounce: Minimum seconds between command writes
            shutdown_timeout: Bound on the final STOP write at shutdown
            commands: Prebuilt action payloads
            clock: Monotonic clock used for debounce
        """
        self.host = host
        self.port = port
        self.on_status = on_status
        self.heartbeat_interval = heartbeat_interval
        self.connect_timeout = connect_timeout
        self.send_debounce = send_debounce
        self.shutdown_timeout = shutdown_timeout
        self.commands = commands
        self._clock = clock

        # Actor
        self._events: asyncio.Queue[Tuple[Any, Optional[asyncio.Future]]] = asyncio.Queue()
        self._actor_task: Optional[asyncio.Task] = None
        self._running = False

        # Connection state
        self._state = LinkState.DISCONNECTED
        self._generation = 0
        self._last_error: Optional[str] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None

        # Suppression filters
        self._last_sent_command: Optional[bytes] = None
        self._last_command_time: Optional[float] = None

        # Statistics
        self._connect_attempts = 0
        self._commands_sent = 0
        self._heartbeats_sent = 0
        self._debounced = 0
        self._duplicates = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def connected(self) -> bool:
        """Check if the car link is up."""
        return self._state is LinkState.CONNECTED

    @property
    def status(self) -> StatusEvent:
        """Current externally visible status."""
        if self._state is LinkState.CONNECTED:
            return StatusEvent(is_connected=True)
        if self._state is LinkState.CONNECTING:
            return StatusEvent(is_connected=False, message="Connecting...")
        return StatusEvent(is_connected=False, error=self._last_error)

    async def start(self) -> None:
        """Start the actor task."""
        if self._running:
            return
        self._running = True
        self._actor_task = asyncio.create_task(self._run())
        logger.info(f"Vehicle link ready (car at {self.host}:{self.port})")

    async def connect(self) -> None:
        """
        Begin connecting to the car.

        Returns once the link has entered CONNECTING (or re-emitted its
        current status when already connecting/connected); the TCP
        connect itself completes in the background.
        """
        await self._submit(_Connect())

    async def disconnect(self, reason: str = "Unknown") -> None:
        """Tear down the connection. Safe to call in any state."""
        await self._submit(_Disconnect(reason))

    async def send_command(self, payload: bytes, source: str = "Unknown") -> bool:
        """
        Write a command to the car.

        Args:
            payload: Encoded command (see ``commands``)
            source: Short description for logging

        Returns:
            True if the payload was written, False if it was suppressed or
            the car is not connected
        """
        result = await self._submit(_Send(payload, source))
        return bool(result)

    async def shutdown(self) -> None:
        """
        Send a final STOP (bounded wait) and close the connection.

        Never waits much longer than ``shutdown_timeout``; the actor is
        cancelled if it does not finish in time.
        """
        if not self._running or self._actor_task is None:
            return
        task = self._actor_task
        try:
            await asyncio.wait_for(self._submit(_Shutdown()), timeout=self.shutdown_timeout + 0.5)
        except asyncio.TimeoutError:
            logger.warning("Vehicle link did not shut down in time, forcing close")
            task.cancel()
            self._force_close()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._running = False

    def get_stats(self) -> dict:
        """Get link statistics."""
        return {
            "state": self._state.value,
            "host": self.host,
            "port": self.port,
            "last_error": self._last_error,
            "connect_attempts": self._connect_attempts,
            "commands_sent": self._commands_sent,
            "heartbeats_sent": self._heartbeats_sent,
            "debounced": self._debounced,
            "duplicates": self._duplicates,
        }

    # ------------------------------------------------------------------
    # Actor
    # ------------------------------------------------------------------

    async def _submit(self, event: Any) -> Any:
        if not self._running:
            logger.warning(f"Vehicle link is not running, ignoring {type(event).__name__}")
            return None
        reply = asyncio.get_running_loop().create_future()
        self._events.put_nowait((event, reply))
        return await reply

    def _post(self, event: Any) -> None:
        """Enqueue an event from a background task."""
        if self._running:
            self._events.put_nowait((event, None))

    async def _run(self) -> None:
        try:
            while True:
                event, reply = await self._events.get()
                try:
                    result = await self._handle(event)
                except Exception as e:
                    logger.exception(f"Vehicle link failed handling {type(event).__name__}")
                    if reply is not None and not reply.done():
                        reply.set_exception(e)
                else:
                    if reply is not None and not reply.done():
                        reply.set_result(result)
                if isinstance(event, _Shutdown):
                    break
        finally:
            self._running = False
            # Release anyone still waiting on a queued event
            while not self._events.empty():
                _, reply = self._events.get_nowait()
                if reply is not None and not reply.done():
                    reply.set_result(None)

    async def _handle(self, event: Any) -> Any:
        if isinstance(event, _Send):
            return await self._send(event)
        if isinstance(event, _Connect):
            return await self._connect()
        if isinstance(event, _Disconnect):
            return await self._disconnect(event.reason)
        if isinstance(event, _Opened):
            return await self._on_opened(event)
        if isinstance(event, _Fault):
            if event.generation != self._generation:
                logger.debug(f"Ignoring stale fault: {event.reason}")
                return None
            return await self._disconnect(event.reason)
        if isinstance(event, _Shutdown):
            return await self._shutdown()
        raise TypeError(f"Unknown link event: {event!r}")

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        if self._state is not LinkState.DISCONNECTED:
            logger.info("Connection attempt skipped: already connected or in progress.")
            await self._emit(self.status)
            return

        self._connect_attempts += 1
        self._generation += 1
        self._state = LinkState.CONNECTING
        logger.info(f"Attempting to connect to car at {self.host}:{self.port}...")
        await self._emit(self.status)
        self._connect_task = asyncio.create_task(self._open(self._generation))

    async def _open(self, generation: int) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Car connection timeout.")
            self._post(_Fault(generation, ConnectTimeout("Connection Timeout")))
        except OSError as e:
            logger.error(f"Car socket error: {e}")
            self._post(_Fault(generation, SocketError(f"Socket Error: {e.strerror or e}")))
        else:
            self._post(_Opened(generation, reader, writer))

    async def _on_opened(self, event: _Opened) -> None:
        if event.generation != self._generation or self._state is not LinkState.CONNECTING:
            # Connect finished after the attempt was abandoned
            event.writer.transport.abort()
            return

        self._connect_task = None
        self._reader = event.reader
        self._writer = event.writer
        self._state = LinkState.CONNECTED
        self._last_error = None
        logger.info("Successfully connected to the car.")

        self._configure_socket(event.writer)
        self._reader_task = asyncio.create_task(self._read_loop(self._generation, event.reader))
        self._start_heartbeat()

        # Safety default: the car starts from a known stopped state
        await self._send(_Send(self.commands.stop, "Initial Connection"))
        if self._state is LinkState.CONNECTED:
            await self._emit(self.status)

    def _configure_socket(self, writer: asyncio.StreamWriter) -> None:
        sock = writer.get_extra_info("socket")
        if sock is None:
            logger.warning("Could not access car socket to set options")
            return
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
            if hasattr(socket, "TCP_KEEPIDLE"):
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 1)
            logger.info("TCP KeepAlive enabled.")
        except OSError as e:
            logger.warning(f"Could not set TCP KeepAlive: {e}")
        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            logger.info("TCP NoDelay enabled.")
        except OSError as e:
            logger.warning(f"Could not set TCP NoDelay: {e}")

    async def _read_loop(self, generation: int, reader: asyncio.StreamReader) -> None:
        """Log whatever the car sends; report EOF or errors as a fault."""
        try:
            while True:
                data = await reader.read(1024)
                if not data:
                    logger.info("Car connection closed by remote.")
                    self._post(_Fault(generation, SocketError("Connection Closed by Car")))
                    return
                text = data.decode("utf-8", errors="replace").strip()
                logger.info(f"Data from car: {text}")
        except OSError as e:
            logger.error(f"Car socket error: {e}")
            self._post(_Fault(generation, SocketError(f"Socket Error: {e}")))

    async def _disconnect(self, reason: str) -> None:
        logger.info(f"Disconnecting from car. Reason: {reason}")
        self._release()
        self._last_error = reason
        await self._emit(self.status)

    def _release(self) -> None:
        """Drop the socket and every task tied to it."""
        self._stop_heartbeat()
        # Anything still in flight for the old connection becomes stale
        self._generation += 1

        for task in (self._connect_task, self._reader_task, self._drain_task):
            if task is not None and not task.done():
                task.cancel()
        self._connect_task = None
        self._reader_task = None
        self._drain_task = None

        if self._writer is not None:
            self._writer.transport.abort()
        self._writer = None
        self._reader = None

        self._last_sent_command = None
        self._last_command_time = None
        self._state = LinkState.DISCONNECTED

    def _force_close(self) -> None:
        self._release()
        self._running = False

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send(self, event: _Send) -> bool:
        if event.generation is not None and event.generation != self._generation:
            return False
        if self._state is not LinkState.CONNECTED or self._writer is None:
            logger.warning(f"Cannot send command ({event.source}): Not connected to car.")
            return False

        payload = event.payload
        is_heartbeat = payload == HEARTBEAT
        now = self._clock()

        if not is_heartbeat:
            if (
                self._last_command_time is not None
                and now - self._last_command_time < self.send_debounce
            ):
                self._debounced += 1
                logger.debug(f"Command debounce ({event.source}): skipping.")
                return False
            if payload == self._last_sent_command:
                self._duplicates += 1
                logger.debug(f"Command unchanged ({event.source}): skipping.")
                return False

        if is_heartbeat:
            logger.debug("Sending heartbeat")
        else:
            text = payload.decode("utf-8", errors="replace").strip()
            logger.info(f"Sending to car ({event.source}): {text}")

        # write() only raises for a half-closed writer; a reset by the car
        # reaches the reader and is reported as a socket error
        try:
            self._writer.write(payload)
        except (OSError, RuntimeError) as e:
            logger.error(f"Error sending command to car: {e}")
            await self._disconnect(f"Send Error: {e}")
            return False

        self._last_command_time = now
        if is_heartbeat:
            self._heartbeats_sent += 1
        else:
            self._last_sent_command = payload
            self._commands_sent += 1
        self._watch_drain()
        return True

    def _watch_drain(self) -> None:
        """Surface write failures as a fault without blocking the actor."""
        writer = self._writer
        if writer is None or writer.transport.get_write_buffer_size() == 0:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self._drain(self._generation, writer))

    async def _drain(self, generation: int, writer: asyncio.StreamWriter) -> None:
        try:
            await writer.drain()
        except OSError as e:
            logger.error(f"Error sending command to car: {e}")
            self._post(_Fault(generation, SendFailure(f"Send Error: {e}")))

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        logger.info(f"Starting heartbeat ({self.heartbeat_interval * 1000:.0f}ms).")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(self._generation))

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
            logger.info("Heartbeat stopped.")

    async def _heartbeat_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self._post(_Send(HEARTBEAT, "Heartbeat", generation))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def _shutdown(self) -> None:
        self._stop_heartbeat()
        writer = self._writer
        if self._state is LinkState.CONNECTED and writer is not None:
            logger.info("Sending final STOP command before exit.")
            if self._drain_task is not None:
                self._drain_task.cancel()
                self._drain_task = None
            try:
                writer.write(self.commands.stop)
                await asyncio.wait_for(writer.drain(), timeout=self.shutdown_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Final STOP not flushed within {self.shutdown_timeout * 1000:.0f}ms, closing anyway"
                )
            except (OSError, RuntimeError) as e:
                logger.error(f"Error sending final stop: {e}")

        was_up = self._state is not LinkState.DISCONNECTED
        self._release()
        if was_up:
            self._last_error = "Server shutting down"
            await self._emit(self.status)
        logger.info("Vehicle link stopped")

    # ------------------------------------------------------------------

    async def _emit(self, status: StatusEvent) -> None:
        state = "Connected" if status.is_connected else "Disconnected"
        detail = f" ({status.error})" if status.error else ""
        logger.info(f"Broadcasting connection status: {state}{detail}")
        if self.on_status is None:
            return
        try:
            await self.on_status(status)
        except Exception:
            logger.exception("Status listener failed")
