# =============================================================================
# Dental Stream Client - WebSocket Connection Manager
# =============================================================================
# Owns the single WebSocket to the inference server: opening it, reading
# inbound frames in a background task, sending outbound messages and
# closing it.  Transport failures never escape as exceptions; they move the
# session to DISCONNECTED and leave a status line for the user.
#
# Reconnection is not automatic.  The controller decides when to retry.
# =============================================================================

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from stream import codec
from stream.codec import OutboundMessage
from stream.session import CancellationToken, ConnectionState, SessionState

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
MessageHandler = Callable[[Union[str, bytes]], None]

_TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class ConnectionManager:
    """
    Lifecycle of the WebSocket session with the inference server.

    Args:
        url:             WebSocket endpoint (e.g., "ws://127.0.0.1:8000/ws/predict").
        session:         Session state; the connection state lives there.
        token:           Session liveness token.
        on_message:      Called with every raw inbound frame.
        connector:       Coroutine factory opening a connection; defaults to
                         ``websockets.connect``.
        connect_timeout: Seconds allowed for the opening handshake.
    """

    def __init__(
        self,
        url: str,
        session: SessionState,
        token: CancellationToken,
        on_message: Optional[MessageHandler] = None,
        connector: Connector = websockets.connect,
        connect_timeout: float = 10.0,
    ):
        self._url = url
        self._session = session
        self._token = token
        self._on_message = on_message
        self._connector = connector
        self._connect_timeout = connect_timeout

        self._websocket = None
        self._receive_task: Optional[asyncio.Task] = None
        self._disconnect_callbacks: List[Callable[[], None]] = []

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._session.connection_state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def add_disconnect_callback(self, callback: Callable[[], None]) -> None:
        """Register a callback run when the server or network drops the connection."""
        self._disconnect_callbacks.append(callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.info("Connection %s", state.value)
        self._session.set_connection_state(state)

    # -----------------------------------------------------------------
    # Open / close
    # -----------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the WebSocket.

        Transport errors are reported through the session (state and
        status line), never raised.

        Returns:
            True if the connection is up when this returns.
        """
        if self._token.cancelled:
            return False
        if self.state is ConnectionState.CONNECTED:
            return True
        if self.state is not ConnectionState.DISCONNECTED:
            logger.debug("connect() ignored while %s", self.state.value)
            return False

        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to %s", self._url)

        try:
            websocket = await asyncio.wait_for(
                self._connector(self._url), timeout=self._connect_timeout
            )
        except _TRANSPORT_ERRORS as exc:
            logger.warning("Connection to %s failed: %s", self._url, str(exc) or type(exc).__name__)
            if not self._token.cancelled and self.state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.DISCONNECTED)
                self._session.set_status("Connection failed")
            return False

        # Torn down or disconnected while the handshake was in progress
        if self._token.cancelled or self.state is not ConnectionState.CONNECTING:
            await self._close_quietly(websocket)
            return False

        self._websocket = websocket
        self._set_state(ConnectionState.CONNECTED)
        self._session.set_status("Connected to AI server")
        self._receive_task = asyncio.create_task(self._receive_loop(websocket))
        return True

    async def disconnect(self) -> None:
        """
        Close the WebSocket. A no-op if there is nothing to close.
        """
        websocket = self._websocket
        if websocket is None and self.state is ConnectionState.DISCONNECTED:
            return

        self._set_state(ConnectionState.CLOSING)
        self._websocket = None

        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if websocket is not None:
            await self._close_quietly(websocket)

        self._set_state(ConnectionState.DISCONNECTED)

    async def _close_quietly(self, websocket) -> None:
        try:
            await websocket.close()
        except _TRANSPORT_ERRORS as exc:
            logger.debug("Error while closing WebSocket: %s", exc)

    # -----------------------------------------------------------------
    # Traffic
    # -----------------------------------------------------------------

    async def send(self, message: OutboundMessage) -> bool:
        """
        Send one outbound message.

        Frames are best-effort: while not connected the message is dropped
        without error.

        Args:
            message: One of the outbound schema models.

        Returns:
            True if the message was handed to the socket.

        Raises:
            TypeError: If ``message`` is not an outbound message kind.
        """
        text = codec.encode(message)
        websocket = self._websocket
        if not self.is_connected or websocket is None:
            logger.debug("Dropping outbound %s: not connected", type(message).__name__)
            return False

        try:
            await websocket.send(text)
        except _TRANSPORT_ERRORS as exc:
            # The receive loop notices the closure and handles it
            logger.debug("Send of %s failed: %s", type(message).__name__, exc)
            return False
        return True

    async def _receive_loop(self, websocket) -> None:
        """Read inbound frames until the connection ends."""
        try:
            async for raw in websocket:
                if self._token.cancelled:
                    return
                if self._on_message is None:
                    continue
                try:
                    self._on_message(raw)
                except Exception:
                    logger.exception("Failed to handle inbound message")
        except ConnectionClosed as exc:
            logger.info("WebSocket closed: %s", exc)
        except _TRANSPORT_ERRORS as exc:
            logger.warning("WebSocket receive failed: %s", exc)

        self._handle_closed(websocket)

    def _handle_closed(self, websocket) -> None:
        if websocket is not self._websocket:
            return
        self._websocket = None
        self._receive_task = None
        if self._token.cancelled or self.state is not ConnectionState.CONNECTED:
            return

        logger.warning("Connection to %s lost", self._url)
        self._set_state(ConnectionState.DISCONNECTED)
        self._session.set_status("Disconnected - tap to retry")
        for callback in list(self._disconnect_callbacks):
            callback()
