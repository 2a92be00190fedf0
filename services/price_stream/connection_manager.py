"""
Connection Manager

Owns the price stream transport:
- Lifecycle state machine (DISCONNECTED -> CONNECTING -> AUTHENTICATING -> AUTHENTICATED)
- Duplicate-connection guard
- Single dispatch entry point for inbound messages
- Reconnection after a fixed (or exponential, capped) delay
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.enums.connection import ConnectionState, ErrorKind
from shared.models.stream import (
    ConnectionStatus,
    ErrorMessage,
    MalformedMessageError,
    PriceUpdateMessage,
    decode_message,
)
from shared.utils.logger import get_logger

from .authenticator import Authenticator
from .price_cache import PriceCache
from .subscription_registry import SubscriptionRegistry

logger = get_logger(__name__, component="connection")

ConnectFactory = Callable[[str], Awaitable[Any]]
StatusListener = Callable[[ConnectionStatus], None]

NORMAL_CLOSURE = 1000
INTERNAL_ERROR_CLOSURE = 1011
AUTH_FAILED_CLOSURE = 4001


class ConnectionManager:
    """
    One transport per instance, driven by a background connection task

    connect() flips the state to CONNECTING before yielding to the loop, so a
    second call arriving in quick succession is skipped, never queued.
    Every exit path of the connection task runs the same cleanup: state back
    to DISCONNECTED, handshake aborted, session cleared, registry detached,
    and a reconnect scheduled unless the owner asked for the shutdown.
    """

    def __init__(
        self,
        url: str,
        registry: SubscriptionRegistry,
        price_cache: PriceCache,
        authenticator: Authenticator,
        enabled: bool = True,
        reconnect_interval: float = 5.0,
        reconnect_backoff: float = 1.0,
        max_reconnect_interval: float = 60.0,
        max_reconnect_attempts: int = 0,
        ping_interval: Optional[float] = 30,
        ping_timeout: Optional[float] = 10,
        close_timeout: float = 5,
        connect_factory: Optional[ConnectFactory] = None
    ):
        """
        Args:
            url: WebSocket endpoint. An empty URL disables connecting.
            registry: Desired subscription set
            price_cache: Destination of price updates
            authenticator: Handshake runner for this transport
            enabled: When False, connect() is a no-op
            reconnect_interval: Base delay before a reconnect (seconds)
            reconnect_backoff: Multiplier per consecutive attempt (1.0 = fixed)
            max_reconnect_interval: Cap for the grown delay
            max_reconnect_attempts: Give up after this many attempts (0 = never)
            connect_factory: Coroutine opening the transport (defaults to websockets.connect)
        """
        self.url = url
        self.enabled = enabled
        self.reconnect_interval = reconnect_interval
        self.reconnect_backoff = reconnect_backoff
        self.max_reconnect_interval = max_reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.close_timeout = close_timeout

        self._registry = registry
        self._cache = price_cache
        self._authenticator = authenticator
        self._connect_factory = connect_factory or self._open_websocket

        # Estado de la conexión
        self.state = ConnectionState.DISCONNECTED
        self._ws: Any = None
        self._connection_task: Optional[asyncio.Task] = None
        self._handshake_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._auth_rejected = False

        self.reconnect_attempts = 0
        self.last_error: Optional[str] = None
        self.error_kind: Optional[ErrorKind] = None
        self.last_message_at: Optional[datetime] = None

        self._status_listeners: List[StatusListener] = []

        self.stats = {
            "connections": 0,
            "reconnections": 0,
            "messages_received": 0,
            "price_updates": 0,
            "malformed_messages": 0,
            "server_errors": 0,
            "auth_failures": 0,
        }

    # =============================================
    # PUBLIC API
    # =============================================

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected()

    @property
    def is_authenticated(self) -> bool:
        return self.state == ConnectionState.AUTHENTICATED

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def session_token(self) -> Optional[str]:
        return self._authenticator.session_token

    async def connect(self) -> bool:
        """
        Open the transport in the background

        Returns:
            True if a new connection attempt was started. False when disabled,
            when no endpoint is configured, or when a connection already
            exists or is being established.
        """
        if not self.enabled or not self.url:
            logger.debug("connect_skipped_disabled", enabled=self.enabled, has_url=bool(self.url))
            return False

        if self.state.is_busy() or (self._connection_task is not None and not self._connection_task.done()):
            logger.info("connection_already_exists_skipping", state=str(self.state))
            return False

        self._closing = False
        self._auth_rejected = False
        self._cancel_reconnect()
        self._set_state(ConnectionState.CONNECTING)
        self._connection_task = asyncio.create_task(self._run_connection(), name="price-stream-connection")
        return True

    async def disconnect(self) -> None:
        """
        Close the transport with a normal closure and suppress reconnection

        Cancels any pending reconnect timer. Safe to call repeatedly.
        """
        self._closing = True
        self._cancel_reconnect()

        ws = self._ws
        if ws is not None:
            logger.info("price_stream_disconnecting")
            await self._close_transport(ws, NORMAL_CLOSURE, "client disconnect")

        task = self._connection_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            if ws is not None:
                # Let the read loop observe the close and run its own cleanup
                await asyncio.wait({task}, timeout=self.close_timeout)
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connection_task = None

        if self.state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)

    async def reconnect(self) -> bool:
        """Owner-requested reconnect (skips any pending backoff)."""
        self._cancel_reconnect()
        return await self.connect()

    def status(self) -> ConnectionStatus:
        return ConnectionStatus(
            state=self.state,
            enabled=self.enabled and bool(self.url),
            is_connected=self.is_connected,
            is_authenticated=self.is_authenticated,
            error=self.last_error,
            error_kind=self.error_kind,
            reconnecting=self.is_reconnecting,
            reconnect_attempts=self.reconnect_attempts,
            subscribed_count=len(self._registry),
            last_message_at=self.last_message_at,
        )

    def add_status_listener(self, listener: StatusListener) -> None:
        if listener not in self._status_listeners:
            self._status_listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._status_listeners:
            self._status_listeners.remove(listener)

    def next_reconnect_delay(self) -> float:
        """Delay for the current attempt: interval * backoff^(attempt-1), capped."""
        attempt = max(self.reconnect_attempts, 1)
        delay = self.reconnect_interval * (self.reconnect_backoff ** (attempt - 1))
        return min(delay, max(self.max_reconnect_interval, self.reconnect_interval))

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "state": str(self.state),
            "is_connected": self.is_connected,
            "is_authenticated": self.is_authenticated,
            "reconnect_attempts": self.reconnect_attempts,
            "last_message_time": self.last_message_at.isoformat() if self.last_message_at else None,
        }

    # =============================================
    # CONNECTION TASK
    # =============================================

    async def _open_websocket(self, url: str):
        return await websockets.connect(
            url,
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_timeout,
            close_timeout=self.close_timeout
        )

    async def _run_connection(self) -> None:
        ws = None
        error: Optional[str] = None

        try:
            logger.info("connecting_to_price_stream", url=self.url)
            ws = await self._connect_factory(self.url)
            self._ws = ws
            self.stats["connections"] += 1

            self._set_state(ConnectionState.AUTHENTICATING)
            logger.info("price_stream_connected", url=self.url, auth_required=self._authenticator.requires_auth)

            # Arm before reading so auth_required can never arrive unobserved
            armed = self._authenticator.begin(self._send)
            self._handshake_task = asyncio.create_task(
                self._complete_handshake(ws, armed),
                name="price-stream-handshake"
            )

            async for raw in ws:
                await self._dispatch(raw)

        except ConnectionClosed as e:
            logger.warning("connection_closed", error=str(e))

        except asyncio.CancelledError:
            raise

        except Exception as e:
            if ws is None:
                error = f"Failed to connect: {e}"
                logger.error("price_stream_connect_failed", url=self.url, error=str(e), error_type=type(e).__name__)
            else:
                error = f"WebSocket connection error: {e}"
                logger.error("websocket_error", error=str(e), error_type=type(e).__name__)

        finally:
            await self._cancel_handshake()
            self._on_closed(ws, error)

    async def _complete_handshake(self, ws, armed: bool) -> None:
        try:
            ok = armed and await self._authenticator.wait()
            if ws is not self._ws:
                return

            if not ok:
                reason = self._authenticator.last_error or "Authentication failed"
                self._auth_rejected = True
                self.stats["auth_failures"] += 1
                self._record_error(reason, ErrorKind.AUTHENTICATION)
                logger.error("authentication_failed_closing_connection", reason=reason)
                await self._close_transport(ws, AUTH_FAILED_CLOSURE, "authentication failed")
                return

            self._clear_error()
            await self._registry.attach(self._send)
            if ws is not self._ws:
                return

            self.reconnect_attempts = 0
            self._set_state(ConnectionState.AUTHENTICATED)
            logger.info(
                "price_stream_authenticated",
                has_session=self._authenticator.session_token is not None,
                subscribed=len(self._registry)
            )

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.error("handshake_task_error", error=str(e), error_type=type(e).__name__)
            await self._close_transport(ws, INTERNAL_ERROR_CLOSURE, "handshake error")

    async def _cancel_handshake(self) -> None:
        task = self._handshake_task
        self._handshake_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _on_closed(self, ws, error: Optional[str]) -> None:
        close_code = getattr(ws, "close_code", None) if ws is not None else None
        close_reason = getattr(ws, "close_reason", None) if ws is not None else None

        self._ws = None
        self._authenticator.reset()
        self._registry.detach()

        if not self._closing and not self._auth_rejected:
            if error is None:
                error = f"Connection closed (code={close_code}, reason={close_reason or ''})"
            self._record_error(error, ErrorKind.TRANSPORT)

        logger.info("price_stream_closed", code=close_code, reason=close_reason, deliberate=self._closing)
        self._set_state(ConnectionState.DISCONNECTED)

        if self._closing or not self.enabled:
            logger.info("reconnect_suppressed")
            return

        self._schedule_reconnect()

    # =============================================
    # RECONNECTION
    # =============================================

    def _schedule_reconnect(self) -> None:
        if self.max_reconnect_attempts and self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error("max_reconnect_attempts_reached", attempts=self.reconnect_attempts)
            return

        self.reconnect_attempts += 1
        delay = self.next_reconnect_delay()
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="price-stream-reconnect")

        logger.info("reconnect_scheduled", attempt=self.reconnect_attempts, delay_seconds=delay)
        self._notify_status()

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        if self._closing:
            return
        self.stats["reconnections"] += 1
        logger.info("attempting_reconnect", attempt=self.reconnect_attempts)
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.debug("reconnect_timer_cancelled")

    # =============================================
    # MESSAGE DISPATCH
    # =============================================

    async def _dispatch(self, raw) -> None:
        """Single entry point for every inbound frame, in arrival order."""
        self.stats["messages_received"] += 1
        self.last_message_at = datetime.now()

        try:
            message = decode_message(raw)
        except MalformedMessageError as e:
            self.stats["malformed_messages"] += 1
            logger.warning("malformed_message_ignored", error=str(e))
            return

        # Auth-phase messages stop here
        if await self._authenticator.handle_message(message):
            return

        msg_type = message["type"]
        try:
            if msg_type == "price_update":
                update = PriceUpdateMessage.model_validate(message)
                await self._cache.update(update.symbol, update.price, update.observed_at)
                self.stats["price_updates"] += 1

            elif msg_type == "error":
                server_error = ErrorMessage.model_validate(message)
                self.stats["server_errors"] += 1
                logger.error("server_error_message", message=server_error.message)
                self._record_error(server_error.message, ErrorKind.SERVER)

            else:
                logger.debug("unknown_message_type_ignored", type=msg_type)

        except ValidationError as e:
            self.stats["malformed_messages"] += 1
            logger.warning("invalid_message_ignored", type=msg_type, error=str(e))

    async def _send(self, payload: Dict[str, Any]) -> None:
        ws = self._ws
        if ws is None:
            logger.warning("send_without_transport", action=payload.get("action"))
            return
        try:
            await ws.send(json.dumps(payload))
        except (WebSocketException, OSError) as e:
            logger.warning("send_failed", action=payload.get("action"), error=str(e), error_type=type(e).__name__)

    async def _close_transport(self, ws, code: int, reason: str) -> None:
        try:
            await ws.close(code=code, reason=reason)
        except (WebSocketException, OSError) as e:
            logger.warning("close_failed", code=code, error=str(e))

    # =============================================
    # STATUS
    # =============================================

    def _set_state(self, state: ConnectionState) -> None:
        if state == self.state:
            return
        logger.debug("connection_state_changed", previous=str(self.state), state=str(state))
        self.state = state
        self._notify_status()

    def _record_error(self, message: str, kind: ErrorKind) -> None:
        self.last_error = message
        self.error_kind = kind
        self._notify_status()

    def _clear_error(self) -> None:
        if self.last_error is None and self.error_kind is None:
            return
        self.last_error = None
        self.error_kind = None
        self._notify_status()

    def _notify_status(self) -> None:
        if not self._status_listeners:
            return
        status = self.status()
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("status_listener_failed")
