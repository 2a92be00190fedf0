"""
Authenticator

Challenge-response handshake over an already-open transport:

    server: {"type": "auth_required"}
    client: {"action": "authenticate", "auth_data": {"type": "request_challenge", "api_key": ...}}
    server: {"type": "challenge", "challenge": ..., "challenge_id": ...}
    client: {"action": "authenticate", "auth_data": {"type": "challenge_response", ...}}
    server: {"type": "authenticated", "session_token": ...} | {"type": "auth_error", "message": ...}

The handshake is message-driven: the connection's dispatcher feeds every
auth-phase message to handle_message(), and the connection task awaits the
outcome through wait(). Without an API key the handshake is skipped.
"""

import asyncio
import base64
import hashlib
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from shared.models.stream import (
    AUTH_MESSAGE_TYPES,
    AuthenticateMessage,
    AuthenticatedMessage,
    AuthErrorMessage,
    ChallengeMessage,
    ChallengeResponseData,
    RequestChallengeData,
)
from shared.utils.logger import get_logger

logger = get_logger(__name__, component="authenticator")

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]

DEFAULT_AUTH_TIMEOUT = 10.0


class Authenticator:
    """
    Runs at most one handshake at a time

    begin() arms a handshake for the current transport (synchronously, so no
    inbound frame can slip past it); wait() suspends until a terminal
    message arrives or the timeout fires. Every exit path clears the
    in-progress guard.
    """

    def __init__(self, api_key: Optional[str] = None, timeout: float = DEFAULT_AUTH_TIMEOUT):
        self.api_key = api_key or None
        self.timeout = timeout

        self.is_authenticated = False
        self.session_token: Optional[str] = None
        self.last_error: Optional[str] = None

        self._pending: Optional[asyncio.Future] = None
        self._deadline: float = 0.0
        self._send: Optional[SendFn] = None

        self.stats = {
            "handshakes_started": 0,
            "handshakes_succeeded": 0,
            "handshakes_failed": 0,
            "timeouts": 0,
        }

    @property
    def requires_auth(self) -> bool:
        return self.api_key is not None

    @property
    def in_progress(self) -> bool:
        return self._pending is not None and not self._pending.done()

    @staticmethod
    def sign_challenge(challenge: str, api_key: str) -> str:
        """base64(sha256("<challenge>:<api_key>"))"""
        digest = hashlib.sha256(f"{challenge}:{api_key}".encode("utf-8")).digest()
        return base64.b64encode(digest).decode("ascii")

    # =============================================
    # HANDSHAKE LIFECYCLE
    # =============================================

    def begin(self, send: SendFn) -> bool:
        """
        Arm a handshake for the current transport

        Returns:
            False if a handshake is already pending (the server is not contacted),
            True otherwise. Without an API key the client is authenticated at once.
        """
        if not self.requires_auth:
            logger.warning("no_api_key_skipping_authentication")
            self.is_authenticated = True
            self.last_error = None
            return True

        if self.in_progress:
            logger.warning("authentication_already_in_progress")
            return False

        loop = asyncio.get_running_loop()
        self.is_authenticated = False
        self.session_token = None
        self.last_error = None
        self._send = send
        self._pending = loop.create_future()
        self._deadline = loop.time() + self.timeout
        self.stats["handshakes_started"] += 1

        logger.info("authentication_started", timeout_seconds=self.timeout)
        return True

    async def wait(self) -> bool:
        """Wait for the armed handshake to reach a terminal state (bounded by the timeout)."""
        future = self._pending
        if future is None:
            return self.is_authenticated

        remaining = max(0.0, self._deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(asyncio.shield(future), remaining)
        except asyncio.TimeoutError:
            self.last_error = "Authentication timeout"
            self.stats["timeouts"] += 1
            logger.error("authentication_timeout", timeout_seconds=self.timeout)
            self._resolve(False)
            return False
        finally:
            if self._pending is future:
                self._clear_handshake()

    async def authenticate(self, send: SendFn) -> bool:
        """Run a full handshake; rejected immediately if one is already in flight."""
        if not self.begin(send):
            return False
        return await self.wait()

    def reset(self) -> None:
        """Abort any pending handshake and forget the session (transport closed)."""
        if self.in_progress:
            self.last_error = "Connection closed during authentication"
            self._resolve(False)
        self._clear_handshake()
        self.is_authenticated = False
        self.session_token = None

    # =============================================
    # MESSAGE HANDLING
    # =============================================

    async def handle_message(self, message: Dict[str, Any]) -> bool:
        """
        Process an inbound message if it belongs to the handshake

        Returns:
            True when the message is an auth-phase message (consumed here and
            never forwarded to the general dispatcher), False otherwise.
        """
        msg_type = message.get("type")
        if msg_type not in AUTH_MESSAGE_TYPES:
            return False

        if not self.in_progress:
            logger.debug("auth_message_without_handshake", type=msg_type)
            return True

        logger.debug("auth_message_received", type=msg_type)

        try:
            if msg_type == "auth_required":
                await self._send_auth(RequestChallengeData(api_key=self.api_key))
                logger.info("authentication_challenge_requested")

            elif msg_type == "challenge":
                challenge = ChallengeMessage.model_validate(message)
                signature = self.sign_challenge(challenge.challenge, self.api_key)
                await self._send_auth(ChallengeResponseData(
                    challenge_id=challenge.challenge_id,
                    signature=signature,
                    api_key=self.api_key,
                ))
                logger.info("authentication_challenge_signed", challenge_id=challenge.challenge_id)

            elif msg_type == "authenticated":
                authenticated = AuthenticatedMessage.model_validate(message)
                self.session_token = authenticated.session_token
                self.is_authenticated = True
                self.last_error = None
                self.stats["handshakes_succeeded"] += 1
                logger.info("authentication_succeeded")
                self._resolve(True)

            elif msg_type == "auth_error":
                auth_error = AuthErrorMessage.model_validate(message)
                self._fail(f"Authentication failed: {auth_error.message}")

        except ValidationError as e:
            self._fail(f"Authentication error: malformed {msg_type} message")
            logger.error("authentication_message_invalid", type=msg_type, error=str(e))

        except Exception as e:
            self._fail("Authentication error")
            logger.error(
                "authentication_send_failed",
                type=msg_type,
                error=str(e),
                error_type=type(e).__name__
            )

        return True

    # =============================================
    # INTERNALS
    # =============================================

    async def _send_auth(self, auth_data) -> None:
        await self._send(AuthenticateMessage(auth_data=auth_data).model_dump())

    def _fail(self, reason: str) -> None:
        self.last_error = reason
        self.is_authenticated = False
        self.stats["handshakes_failed"] += 1
        logger.error("authentication_failed", reason=reason)
        self._resolve(False)

    def _resolve(self, ok: bool) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.set_result(ok)

    def _clear_handshake(self) -> None:
        self._pending = None
        self._send = None
