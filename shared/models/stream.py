"""
Pydantic models for the price stream wire protocol
and for the status / price surfaces exposed to consumers
"""

import json
import time
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Union, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..enums.connection import ConnectionState, ErrorKind


class MalformedMessageError(ValueError):
    """Raised when an inbound frame cannot be decoded into a message"""


# =============================================
# SERVER -> CLIENT
# =============================================

class ChallengeMessage(BaseModel):
    """Server-issued nonce to be signed with the API key"""
    type: Literal["challenge"] = "challenge"
    challenge: str = Field(..., min_length=1, description="Nonce to sign")
    challenge_id: str = Field(..., min_length=1, description="Opaque challenge identifier")

    @field_validator("challenge", "challenge_id", mode="before")
    @classmethod
    def coerce_to_str(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class AuthenticatedMessage(BaseModel):
    """Handshake succeeded"""
    type: Literal["authenticated"] = "authenticated"
    session_token: Optional[str] = Field(None, description="Opaque session token")


class AuthErrorMessage(BaseModel):
    """Handshake rejected"""
    type: Literal["auth_error"] = "auth_error"
    message: str = Field("unknown error", description="Human readable reason")


class PriceUpdateMessage(BaseModel):
    """Live price for one symbol"""
    type: Literal["price_update"] = "price_update"
    symbol: str = Field(..., min_length=1, description="Ticker symbol")
    price: float = Field(..., allow_inf_nan=False, description="Last price")
    timestamp: Optional[Union[str, float, int]] = Field(None, description="ISO-8601 or epoch (s or ms)")

    @field_validator("symbol")
    @classmethod
    def strip_symbol(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("empty symbol")
        return v

    @property
    def observed_at(self) -> float:
        """Observation time as Unix seconds (arrival time when absent or unparseable)"""
        return parse_timestamp(self.timestamp)


class ErrorMessage(BaseModel):
    """Application error reported by the server"""
    type: Literal["error"] = "error"
    message: str = Field("unknown error", description="Error description")


AUTH_MESSAGE_TYPES = frozenset({"auth_required", "challenge", "authenticated", "auth_error"})


# =============================================
# CLIENT -> SERVER
# =============================================

class RequestChallengeData(BaseModel):
    type: Literal["request_challenge"] = "request_challenge"
    api_key: str


class ChallengeResponseData(BaseModel):
    type: Literal["challenge_response"] = "challenge_response"
    challenge_id: str
    signature: str
    api_key: str


class AuthenticateMessage(BaseModel):
    """Handshake step sent by the client"""
    action: Literal["authenticate"] = "authenticate"
    auth_data: Union[RequestChallengeData, ChallengeResponseData]


class SubscriptionMessage(BaseModel):
    """Subscribe / unsubscribe request for a batch of symbols"""
    action: Literal["subscribe", "unsubscribe"]
    symbols: List[str]


# =============================================
# CONSUMER SURFACES
# =============================================

class PriceEntry(BaseModel):
    """Latest known price for a symbol"""
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float
    observed_at: float = Field(default_factory=time.time, description="Unix seconds")
    live: bool = Field(True, description="False when seeded from a persisted snapshot")


class ConnectionStatus(BaseModel):
    """Connectivity / health summary for display"""
    state: ConnectionState
    enabled: bool = True
    is_connected: bool = False
    is_authenticated: bool = False
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    reconnecting: bool = False
    reconnect_attempts: int = 0
    subscribed_count: int = 0
    last_message_at: Optional[datetime] = None

    @property
    def is_rejected(self) -> bool:
        """Last failure was the server refusing our credential"""
        return self.error_kind == ErrorKind.AUTHENTICATION


# =============================================
# HELPERS
# =============================================

def decode_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """
    Decode one inbound frame into a JSON object

    Raises:
        MalformedMessageError: invalid JSON or not an object with a string 'type'
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessageError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMessageError(f"expected object, got {type(data).__name__}")
    if not isinstance(data.get("type"), str):
        raise MalformedMessageError("missing message type")
    return data


def parse_timestamp(value: Optional[Union[str, float, int]]) -> float:
    """
    Convert a wire timestamp to Unix seconds

    Accepts ISO-8601 strings, epoch seconds and epoch milliseconds.
    Falls back to the current time.
    """
    if value is None or isinstance(value, bool):
        return time.time()

    if isinstance(value, str):
        text = value.strip()
        if not text.replace(".", "", 1).isdigit():
            try:
                return _parse_iso(text)
            except ValueError:
                return time.time()
        value = text

    number = float(value)
    # Anything past year ~2286 in seconds is really milliseconds
    return number / 1000.0 if number > 1e10 else number


def _parse_iso(text: str) -> float:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
