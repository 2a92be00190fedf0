"""
Pydantic models for data validation and serialization
"""

from .stream import *

__all__ = [
    # Server -> client
    "ChallengeMessage",
    "AuthenticatedMessage",
    "AuthErrorMessage",
    "PriceUpdateMessage",
    "ErrorMessage",
    "AUTH_MESSAGE_TYPES",
    # Client -> server
    "RequestChallengeData",
    "ChallengeResponseData",
    "AuthenticateMessage",
    "SubscriptionMessage",
    # Consumer surfaces
    "PriceEntry",
    "ConnectionStatus",
    # Helpers
    "MalformedMessageError",
    "decode_message",
    "parse_timestamp",
]
