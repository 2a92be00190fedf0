"""
Price Stream Connection Enumerations
"""

from enum import Enum


class ConnectionState(str, Enum):
    """
    Lifecycle states of the price stream transport

    DISCONNECTED -> CONNECTING -> AUTHENTICATING -> AUTHENTICATED -> DISCONNECTED
    """
    DISCONNECTED = "DISCONNECTED"      # No transport
    CONNECTING = "CONNECTING"          # Transport being opened
    AUTHENTICATING = "AUTHENTICATING"  # Transport open, handshake running
    AUTHENTICATED = "AUTHENTICATED"    # Handshake done, subscriptions flushed

    def __str__(self) -> str:
        return self.value

    def is_connected(self) -> bool:
        """Check if a transport is open"""
        return self in (ConnectionState.AUTHENTICATING, ConnectionState.AUTHENTICATED)

    def is_busy(self) -> bool:
        """Check if a connection exists or is being established"""
        return self != ConnectionState.DISCONNECTED


class ErrorKind(str, Enum):
    """Category of the last error surfaced to consumers"""

    TRANSPORT = "TRANSPORT"            # Connection refused / dropped, retried
    AUTHENTICATION = "AUTHENTICATION"  # Credential rejected or handshake timeout
    SERVER = "SERVER"                  # Server-reported error, connection kept

    def __str__(self) -> str:
        return self.value
