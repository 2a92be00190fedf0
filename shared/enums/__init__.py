"""
Enums for the price stream
"""

from .connection import ConnectionState, ErrorKind

__all__ = [
    "ConnectionState",
    "ErrorKind",
]
