"""
Subscription Registry

Source of truth for the symbols the client should be subscribed to.

Two sets are tracked:
- desired: what consumers asked for. Survives reconnects.
- wire: what was last sent on the current transport. Forgotten on disconnect.

A subscribe/unsubscribe message is only ever emitted for symbols whose
desired state differs from the wire state, so repeated or concurrent calls
never produce duplicate traffic. Symbols are only removed by an explicit
unsubscribe(); nothing prunes them implicitly.
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from shared.models.stream import SubscriptionMessage
from shared.utils.logger import get_logger

logger = get_logger(__name__, component="subscriptions")

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


def normalize_symbols(symbols: Iterable[str]) -> List[str]:
    """Strip and de-duplicate symbols, preserving order and case."""
    seen: Set[str] = set()
    result: List[str] = []
    for symbol in symbols:
        if not isinstance(symbol, str):
            continue
        normalized = symbol.strip()
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


class SubscriptionRegistry:
    """
    Deduplicated, idempotent tracking of symbols of interest

    The ConnectionManager calls attach() once the transport is authenticated
    (which performs the full resync) and detach() when it closes.
    """

    def __init__(self, symbols: Optional[Iterable[str]] = None):
        self._desired: Set[str] = set(normalize_symbols(symbols or []))
        self._wire: Set[str] = set()
        self._send: Optional[SendFn] = None

        self.stats = {
            "subscribe_messages": 0,
            "unsubscribe_messages": 0,
            "resyncs": 0,
        }

    @property
    def symbols(self) -> Set[str]:
        """Copy of the desired symbol set"""
        return set(self._desired)

    @property
    def wire_symbols(self) -> Set[str]:
        """Copy of the symbols last sent on the current transport"""
        return set(self._wire)

    @property
    def is_attached(self) -> bool:
        return self._send is not None

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._desired

    def __len__(self) -> int:
        return len(self._desired)

    # =============================================
    # CONSUMER OPERATIONS
    # =============================================

    async def subscribe(self, symbols: Iterable[str]) -> List[str]:
        """
        Add symbols to the desired set

        Returns:
            Symbols that were not already desired. Only those are sent, and
            only while attached to an authenticated transport.
        """
        new_symbols = [s for s in normalize_symbols(symbols) if s not in self._desired]
        if not new_symbols:
            return []

        self._desired.update(new_symbols)

        if not self.is_attached:
            logger.info("subscription_deferred_until_authenticated", symbols=new_symbols)
            return new_symbols

        to_send = [s for s in new_symbols if s not in self._wire]
        if to_send:
            self._wire.update(to_send)
            await self._emit("subscribe", to_send)
        return new_symbols

    async def unsubscribe(self, symbols: Iterable[str]) -> List[str]:
        """
        Remove symbols from the desired set

        Returns:
            Symbols that were actually desired. Only those are sent.
        """
        removed = [s for s in normalize_symbols(symbols) if s in self._desired]
        if not removed:
            return []

        self._desired.difference_update(removed)

        if not self.is_attached:
            logger.info("unsubscription_recorded_offline", symbols=removed)
            return removed

        to_send = [s for s in removed if s in self._wire]
        if to_send:
            self._wire.difference_update(to_send)
            await self._emit("unsubscribe", to_send)
        return removed

    # =============================================
    # CONNECTION HOOKS
    # =============================================

    async def attach(self, send: SendFn) -> List[str]:
        """
        Bind to an authenticated transport and resync the full desired set

        The full set goes out as a single subscribe message (nothing is sent
        when no symbols are desired).
        """
        self._send = send
        self._wire.clear()

        to_send = sorted(self._desired)
        self.stats["resyncs"] += 1
        if to_send:
            self._wire.update(to_send)
            logger.info("subscriptions_resync", count=len(to_send), examples=to_send[:10])
            await self._emit("subscribe", to_send)
        return to_send

    def detach(self) -> None:
        """Forget the wire state; the desired set is kept for the next resync."""
        self._send = None
        self._wire.clear()

    # =============================================
    # INTERNALS
    # =============================================

    async def _emit(self, action: str, symbols: List[str]) -> None:
        send = self._send
        if send is None:
            return
        message = SubscriptionMessage(action=action, symbols=symbols)
        self.stats[f"{action}_messages"] += 1
        logger.info(f"{action}_sent", symbols=symbols, total_desired=len(self._desired))
        await send(message.model_dump())
