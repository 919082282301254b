"""
Messaging channel contract.

The wire-level session (QR pairing, reconnects, media) lives outside this
package. The scheduler pushes text to a handle, asks whether the session is
usable right now, and registers listeners for inbound messages and
connection changes.
"""
import logging
from typing import Awaitable, Callable, Optional, Protocol

from followup_bot.core.models import ConnectionState, InboundMessage

logger = logging.getLogger(__name__)

InboundListener = Callable[[InboundMessage], Awaitable[object]]
ConnectionListener = Callable[[ConnectionState], None]


class MessagingChannel(Protocol):
    """What the bot needs from a channel session."""

    async def send(self, handle: str, text: str) -> bool:
        """Deliver ``text``; True once the channel acknowledged it."""
        ...

    def connection_state(self) -> ConnectionState:
        """Current session state, read on every admission check."""
        ...

    def add_listener(self, on_message: InboundListener, on_connection: ConnectionListener) -> None:
        """Register callbacks for inbound messages and connection changes."""
        ...


class DryRunChannel:
    """Channel that logs instead of sending.

    Used by ``followup-bot run --dry-run`` to watch what the scheduler would
    do against real data without touching the network. :meth:`receive` and
    :meth:`set_state` feed events to the registered listeners.
    """

    def __init__(self, state: ConnectionState = ConnectionState.CONNECTED):
        self.state = state
        self.sent: list[tuple[str, str]] = []
        self._on_message: Optional[InboundListener] = None
        self._on_connection: Optional[ConnectionListener] = None

    async def send(self, handle: str, text: str) -> bool:
        preview = text.replace("\n", " ")[:60]
        logger.info(f"[dry-run] -> {handle}: {preview}")
        self.sent.append((handle, text))
        return True

    def connection_state(self) -> ConnectionState:
        return self.state

    def add_listener(self, on_message: InboundListener, on_connection: ConnectionListener) -> None:
        self._on_message = on_message
        self._on_connection = on_connection

    async def receive(self, message: InboundMessage) -> object:
        """Hand an inbound message to the registered listener."""
        if self._on_message is None:
            logger.debug(f"[dry-run] no listener for message from {message.handle}")
            return None
        return await self._on_message(message)

    def set_state(self, state: ConnectionState) -> None:
        """Change the session state and notify the registered listener."""
        self.state = ConnectionState(state)
        if self._on_connection is not None:
            self._on_connection(self.state)
