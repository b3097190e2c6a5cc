"""
Event channel abstraction.

The orchestrator treats the realtime transport as an opaque bidirectional
channel: an async stream of raw inbound envelopes and a `send` for outbound
commands. `InMemoryChannel` is the in-process implementation used by tests
and local runs; the LiveKit data-channel implementation lives in
voice_pipeline.transport.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from .envelopes import RawEnvelope


@runtime_checkable
class Channel(Protocol):
    """Bidirectional realtime event channel."""

    async def open(self, credential: Optional[str] = None) -> None:
        """Open the channel. Raises on rejected credentials or connect failure."""

    def __aiter__(self) -> AsyncIterator[RawEnvelope]:
        """Inbound raw envelopes until the remote side closes."""

    async def send(self, command: Dict[str, Any]) -> None:
        """Send one outbound command."""

    async def close(self) -> None:
        """Close the channel. Idempotent."""


_END = object()


class InMemoryChannel:
    """
    Queue-backed channel.

    Inbound envelopes are pushed with `push()`; outbound commands are
    collected in `sent`.
    """

    def __init__(self, open_error: Optional[BaseException] = None):
        self._inbound: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.credential: Optional[str] = None
        self.opened = False
        self.closed = False
        self.open_error = open_error
        self.send_error: Optional[BaseException] = None

    async def open(self, credential: Optional[str] = None) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.credential = credential
        self.opened = True

    def push(self, envelope: RawEnvelope) -> None:
        """Queue one inbound envelope. Mappings are sent as JSON text like a real wire."""
        if isinstance(envelope, dict):
            envelope = json.dumps(envelope)
        self._inbound.put_nowait(envelope)

    def fail(self, error: BaseException) -> None:
        """Make the inbound stream raise `error` after already queued envelopes."""
        self._inbound.put_nowait(error)

    def end(self) -> None:
        """Close the inbound stream after already queued envelopes."""
        self._inbound.put_nowait(_END)

    async def __aiter__(self) -> AsyncIterator[RawEnvelope]:
        while True:
            item = await self._inbound.get()
            if item is _END:
                return
            if isinstance(item, BaseException):
                raise item
            yield item

    async def send(self, command: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("channel closed")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(command)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(_END)

    @property
    def pending_inbound(self) -> int:
        """Inbound envelopes not yet read by the session."""
        return self._inbound.qsize()

    def sent_of_type(self, command_type: str) -> List[Dict[str, Any]]:
        return [c for c in self.sent if c.get("type") == command_type]

    async def wait_for(self, command_type: str, count: int = 1, timeout: float = 1.0) -> List[Dict[str, Any]]:
        """Wait until `count` commands of `command_type` were sent."""
        deadline = time.monotonic() + timeout
        while True:
            matches = self.sent_of_type(command_type)
            if len(matches) >= count:
                return matches
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"expected {count} '{command_type}' commands, got {len(matches)}"
                )
            await asyncio.sleep(0.005)
