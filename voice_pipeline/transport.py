"""
LiveKit data-channel transport.

Carries realtime envelopes as JSON data packets on one topic of a LiveKit
room. The realtime model bridge in the room publishes inbound envelopes on
the topic; the orchestrator publishes its outbound commands on the same
topic. A room disconnect ends the inbound stream.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional

from livekit import rtc

from logging_setup import get_logger, Component
from orchestrator.envelopes import RawEnvelope
from orchestrator.errors import CredentialRejected, TransportError, TransportErrorCategory, TransportErrorHandler


logger = get_logger(Component.LIVEKIT_TRANSPORT)

_END = object()


class LiveKitDataChannel:
    """Channel implementation over a LiveKit room's data packets."""

    def __init__(
        self,
        room: rtc.Room,
        *,
        topic: str = "realtime-events",
        url: Optional[str] = None,
        destination_identities: Optional[List[str]] = None,
    ):
        self.room = room
        self.topic = topic
        self.url = url
        self.destination_identities = destination_identities or []
        self._inbound: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.room.on("data_received", self._on_data_received)
        self.room.on("disconnected", self._on_disconnected)

    async def open(self, credential: Optional[str] = None) -> None:
        """
        Join the room unless the worker already did.

        The LiveKit Agents worker connects the room itself (JobContext.connect);
        standalone use passes an access token and the server URL.
        """
        if self.room.isconnected():
            return
        if not credential or not self.url:
            raise TransportError("room is not connected and no url/token was provided")
        try:
            await self.room.connect(self.url, credential)
        except Exception as e:
            if TransportErrorHandler.classify_error(e) == TransportErrorCategory.AUTH_FAILED:
                raise CredentialRejected(f"LiveKit rejected the access token: {e}") from e
            raise TransportError(f"LiveKit connect failed: {type(e).__name__}: {e}") from e

    def _on_data_received(self, packet: rtc.DataPacket) -> None:
        if self._closed or packet.topic != self.topic:
            return
        self._inbound.put_nowait(bytes(packet.data))

    def _on_disconnected(self, *args: Any) -> None:
        logger.info("LiveKit room disconnected", room=self.room.name)
        self._inbound.put_nowait(_END)

    async def __aiter__(self) -> AsyncIterator[RawEnvelope]:
        while True:
            item = await self._inbound.get()
            if item is _END:
                return
            yield item

    async def send(self, command: Dict[str, Any]) -> None:
        if self._closed:
            raise TransportError("channel closed")
        payload = json.dumps(command, ensure_ascii=False).encode("utf-8")
        await self.room.local_participant.publish_data(
            payload,
            reliable=True,
            topic=self.topic,
            destination_identities=self.destination_identities,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.room.off("data_received", self._on_data_received)
        self.room.off("disconnected", self._on_disconnected)
        self._inbound.put_nowait(_END)
