from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from typing import Any, Generic, TypeVar

from sse_starlette.sse import EventSourceResponse
from starlette.types import Receive, Scope, Send

from toolweave.log import logger
from toolweave.protocol import StreamEvent
from toolweave.router.multiplexer import run_in_background

T = TypeVar("T")

DONE_MARKER = "[DONE]"


class StreamData(Generic[T]):
    """
    Stores stream data and provides methods to access it.
    """

    def __init__(self) -> None:
        self.events: list[T] = []
        self.completed: bool = False
        self.created_at: float = time.monotonic()
        self.completed_at: float | None = None
        self._event_added = asyncio.Event()

    def add_event(self, event: T) -> None:
        """Add an event to the stream."""
        self.events.append(event)
        self._event_added.set()
        self._event_added = asyncio.Event()

    def get_events(self) -> list[T]:
        """Get all events in the stream."""
        return list(self.events)

    def is_completed(self) -> bool:
        """Check if the stream is completed."""
        return self.completed

    def mark_completed(self) -> None:
        """Mark the stream as completed."""
        self.completed = True
        self.completed_at = time.monotonic()
        self._event_added.set()  # Wake up any waiting consumers

    def is_expired(self, retention_seconds: float, now: float | None = None) -> bool:
        now = now if now is not None else time.monotonic()
        reference = self.completed_at if self.completed_at is not None else self.created_at
        return now - reference > retention_seconds

    async def stream_events(self, start_index: int = 0) -> AsyncIterator[T]:
        """
        Stream events starting from the given index.
        Waits for new events if we've yielded all current events and the stream is not completed.
        """
        current_index = start_index

        while True:
            # Yield any available events
            while current_index < len(self.events):
                yield self.events[current_index]
                current_index += 1

            # If the stream is completed and we've yielded all events, we're done
            if self.completed:
                break

            # Wait for new events
            await self._event_added.wait()


class PersistentStreamer:
    """
    Process-wide registry of streams that clients can rejoin by id.
    """

    _instance: PersistentStreamer | None = None

    @classmethod
    def get_instance(cls) -> PersistentStreamer:
        """Get the singleton instance."""
        if cls._instance is None:
            cls._instance = PersistentStreamer()
        return cls._instance

    def __init__(self, retention_seconds: float = 600):
        self.streams: dict[str, StreamData] = {}
        self.retention_seconds = retention_seconds

    def create_stream(self, stream_id: str) -> StreamData:
        """Create a new stream with the given ID."""
        self.prune()
        if stream_id in self.streams:
            raise ValueError(f"Stream with ID {stream_id} already exists")

        self.streams[stream_id] = StreamData()
        return self.streams[stream_id]

    def get_stream(self, stream_id: str) -> StreamData:
        """Get a stream by ID."""
        if stream_id not in self.streams:
            raise ValueError(f"Stream with ID {stream_id} not found")

        return self.streams[stream_id]

    def delete_stream(self, stream_id: str) -> None:
        """Delete a stream by ID."""
        if stream_id in self.streams:
            del self.streams[stream_id]

    def has_stream(self, stream_id: str) -> bool:
        """Check if a stream with the given ID exists."""
        return stream_id in self.streams

    def prune(self) -> None:
        """Drop streams past the retention window."""
        now = time.monotonic()
        for stream_id in [s for s, data in self.streams.items() if data.is_expired(self.retention_seconds, now)]:
            logger.debug(f"Pruning expired stream {stream_id}")
            del self.streams[stream_id]

    def start(self, stream_id: str, source: AsyncIterator[Any], register: bool = True) -> StreamData:
        """
        Drive ``source`` to completion in the background and return its stream.
        Unregistered streams behave the same but cannot be rejoined.
        """
        stream_data = self.create_stream(stream_id) if register else StreamData()
        run_in_background(process_stream(source, stream_data), name=f"stream-{stream_id}")
        return stream_data


def encode_event(index: int, event: Any) -> dict[str, str]:
    data = event.to_sse_data() if isinstance(event, StreamEvent) else str(event)
    return {"id": str(index), "data": data}


class PersistentEventSourceResponse(EventSourceResponse):
    """
    An EventSourceResponse that reads from a stream driven elsewhere, so a client
    going away never stops the producer.
    """

    def __init__(
        self,
        streamer: PersistentStreamer,
        stream_id: str,
        stream_data: StreamData | None = None,
        start_index: int = 0,
        status_code: int = 200,
        ping: int | None = None,
        ping_message_factory=None,
        **kwargs,
    ):
        self.streamer = streamer
        self.stream_id = stream_id
        self.start_index = start_index

        if stream_data is None:
            stream_data = streamer.get_stream(stream_id)
        self.stream_data = stream_data

        # Create an async generator that yields events from the stream
        async def event_generator():
            index = start_index
            try:
                async for event in stream_data.stream_events(start_index):
                    yield encode_event(index, event)
                    index += 1
                yield {"data": DONE_MARKER}
            except Exception as e:
                logger.exception(f"Error streaming events for {stream_id}: {e}")

        super().__init__(
            content=event_generator(),
            status_code=status_code,
            ping=ping,
            ping_message_factory=ping_message_factory,
            **kwargs,
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        Override the __call__ method to handle client disconnects.
        """
        try:
            await super().__call__(scope, receive, send)
        except Exception as e:
            logger.exception(f"Error in PersistentEventSourceResponse: {e}")
        finally:
            # If the stream is completed, we can delete it
            if self.stream_data.is_completed():
                self.streamer.delete_stream(self.stream_id)


async def process_stream(source_iterator: AsyncIterator[Any], stream_data: StreamData) -> None:
    """
    Process a source iterator and add events to a stream.
    This function should be called as a background task.
    """
    try:
        async for event in source_iterator:
            stream_data.add_event(event)
    except Exception as e:
        logger.exception(f"Error processing stream: {e}")
    finally:
        stream_data.mark_completed()
