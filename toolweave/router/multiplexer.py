"""Merging the agent loop and its sibling streams into one ordered channel.

Every source gets its own producer task that writes into a single queue; one
consumer drains it. Ordering is only guaranteed within a source, so readers key
tool updates by call id.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

from toolweave.log import logger
from toolweave.messages import Message
from toolweave.protocol import ErrorEvent, FinishEvent, FinishReason, MessageAssembler, StartEvent, StreamEvent

OnFinish = Callable[[list[Message], Message], Awaitable[None]]
Cleanup = Callable[[], Awaitable[Any]]

_background_tasks: set[asyncio.Task] = set()


def run_in_background(coro: Awaitable[Any], name: str | None = None) -> asyncio.Task:
    """Fire and forget, keeping a reference so the task is not collected mid-flight."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def default_error_text(error: BaseException) -> str:
    return f"Something went wrong (response stopped): {error}"


class _SourceDone:
    __slots__ = ("error",)

    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error


class UIMessageStreamWriter:
    """Handed to ``execute`` and to tools; everything written lands in the merged stream."""

    def __init__(self, stream: UIMessageStream) -> None:
        self._stream = stream

    def write(self, event: StreamEvent) -> None:
        self._stream._queue.put_nowait(event)

    def merge(self, source: AsyncIterator[StreamEvent]) -> None:
        self._stream._spawn(source)

    def defer(self, cleanup: Cleanup) -> None:
        """Run ``cleanup`` in the background once the merged stream has finished."""
        self._stream._cleanups.append(cleanup)


class UIMessageStream:
    """One response: ``start``, the merged events, then ``finish`` or ``error``.

    ``original_messages`` is given when the response continues a conversation
    whose last assistant message must be extended rather than replaced, as
    after a tool approval. ``finish_reason`` is asked once every source has
    ended and its answer goes out with ``finish``. ``on_finish`` receives the
    complete message list and the response message once every source has
    ended, whether or not anybody is still reading.
    """

    def __init__(
        self,
        execute: Callable[[UIMessageStreamWriter], Awaitable[None]],
        *,
        original_messages: Sequence[Message] | None = None,
        on_finish: OnFinish | None = None,
        on_error: Callable[[BaseException], str] = default_error_text,
        finish_reason: Callable[[], FinishReason | None] | None = None,
        timeout: float | None = None,
        message_id: str | None = None,
    ) -> None:
        self._execute = execute
        self.original_messages = [m.model_copy(deep=True) for m in original_messages or []]
        self._on_finish = on_finish
        self._on_error = on_error
        self._finish_reason = finish_reason
        self._timeout = timeout

        continued = None
        if self.original_messages and self.original_messages[-1].role == "assistant":
            continued = self.original_messages[-1]
        self.assembler = MessageAssembler(continued, message_id=message_id)

        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._active = 0
        self._cleanups: list[Cleanup] = []
        self.error: BaseException | None = None

    @property
    def message_id(self) -> str:
        return self.assembler.message.id

    def _spawn(self, source: AsyncIterator[StreamEvent] | Awaitable[None]) -> None:
        self._active += 1
        self._tasks.append(asyncio.create_task(self._produce(source)))

    async def _produce(self, source: AsyncIterator[StreamEvent] | Awaitable[None]) -> None:
        try:
            if hasattr(source, "__aiter__"):
                async for event in source:
                    self._queue.put_nowait(event)
            else:
                await source
        except Exception as e:
            logger.exception(f"Stream source failed: {e}")
            self._queue.put_nowait(_SourceDone(e))
        else:
            self._queue.put_nowait(_SourceDone())

    async def _merged(self) -> AsyncIterator[StreamEvent]:
        self._spawn(self._execute(UIMessageStreamWriter(self)))
        while self._active:
            item = await self._queue.get()
            if isinstance(item, _SourceDone):
                self._active -= 1
                if item.error is not None:
                    raise item.error
                continue
            yield item
        # Writes made after the last source finished
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if not isinstance(item, _SourceDone):
                yield item

    def _emit(self, event: StreamEvent) -> StreamEvent:
        self.assembler.apply(event)
        return event

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        yield self._emit(StartEvent(message_id=self.message_id))
        deadline = asyncio.timeout(self._timeout)
        try:
            try:
                async with deadline:
                    async for event in self._merged():
                        yield self._emit(event)
            except TimeoutError as e:
                self.error = TimeoutError(f"request timed out after {self._timeout:g}s") if deadline.expired() else e
                logger.warning(f"Response {self.message_id} stopped: {self.error}")
                yield self._emit(ErrorEvent(error_text=self._on_error(self.error)))
            except Exception as e:
                self.error = e
                yield self._emit(ErrorEvent(error_text=self._on_error(e)))
            else:
                reason = self._finish_reason() if self._finish_reason else None
                yield self._emit(FinishEvent(finish_reason=reason))
        finally:
            for task in self._tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            await self._finish()

    def messages(self) -> list[Message]:
        response = self.assembler.message
        messages = list(self.original_messages)
        if messages and messages[-1].id == response.id:
            messages[-1] = response
        else:
            messages.append(response)
        return messages

    async def _finish(self) -> None:
        if self._on_finish is not None:
            try:
                await self._on_finish(self.messages(), self.assembler.message)
            except Exception as e:
                logger.exception(f"Error in on_finish for {self.message_id}: {e}")
        for cleanup in self._cleanups:
            run_in_background(self._run_cleanup(cleanup))

    @staticmethod
    async def _run_cleanup(cleanup: Cleanup) -> None:
        try:
            await cleanup()
        except Exception as e:
            logger.exception(f"Background cleanup failed: {e}")
