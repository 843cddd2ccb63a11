"""Streaming aggregator for incremental handler output.

A handler emits fragments as they become available (for example, model
tokens). The stream buffers them and, once the emitter has been quiet for the
debounce delay, flushes the buffer as a small number of typing "chunk"
activities carrying the running text. ``close()`` then sends one final message
with everything accumulated.

Only one flush runs at a time per stream. Chunk sequence numbers start at 1 and
grow by one per sent chunk. The stream id is taken from the first chunk the
channel accepts and is reused for every later chunk and the final message.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from blinker import Signal
from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from palaver.activities import (
    ActivityBase,
    Attachment,
    ChannelData,
    Entity,
    MessageActivity,
    StreamType,
    TypingActivity,
    is_informative,
)
from palaver.errors import StreamClosedError

NO_CONTENT_TEXT = "Streaming closed with no content"

type SendActivity = Callable[[ActivityBase], Awaitable[ActivityBase]]
type Fragment = str | MessageActivity | TypingActivity
type Unsubscribe = Callable[[], None]


class Stream:
    """Debounced chunk aggregator owned by one in-flight request."""

    def __init__(
        self,
        send: SendActivity,
        *,
        debounce_seconds: float = 0.5,
        batch_size: int = 10,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.2,
        retry_max_delay_seconds: float = 2.0,
        close_poll_seconds: float = 0.05,
    ) -> None:
        self._send = send
        self._debounce_seconds = debounce_seconds
        self._batch_size = batch_size
        self._retry_attempts = retry_attempts
        self._retry_delay_seconds = retry_delay_seconds
        self._retry_max_delay_seconds = retry_max_delay_seconds
        self._close_poll_seconds = close_poll_seconds

        self._sequence = 1
        self._stream_id: str | None = None
        self._text = ""
        self._attachments: list[Attachment] = []
        self._entities: list[Entity] = []
        self._channel_data = ChannelData()
        self._queue: deque[ActivityBase] = deque()
        self._count = 0
        self._emitted = False
        self._closed = False
        self._result: ActivityBase | None = None

        self._lock = asyncio.Lock()
        self._close_lock = asyncio.Lock()
        self._timer: asyncio.TimerHandle | None = None
        self._flushes: set[asyncio.Task[None]] = set()
        self._chunk_sent = Signal("stream.chunk_sent")
        self._flush_failed = Signal("stream.flush_failed")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def count(self) -> int:
        """Number of fragments drained from the queue so far."""
        return self._count

    @property
    def sequence(self) -> int:
        """Sequence number the next chunk will carry."""
        return self._sequence

    @property
    def stream_id(self) -> str | None:
        return self._stream_id

    @property
    def text(self) -> str:
        return self._text

    def emit(self, fragment: Fragment) -> None:
        """Queue one fragment and restart the debounce timer."""

        if self._closed:
            raise StreamClosedError("cannot emit into a closed stream")
        activity = MessageActivity(text=fragment) if isinstance(fragment, str) else fragment
        self._queue.append(activity)
        self._emitted = True
        self._schedule_flush()

    def update(self, text: str) -> None:
        """Emit an informative progress update (never part of the final text)."""

        self.emit(TypingActivity(text=text, channel_data=ChannelData(stream_type=StreamType.INFORMATIVE)))

    def on_chunk(self, handler: Callable[[ActivityBase], Any]) -> Unsubscribe:
        """Observe every chunk and the final message as returned by the channel."""

        async def _receiver(sender: Any, *, activity: ActivityBase) -> None:
            try:
                value = handler(activity)
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning("stream.chunk_listener_failed stream_id={}", self._stream_id)

        self._chunk_sent.connect(_receiver, weak=False)
        return lambda: self._chunk_sent.disconnect(_receiver)

    def on_flush_error(self, handler: Callable[[Exception], Any]) -> Unsubscribe:
        """Observe flushes that failed after exhausting their retries."""

        async def _receiver(sender: Any, *, error: Exception) -> None:
            try:
                value = handler(error)
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning("stream.error_listener_failed stream_id={}", self._stream_id)

        self._flush_failed.connect(_receiver, weak=False)
        return lambda: self._flush_failed.disconnect(_receiver)

    async def close(self) -> ActivityBase | None:
        """Wait for pending flushes, then send and return the final message.

        Returns ``None`` when nothing was ever emitted. Later calls return the
        cached final message without sending again.
        """

        async with self._close_lock:
            if self._result is not None:
                return self._result
            if not self._emitted:
                return None

            while self._queue or self._timer is not None or self._flushes or self._lock.locked():
                await asyncio.sleep(self._close_poll_seconds)
            self._closed = True

            if not self._text and not self._attachments:
                self._text = NO_CONTENT_TEXT

            activity = MessageActivity(text=self._text, attachments=list(self._attachments))
            activity.with_id(self._stream_id)
            activity.with_channel_data(self._channel_data)
            activity.add_entity(*self._entities)
            activity.add_stream_final(self._stream_id)

            sent = await self._send_with_retry(activity)
            await self._chunk_sent.send_async(self, activity=sent)
            self._result = sent
            logger.debug("stream.closed stream_id={} chunks={}", self._stream_id, self._sequence - 1)
            return sent

    def cancel(self) -> None:
        """Drop pending work; the stream accepts no further fragments."""

        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for task in list(self._flushes):
            task.cancel()
        self._queue.clear()

    def _schedule_flush(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._debounce_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self._flush())
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def _flush(self) -> None:
        if not self._queue:
            return

        async with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

            informative: list[ActivityBase] = []
            drained = 0
            while drained < self._batch_size and self._queue:
                activity = self._queue.popleft()
                if isinstance(activity, MessageActivity):
                    self._text += activity.text
                    self._attachments.extend(activity.attachments)
                    self._entities.extend(activity.entities)
                if activity.channel_data is not None:
                    self._channel_data = self._channel_data.merge(activity.channel_data)
                # once real text has started, progress updates are no longer shown
                if is_informative(activity) and not self._text:
                    informative.append(activity)
                drained += 1
                self._count += 1

            if drained == 0:
                return

            try:
                for update in informative:
                    await self._send_chunk(update)
                if self._text:
                    await self._send_chunk(TypingActivity(text=self._text))
            except Exception as error:
                logger.opt(exception=error).warning(
                    "stream.flush_failed stream_id={} sequence={}",
                    self._stream_id,
                    self._sequence,
                )
                await self._flush_failed.send_async(self, error=error)

            if self._queue:
                self._schedule_flush()

    async def _send_chunk(self, activity: ActivityBase) -> None:
        if self._stream_id is not None:
            activity.with_id(self._stream_id)
        activity.add_stream_update(self._sequence, self._stream_id)

        sent = await self._send_with_retry(activity)
        await self._chunk_sent.send_async(self, activity=sent)
        if self._stream_id is None:
            self._stream_id = sent.id
        self._sequence += 1

    async def _send_with_retry(self, activity: ActivityBase) -> ActivityBase:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_delay_seconds, max=self._retry_max_delay_seconds),
            before_sleep=_log_retry,
            reraise=True,
        )
        return await retrying(self._send, activity)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome is not None else None
    logger.warning("stream.send_retry attempt={} error={!r}", retry_state.attempt_number, error)
