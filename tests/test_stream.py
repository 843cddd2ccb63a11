from __future__ import annotations

import asyncio

import pytest
from conftest import FakeSender

from palaver.activities import ActivityBase, Attachment, Entity, MessageActivity, StreamType, TypingActivity
from palaver.errors import StreamClosedError
from palaver.stream import NO_CONTENT_TEXT

SETTLE = 0.2


@pytest.mark.asyncio
async def test_emits_within_debounce_window_flush_once(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    stream.emit("Hello ")
    stream.emit("world")
    await asyncio.sleep(SETTLE)

    assert len(sender.activities) == 1
    chunk = sender.activities[0]
    assert isinstance(chunk, TypingActivity)
    assert chunk.text == "Hello world"
    assert chunk.channel_data is not None
    assert chunk.channel_data.stream_type == StreamType.STREAMING
    info = chunk.stream_info()
    assert info is not None
    assert info.stream_sequence == 1

    final = await stream.close()

    assert isinstance(final, MessageActivity)
    assert final.text == "Hello world"
    assert final.id == chunk.id == stream.stream_id
    assert final.channel_data is not None
    assert final.channel_data.stream_type == StreamType.FINAL
    assert len(sender.activities) == 2


@pytest.mark.asyncio
async def test_close_is_idempotent(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    stream.emit("once")
    first = await stream.close()
    sends = len(sender.sent)
    second = await stream.close()

    assert first is second
    assert len(sender.sent) == sends
    assert stream.closed


@pytest.mark.asyncio
async def test_close_without_emits_sends_nothing(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    assert await stream.close() is None
    assert sender.sent == []


@pytest.mark.asyncio
async def test_only_informative_updates_close_with_placeholder(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    stream.update("Thinking...")
    await asyncio.sleep(SETTLE)
    final = await stream.close()

    update, closing = sender.activities
    assert isinstance(update, TypingActivity)
    assert update.text == "Thinking..."
    assert update.channel_data is not None
    assert update.channel_data.stream_type == StreamType.INFORMATIVE
    assert final is not None
    assert final.text == NO_CONTENT_TEXT
    assert closing.text == NO_CONTENT_TEXT


@pytest.mark.asyncio
async def test_chunk_sequence_increases_by_one_and_final_is_marked(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    for fragment in ["a", "b", "c"]:
        stream.emit(fragment)
        await asyncio.sleep(SETTLE)
    final = await stream.close()

    *chunks, closing = sender.activities
    assert [chunk.text for chunk in chunks] == ["a", "ab", "abc"]
    assert [chunk.stream_info().stream_sequence for chunk in chunks] == [1, 2, 3]
    assert all(chunk.stream_info().stream_type == StreamType.STREAMING for chunk in chunks)
    assert {chunk.id for chunk in chunks} == {"sent-1"}
    assert [info.stream_id for info in (chunk.stream_info() for chunk in chunks[1:])] == ["sent-1", "sent-1"]
    assert final is closing
    assert closing.stream_info().stream_type == StreamType.FINAL
    assert stream.sequence == 4


@pytest.mark.asyncio
async def test_send_failure_is_retried(make_stream) -> None:
    sender = FakeSender(failures=1)
    stream = make_stream(sender)

    stream.emit("Hello world")
    await asyncio.sleep(SETTLE)

    assert sender.calls == 2
    assert [activity.text for activity in sender.activities] == ["Hello world"]

    final = await stream.close()

    assert final is not None
    assert final.text == "Hello world"


@pytest.mark.asyncio
async def test_exhausted_retries_keep_accumulated_text(make_stream) -> None:
    sender = FakeSender(failures=10)
    stream = make_stream(sender, retry_attempts=2)
    errors: list[Exception] = []
    stream.on_flush_error(errors.append)

    stream.emit("x")
    await asyncio.sleep(SETTLE)

    assert len(errors) == 1
    assert isinstance(errors[0], ConnectionError)
    assert sender.calls == 2
    assert stream.text == "x"
    assert stream.sequence == 1

    sender.failures = 0
    stream.emit("y")
    await asyncio.sleep(SETTLE)

    assert [activity.text for activity in sender.activities] == ["xy"]
    assert sender.activities[0].stream_info().stream_sequence == 1


@pytest.mark.asyncio
async def test_emit_after_close_is_rejected(make_stream) -> None:
    stream = make_stream(FakeSender())
    stream.emit("done")
    await stream.close()

    with pytest.raises(StreamClosedError):
        stream.emit("late")


@pytest.mark.asyncio
async def test_informative_update_after_text_is_not_sent(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    stream.emit("Hello")
    stream.update("still thinking")
    await asyncio.sleep(SETTLE)

    assert len(sender.activities) == 1
    assert sender.activities[0].text == "Hello"
    assert sender.activities[0].channel_data.stream_type == StreamType.STREAMING


@pytest.mark.asyncio
async def test_informative_update_is_sent_before_first_text(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    stream.update("Searching")
    stream.emit("Found it")
    await asyncio.sleep(SETTLE)

    update, chunk = sender.activities
    assert update.channel_data.stream_type == StreamType.INFORMATIVE
    assert update.stream_info().stream_sequence == 1
    assert chunk.text == "Found it"
    assert chunk.stream_info().stream_sequence == 2
    assert chunk.id == update.id


@pytest.mark.asyncio
async def test_fragments_beyond_batch_cap_flush_again(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender, batch_size=2)

    for fragment in "abcde":
        stream.emit(fragment)
    await asyncio.sleep(SETTLE * 3)

    assert [activity.text for activity in sender.activities] == ["ab", "abcd", "abcde"]
    assert stream.count == 5


@pytest.mark.asyncio
async def test_close_waits_for_pending_flush(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    stream.emit("late")
    final = await stream.close()

    chunk, closing = sender.activities
    assert chunk.text == "late"
    assert isinstance(chunk, TypingActivity)
    assert final is closing
    assert closing.text == "late"


@pytest.mark.asyncio
async def test_chunk_listeners_see_every_send(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)
    seen: list[ActivityBase] = []
    unsubscribe = stream.on_chunk(seen.append)

    stream.emit("hi")
    await stream.close()
    unsubscribe()

    assert seen == sender.activities


@pytest.mark.asyncio
async def test_final_message_carries_attachments_and_entities(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)
    fragment = MessageActivity(text="see card")
    fragment.add_attachment(Attachment(content_type="image/png", content_url="https://img.example/a.png"))
    fragment.add_entity(Entity(type="mention"))

    stream.emit(fragment)
    final = await stream.close()

    assert final is not None
    assert [attachment.content_type for attachment in final.attachments] == ["image/png"]
    assert [entity.type for entity in final.entities] == ["mention", "streaminfo"]


@pytest.mark.asyncio
async def test_cancel_drops_pending_fragments(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    stream.emit("never sent")
    stream.cancel()
    await asyncio.sleep(SETTLE)

    assert sender.sent == []
    assert stream.closed


class HangingSender(FakeSender):
    """Accepts the call and never answers."""

    async def send(self, activity, reference, is_targeted=False):
        self.calls += 1
        await asyncio.Event().wait()
        return activity


@pytest.mark.asyncio
async def test_close_blocked_on_drain_can_be_cancelled(make_stream) -> None:
    sender = HangingSender()
    stream = make_stream(sender)

    stream.emit("stuck")
    await asyncio.sleep(SETTLE)
    assert sender.calls == 1

    closing = asyncio.create_task(stream.close())
    await asyncio.sleep(SETTLE)
    assert not closing.done()

    closing.cancel()
    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(closing, timeout=1)

    stream.cancel()
    await asyncio.sleep(SETTLE)
    assert sender.calls == 1
    assert sender.sent == []


@pytest.mark.asyncio
async def test_close_after_cancel_finalizes_flushed_text(make_stream) -> None:
    sender = FakeSender()
    stream = make_stream(sender)

    stream.emit("kept")
    await asyncio.sleep(SETTLE)
    stream.emit(" dropped")
    stream.cancel()

    with pytest.raises(StreamClosedError):
        stream.emit("late")

    final = await asyncio.wait_for(stream.close(), timeout=1)

    chunk, closing = sender.activities
    assert chunk.text == "kept"
    assert final is closing
    assert closing.text == "kept"
    assert closing.id == chunk.id == stream.stream_id
    assert closing.stream_info().stream_type == StreamType.FINAL
