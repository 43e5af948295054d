"""Tests for the generation stream controller."""
import asyncio

import pytest

from conftest import until
from chatstream.exceptions import NoActiveConversationError, TransportError, UnauthorizedError
from chatstream.frames import ContentFrame, HeartbeatFrame, ReasoningFrame
from chatstream.models import Message
from chatstream.stream_controller import (
    CONNECTION_LOST_MESSAGE,
    DEFAULT_ERROR_MESSAGE,
    TIMED_OUT_MESSAGE,
    GenerationStatus,
    StreamController,
    StreamOptions,
)


def assistant_messages(transcript):
    return [m for m in transcript if m.type == "assistant"]


@pytest.mark.asyncio
async def test_reasoning_then_answer_scenario(controller, channel, state, transcript):
    transcript.append(Message(type="user", content="hi"))
    session = controller.start(7, "hi", StreamOptions(thinking=True))
    conn = await channel.wait_for_connection()

    conn.send(type="reasoning", content="Let")
    conn.send(type="reasoning", content=" me think")
    conn.send(type="token", content="Hello")
    conn.send(type="token", content=" there")
    conn.send(type="finish")
    await controller.wait_closed()

    final = transcript.last
    assert final.type == "assistant"
    assert final.content == "Hello there"
    assert final.reasoning_content == "Let me think"
    assert final.pending is False
    assert final.created_at is not None
    assert session.reasoning_collapsed is True
    assert session.status == GenerationStatus.FINISHED
    assert state.is_generating is False
    assert controller.status_message is None
    assert conn.closed
    assert len(transcript) == 2


@pytest.mark.asyncio
async def test_connection_parameters(controller, channel):
    controller.start(7, "hi", StreamOptions(thinking=True))
    conn = await channel.wait_for_connection()

    assert conn.conversation_id == 7
    assert conn.prompt == "hi"
    assert conn.token == "secret-token"
    assert conn.thinking is True
    controller.stop()


@pytest.mark.asyncio
async def test_error_frame_keeps_partial_content(controller, channel, state, transcript):
    session = controller.start(7, "hi")
    assert state.is_generating is True
    conn = await channel.wait_for_connection()

    conn.send(type="token", content="Part")
    conn.send(type="error", message="rate limited")
    await controller.wait_closed()

    assert transcript.last.content == "Part"
    assert transcript.last.pending is False
    assert state.is_generating is False
    assert controller.status_message == "rate limited"
    assert session.status == GenerationStatus.ERRORED


@pytest.mark.asyncio
async def test_error_frame_without_message_uses_default(controller, channel, transcript):
    controller.start(7, "hi")
    conn = await channel.wait_for_connection()

    conn.send(type="error")
    await controller.wait_closed()

    assert controller.status_message == DEFAULT_ERROR_MESSAGE
    assert transcript.last.content == ""


@pytest.mark.asyncio
async def test_restart_before_any_frame_leaves_single_session(controller, channel, state, transcript):
    transcript.append(Message(type="user", content="hi"))
    first = controller.start(7, "hi")
    second = controller.start(7, "hi")

    assert first.status == GenerationStatus.CANCELLED
    assert second.is_active
    assert second.epoch > first.epoch
    assert controller.session is second
    assert len(assistant_messages(transcript)) == 1
    assert transcript.has_pending_assistant()
    assert state.is_generating is True

    conn = await channel.wait_for_connection()
    conn.send(type="token", content="ok")
    conn.send(type="finish")
    await controller.wait_closed()

    assert [m.content for m in assistant_messages(transcript)] == ["ok"]


@pytest.mark.asyncio
async def test_restart_after_output_keeps_previous_reply(controller, channel, transcript):
    controller.start(7, "one")
    conn = await channel.wait_for_connection()
    conn.send(type="token", content="partial")
    await until(lambda: controller.session.content_buffer == "partial")

    controller.start(7, "two")
    await until(lambda: conn.closed)

    replies = assistant_messages(transcript)
    assert [m.content for m in replies] == ["partial", ""]
    assert replies[0].pending is False
    assert replies[1].pending is True
    controller.stop()


@pytest.mark.asyncio
async def test_stale_epoch_frame_is_ignored(controller, transcript):
    first = controller.start(7, "a")
    stale_epoch = first.epoch
    second = controller.start(7, "b")
    before = [m.model_copy() for m in transcript]

    applied = controller.handle_frame(stale_epoch, ContentFrame(type="token", content="stale"))

    assert applied is False
    assert second.content_buffer == ""
    assert [m.content for m in transcript] == [m.content for m in before]
    controller.stop()


@pytest.mark.asyncio
async def test_late_frames_from_superseded_connection_are_dropped(controller, channel, transcript):
    controller.start(7, "a")
    old = await channel.wait_for_connection(1)
    controller.start(7, "b")
    new = await channel.wait_for_connection(2)

    # The old connection has been cancelled; anything still queued on it is never applied.
    old.send(type="token", content="stale")
    new.send(type="token", content="fresh")
    new.send(type="finish")
    await controller.wait_closed()

    assert transcript.last.content == "fresh"


@pytest.mark.asyncio
async def test_stop_when_idle_is_noop(controller, state, transcript):
    controller.stop()
    controller.stop()

    assert controller.session is None
    assert controller.epoch == 0
    assert state.is_generating is False
    assert len(transcript) == 0


@pytest.mark.asyncio
async def test_stop_is_idempotent(controller, channel, state, transcript):
    ended = []
    controller.add_session_ended_listener(ended.append)
    session = controller.start(7, "hi")
    conn = await channel.wait_for_connection()
    conn.send(type="token", content="so far")
    await until(lambda: session.content_buffer == "so far")

    controller.stop()
    controller.stop()
    await controller.wait_closed()

    assert session.status == GenerationStatus.CANCELLED
    assert ended == [session]
    assert state.is_generating is False
    assert transcript.last.content == "so far"
    assert transcript.last.pending is False
    assert conn.closed


@pytest.mark.asyncio
async def test_buffers_grow_monotonically(controller, channel):
    lengths = []
    controller.add_update_listener(
        lambda s: lengths.append((len(s.reasoning_buffer), len(s.content_buffer)))
    )
    controller.start(7, "hi")
    conn = await channel.wait_for_connection()
    for kind, text in [("reasoning", "a"), ("reasoning", "bc"), ("token", "d"), ("message", ""), ("token", "ef")]:
        conn.send(type=kind, content=text)
    conn.send(type="finish")
    await controller.wait_closed()

    assert len(lengths) == 5
    for earlier, later in zip(lengths, lengths[1:]):
        assert later[0] >= earlier[0]
        assert later[1] >= earlier[1]


@pytest.mark.asyncio
async def test_reasoning_collapse_is_irreversible(controller):
    session = controller.start(7, "hi")
    epoch = session.epoch

    controller.handle_frame(epoch, ReasoningFrame(content="think"))
    assert session.reasoning_collapsed is False
    controller.handle_frame(epoch, ContentFrame(type="token", content="answer"))
    assert session.reasoning_collapsed is True
    controller.handle_frame(epoch, ReasoningFrame(content=" more"))

    assert session.reasoning_collapsed is True
    assert session.reasoning_buffer == "think more"
    controller.stop()


@pytest.mark.asyncio
async def test_no_collapse_without_reasoning(controller):
    session = controller.start(7, "hi")

    controller.handle_frame(session.epoch, ContentFrame(type="message", content="answer"))

    assert session.reasoning_collapsed is False
    assert session.content_buffer == "answer"
    controller.stop()


@pytest.mark.asyncio
async def test_live_entry_tracks_buffers_and_rendering(controller, transcript):
    session = controller.start(7, "hi")

    controller.handle_frame(session.epoch, ContentFrame(type="token", content="**bold"))
    controller.handle_frame(session.epoch, ContentFrame(type="token", content="** text"))

    assert transcript.last is session.message
    assert transcript.last.pending is True
    assert transcript.last.content == "**bold** text"
    assert session.rendered_content == "<p><strong>bold</strong> text</p>"
    controller.stop()


@pytest.mark.asyncio
async def test_heartbeats_and_malformed_lines_do_not_end_session(controller, channel, transcript):
    controller.start(7, "hi")
    conn = await channel.wait_for_connection()

    conn.send(type="heartbeat")
    conn.send_raw("this is not json")
    conn.send_raw('{"type": "bogus"}')
    conn.send_raw("")
    conn.send_raw(": keep-alive")
    conn.send_raw('data: {"conversationId": 7}')
    conn.send_raw('data: {"type": "token", "content": "still here", "done": false}')
    conn.send(type="finish")
    await controller.wait_closed()

    assert transcript.last.content == "still here"
    assert controller.session.status == GenerationStatus.FINISHED


@pytest.mark.asyncio
async def test_disconnect_without_terminal_frame(controller, channel, state, transcript):
    session = controller.start(7, "hi")
    conn = await channel.wait_for_connection()

    conn.send(type="token", content="half an ans")
    conn.end()
    await controller.wait_closed()

    assert session.status == GenerationStatus.ERRORED
    assert controller.status_message == CONNECTION_LOST_MESSAGE
    assert transcript.last.content == "half an ans"
    assert state.is_generating is False


@pytest.mark.asyncio
async def test_transport_error_is_reported_as_connection_lost(controller, channel):
    session = controller.start(7, "hi")
    conn = await channel.wait_for_connection()

    conn.fail(TransportError("socket closed"))
    await controller.wait_closed()

    assert session.status == GenerationStatus.ERRORED
    assert controller.status_message == CONNECTION_LOST_MESSAGE


@pytest.mark.asyncio
async def test_unauthorized_stream_reports_session_expired(controller, channel):
    controller.start(7, "hi")
    conn = await channel.wait_for_connection()

    conn.fail(UnauthorizedError())
    await controller.wait_closed()

    assert controller.status_message == "Session expired"


@pytest.mark.asyncio
async def test_idle_stream_times_out(state, transcript, channel):
    controller = StreamController(state, transcript, channel, idle_timeout=0.05)
    session = controller.start(7, "hi")
    conn = await channel.wait_for_connection()
    conn.send(type="heartbeat")

    await asyncio.wait_for(controller.wait_closed(), timeout=2)

    assert session.status == GenerationStatus.ERRORED
    assert controller.status_message == TIMED_OUT_MESSAGE
    assert state.is_generating is False
    assert conn.closed


@pytest.mark.asyncio
async def test_start_without_active_conversation_is_rejected(controller, state, transcript):
    state.active_conversation_id = None

    with pytest.raises(NoActiveConversationError):
        controller.start(None, "hi")
    with pytest.raises(NoActiveConversationError):
        controller.start(3, "hi")

    assert controller.session is None
    assert controller.epoch == 0
    assert len(transcript) == 0
    assert state.is_generating is False


@pytest.mark.asyncio
async def test_logout_aborts_generation(controller, channel, state, transcript):
    session = controller.start(7, "hi")
    conn = await channel.wait_for_connection()
    conn.send(type="token", content="bye")
    await until(lambda: session.content_buffer == "bye")

    state.clear()
    await controller.wait_closed()

    assert session.status == GenerationStatus.CANCELLED
    assert state.is_generating is False
    assert state.credential is None
    assert transcript.last.content == "bye"
    assert conn.closed


@pytest.mark.asyncio
async def test_frames_after_finish_are_dropped(controller):
    session = controller.start(7, "hi")
    controller.handle_frame(session.epoch, ContentFrame(type="token", content="done"))
    controller.stop()

    assert controller.handle_frame(session.epoch, ContentFrame(type="token", content="!")) is False
    assert controller.handle_frame(session.epoch, HeartbeatFrame()) is False
    assert session.content_buffer == "done"


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_stream(controller, channel, transcript):
    def broken(session):
        raise RuntimeError("listener bug")

    controller.add_update_listener(broken)
    controller.add_session_ended_listener(broken)
    controller.start(7, "hi")
    conn = await channel.wait_for_connection()
    conn.send(type="token", content="fine")
    conn.send(type="finish")
    await controller.wait_closed()

    assert transcript.last.content == "fine"
    assert controller.session.status == GenerationStatus.FINISHED


@pytest.mark.asyncio
async def test_unsubscribed_listener_is_not_called(controller):
    calls = []
    unsubscribe = controller.add_update_listener(calls.append)
    unsubscribe()
    session = controller.start(7, "hi")

    controller.handle_frame(session.epoch, ContentFrame(type="token", content="x"))

    assert calls == []
    controller.stop()


@pytest.mark.asyncio
async def test_stop_settles_state_before_transport_closes(controller, channel, state, transcript):
    session = controller.start(7, "hi")
    conn = await channel.wait_for_connection()
    conn.send(type="token", content="abc")
    await until(lambda: session.content_buffer == "abc")

    controller.stop()

    assert session.status == GenerationStatus.CANCELLED
    assert state.is_generating is False
    assert transcript.last.pending is False
    assert not conn.closed

    await controller.wait_closed()
    assert conn.closed
