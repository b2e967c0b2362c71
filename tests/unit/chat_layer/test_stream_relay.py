"""
Unit Tests for StreamRelay and StreamSession

Tests the accumulation rules (cumulative, never shrinking deltas; adopt a
longer restatement), terminal-frame uniqueness, transport buffering, the
background notices and client disconnect handling.
"""

import asyncio

import pytest

from src.chat.models.frames import OutboundFrame
from src.chat.services.stream_relay import (
    AnswerAccumulator,
    QueueFrameSink,
    SessionState,
    StreamRelay,
)
from src.core.exceptions import StreamClosedError, UpstreamStreamError
from src.upstream.fake_client import completed, delta, error, follow_up, session_completed, terminal
from tests.test_fixtures import answers, drain_sink, iterate, kinds


def _final(answer: str = "") -> OutboundFrame:
    return OutboundFrame.final_answer(
        answer=answer,
        conversation_id="conv-1",
        user_id="u-1",
        message_id="msg-1",
        follow_up_questions=[],
        follow_up_source="none",
    )


async def _relay_and_finish(relay: StreamRelay, events, delay: float = 0.0):
    sink = QueueFrameSink()
    session = relay.open_session(sink)
    async with session:
        outcome = await relay.relay(session, iterate(events, delay))
        await session.finish(_final(outcome.answer))
    frames = await drain_sink(sink)
    return outcome, frames, session


@pytest.mark.unit
class TestAnswerAccumulator:
    def test_fragments_are_concatenated(self):
        acc = AnswerAccumulator()
        for fragment in ["Hel", "lo", "", " world"]:
            acc.append(fragment)

        assert acc.text == "Hello world"
        assert len(acc) == 11

    def test_longer_restatement_is_adopted(self):
        acc = AnswerAccumulator()
        acc.append("Hello")

        assert acc.adopt_restatement("Hello world!") is True
        assert acc.text == "Hello world!"

    def test_shorter_restatement_is_ignored(self):
        acc = AnswerAccumulator()
        acc.append("Hello world")

        assert acc.adopt_restatement("Hello") is False
        assert acc.text == "Hello world"

    def test_shaping_removes_image_boilerplate(self):
        acc = AnswerAccumulator()
        acc.append("Here you go.\n已为你生成一张猫的图片。")

        assert acc.shaped() == "Here you go."

    def test_restatement_longer_only_by_boilerplate_is_ignored(self):
        acc = AnswerAccumulator()
        acc.append("Answer text here")

        assert acc.adopt_restatement("Answer\nI've already generated an image of a cat for you.") is False
        assert acc.shaped() == "Answer text here"


@pytest.mark.unit
class TestRelayAccumulation:
    @pytest.mark.asyncio
    async def test_deltas_carry_cumulative_text_and_restatement_wins(self, fast_relay):
        outcome, frames, _ = await _relay_and_finish(
            fast_relay,
            [delta("Hel"), delta("lo wor"), delta("ld"), completed("Hello world!"), terminal()],
        )

        assert answers(frames) == ["Hel", "Hello wor", "Hello world"]
        assert outcome.answer == "Hello world!"
        assert outcome.delta_count == 3
        assert outcome.completed is True
        assert answers(frames, "final-answer") == ["Hello world!"]

    @pytest.mark.asyncio
    async def test_delta_length_never_decreases_under_shaping(self, fast_relay):
        outcome, frames, _ = await _relay_and_finish(
            fast_relay,
            [
                delta("Done.\n"),
                delta("已为你生成一张"),
                delta("猫的图片。"),
                delta("\nAnything else?"),
                terminal(),
            ],
        )

        lengths = [len(a) for a in answers(frames)]
        assert lengths == sorted(lengths)
        assert "图片" not in outcome.answer
        assert outcome.answer.endswith("Anything else?")

    @pytest.mark.asyncio
    async def test_final_answer_never_shorter_than_last_delta(self, fast_relay):
        outcome, frames, _ = await _relay_and_finish(
            fast_relay,
            [
                delta("Answer text here"),
                completed("Answer\nI've already generated an image of a cat for you."),
                terminal(),
            ],
        )

        assert answers(frames) == ["Answer text here"]
        assert answers(frames, "final-answer") == ["Answer text here"]
        assert len(outcome.answer) >= len(answers(frames)[-1])

    @pytest.mark.asyncio
    async def test_non_answer_messages_are_not_relayed(self, fast_relay):
        outcome, frames, _ = await _relay_and_finish(
            fast_relay,
            [
                delta("thinking...", message_type="verbose"),
                delta("Answer"),
                follow_up("What next?", "  "),
                session_completed("conv-9", "chat-9"),
                terminal(),
            ],
        )

        assert answers(frames) == ["Answer"]
        assert outcome.stream_follow_ups == ["What next?"]
        assert outcome.conversation_id == "conv-9"
        assert outcome.chat_id == "chat-9"

    @pytest.mark.asyncio
    async def test_stream_exhaustion_without_terminal_ends_relay(self, fast_relay):
        outcome, frames, _ = await _relay_and_finish(fast_relay, [delta("partial")])

        assert outcome.completed is False
        assert outcome.answer == "partial"
        assert kinds(frames)[-1] == "final-answer"

    @pytest.mark.asyncio
    async def test_upstream_error_event_raises(self, fast_relay):
        sink = QueueFrameSink()
        session = fast_relay.open_session(sink)

        async with session:
            with pytest.raises(UpstreamStreamError) as exc_info:
                await fast_relay.relay(session, iterate([delta("Hel"), error("quota exceeded", 4011)]))
            await session.fail(OutboundFrame.error(exc_info.value.error_code, exc_info.value.message))

        frames = await drain_sink(sink)
        assert kinds(frames) == ["connected", "delta-answer", "error"]
        assert frames[-1][1]["code"] == "UPSTREAM_STREAM_ERROR"


@pytest.mark.unit
class TestSessionTermination:
    @pytest.mark.asyncio
    async def test_exactly_one_terminal_frame(self, fast_relay):
        sink = QueueFrameSink()
        session = fast_relay.open_session(sink)

        async with session:
            assert await session.finish(_final("first")) is True
            assert await session.finish(_final("second")) is False
            assert await session.fail(OutboundFrame.error("X", "late")) is False
            assert await session.send(OutboundFrame.delta_answer("late")) is False

        frames = await drain_sink(sink)
        assert kinds(frames) == ["connected", "final-answer"]
        assert session.state == SessionState.CLOSED
        assert session.closed is True

    @pytest.mark.asyncio
    async def test_terminal_frames_cannot_be_sent_as_regular_frames(self, fast_relay):
        session = fast_relay.open_session(QueueFrameSink())

        async with session:
            with pytest.raises(ValueError):
                await session.send(_final())
            with pytest.raises(ValueError):
                await session.finish(OutboundFrame.delta_answer("x"))

    @pytest.mark.asyncio
    async def test_exit_without_terminal_still_closes_transport(self, fast_relay, mock_metrics):
        sink = QueueFrameSink()

        async with fast_relay.open_session(sink) as session:
            await session.send(OutboundFrame.delta_answer("x"))

        assert sink.closed is True
        assert kinds(await drain_sink(sink)) == ["connected", "delta-answer"]
        mock_metrics.increment_streams.assert_called_once()
        mock_metrics.decrement_streams.assert_called_once()


@pytest.mark.unit
class TestSessionBuffering:
    @pytest.mark.asyncio
    async def test_small_frames_are_flushed_by_the_timer(self, mock_metrics):
        relay = StreamRelay(
            buffer_size=64 * 1024,
            flush_interval=0.01,
            heartbeat_interval=60.0,
            processing_interval=60.0,
            close_grace=0.0,
            disconnect_grace=0.0,
            metrics=mock_metrics,
        )
        sink = QueueFrameSink()

        async with relay.open_session(sink) as session:
            await session.send(OutboundFrame.delta_answer("a"))
            await session.send(OutboundFrame.delta_answer("ab"))
            # connected frame only, the deltas are still buffered
            assert sink._queue.qsize() == 1
            await asyncio.sleep(0.05)
            assert sink._queue.qsize() == 2

        frames = await drain_sink(sink)
        assert answers(frames) == ["a", "ab"]

    @pytest.mark.asyncio
    async def test_buffer_is_flushed_once_byte_threshold_is_reached(self, mock_metrics):
        relay = StreamRelay(
            buffer_size=100,
            flush_interval=60.0,
            heartbeat_interval=60.0,
            processing_interval=60.0,
            close_grace=0.0,
            disconnect_grace=0.0,
            metrics=mock_metrics,
        )
        sink = QueueFrameSink()

        async with relay.open_session(sink) as session:
            await session.send(OutboundFrame.delta_answer("a"))
            assert sink._queue.qsize() == 1

            await session.send(OutboundFrame.delta_answer("a" * 200))
            # both buffered frames leave in a single write
            assert sink._queue.qsize() == 2

        frames = await drain_sink(sink)
        assert answers(frames) == ["a", "a" * 200]

    @pytest.mark.asyncio
    async def test_frames_are_delivered_in_send_order(self, fast_relay):
        sink = QueueFrameSink()

        async with fast_relay.open_session(sink) as session:
            for i in range(1, 6):
                await session.send(OutboundFrame.delta_answer("x" * i))
            await session.finish(_final("xxxxx"))

        frames = await drain_sink(sink)
        assert answers(frames) == ["x", "xx", "xxx", "xxxx", "xxxxx"]


@pytest.mark.unit
class TestBackgroundNotices:
    @pytest.mark.asyncio
    async def test_processing_notices_until_first_delta(self, mock_metrics):
        relay = StreamRelay(
            buffer_size=1,
            flush_interval=0.01,
            heartbeat_interval=60.0,
            processing_interval=0.02,
            close_grace=0.0,
            disconnect_grace=0.0,
            metrics=mock_metrics,
        )

        _, frames, _ = await _relay_and_finish(relay, [delta("Hi"), delta(" there"), terminal()], delay=0.07)

        sequence = kinds(frames)
        first_delta = sequence.index("delta-answer")
        assert "processing" in sequence[:first_delta]
        assert "processing" not in sequence[first_delta:]

    @pytest.mark.asyncio
    async def test_heartbeats_while_streaming(self, mock_metrics):
        relay = StreamRelay(
            buffer_size=1,
            flush_interval=0.01,
            heartbeat_interval=0.02,
            processing_interval=60.0,
            close_grace=0.0,
            disconnect_grace=0.0,
            metrics=mock_metrics,
        )

        _, frames, session = await _relay_and_finish(relay, [delta("Hi"), terminal()], delay=0.08)

        heartbeats = [data for event, data in frames if event == "heartbeat"]
        assert heartbeats
        assert heartbeats[0]["status"] == "alive"
        assert heartbeats[0]["session_id"] == session.session_id
        assert kinds(frames)[-1] == "final-answer"

    @pytest.mark.asyncio
    async def test_no_heartbeats_while_finalizing(self, mock_metrics):
        relay = StreamRelay(
            buffer_size=1,
            flush_interval=0.01,
            heartbeat_interval=0.01,
            processing_interval=60.0,
            close_grace=0.1,
            disconnect_grace=0.0,
            metrics=mock_metrics,
        )
        sink = QueueFrameSink()

        async with relay.open_session(sink) as session:
            finishing = asyncio.create_task(session.finish(_final("done")))
            await asyncio.sleep(0.05)
            assert session.state == SessionState.FINALIZING
            assert await finishing is True

        assert kinds(await drain_sink(sink)) == ["connected", "final-answer"]


@pytest.mark.unit
class TestSessionClosing:
    @pytest.fixture
    def slow_close_relay(self, mock_metrics):
        return StreamRelay(
            buffer_size=1,
            flush_interval=0.01,
            heartbeat_interval=60.0,
            processing_interval=60.0,
            close_grace=5.0,
            disconnect_grace=0.0,
            metrics=mock_metrics,
        )

    @pytest.mark.asyncio
    async def test_fail_closes_without_close_grace(self, slow_close_relay):
        sink = QueueFrameSink()

        async with slow_close_relay.open_session(sink) as session:
            assert await asyncio.wait_for(session.fail(OutboundFrame.error("X", "boom")), timeout=0.5) is True
            assert session.closed is True

        assert kinds(await drain_sink(sink)) == ["connected", "error"]

    @pytest.mark.asyncio
    async def test_finish_waits_close_grace(self, slow_close_relay):
        session = slow_close_relay.open_session(QueueFrameSink())

        async with session:
            finishing = asyncio.create_task(session.finish(_final("done")))
            await asyncio.sleep(0.05)
            assert session.closed is False
            finishing.cancel()
            await asyncio.gather(finishing, return_exceptions=True)


@pytest.mark.unit
class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_stops_relay_and_closes_upstream(self, fast_relay):
        upstream_closed = asyncio.Event()

        async def endless():
            try:
                yield delta("Hel")
                await asyncio.sleep(10)
                yield delta("lo")
            finally:
                upstream_closed.set()

        sink = QueueFrameSink()
        session = fast_relay.open_session(sink)

        async with session:
            relay_task = asyncio.create_task(fast_relay.relay(session, endless()))
            await asyncio.sleep(0.02)
            sink.mark_disconnected()
            outcome = await asyncio.wait_for(relay_task, timeout=1.0)

        assert outcome.disconnected is True
        assert outcome.answer == "Hel"
        assert upstream_closed.is_set()
        assert "final-answer" not in kinds(await drain_sink(sink))

    @pytest.mark.asyncio
    async def test_write_after_close_raises(self):
        sink = QueueFrameSink()
        await sink.close()

        with pytest.raises(StreamClosedError):
            await sink.write("data: x\n\n")

    @pytest.mark.asyncio
    async def test_reaching_end_of_closed_sink_is_not_a_disconnect(self):
        sink = QueueFrameSink()
        await sink.close()

        sink.mark_disconnected()

        assert sink.disconnected.is_set() is False
