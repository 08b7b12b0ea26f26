"""Tests for StreamController: user intents, retries and end-to-end scenarios."""

import asyncio

import pytest

from config import Config
from stream.controller import StreamController
from stream.session import CameraFacing, ConnectionState, SystemNotice
from tests.fakes import FakeWebSocket, drain


@pytest.fixture
def controller(config, source, connector):
    return StreamController(config, source, connector=connector, scheduler_autorun=False)


async def _send_frames(controller, count):
    """Drive the scheduler by hand, one accepted frame per call."""
    now = 1_700_000_000_000
    for _ in range(count):
        task = controller.scheduler.tick(now)
        if task is not None:
            await task
        now += int(controller.scheduler.interval_ms)


class TestStartStop:
    """Start and stop intents."""

    @pytest.mark.asyncio
    async def test_start_sends_start_command(self, controller, connector):
        await controller.open()

        assert await controller.start_analysis() is True

        assert connector.last.sent_json() == [
            {"action": "start_video_stream", "target_fps": 5, "predict_every_frames": 1}
        ]
        assert controller.session.analysis_active
        assert controller.scheduler.running
        assert controller.scheduler.fps == 5
        await controller.close()

    @pytest.mark.asyncio
    async def test_start_connects_when_needed(self, controller, connector):
        assert await controller.start_analysis() is True
        assert connector.calls == 1
        assert controller.connection.state is ConnectionState.CONNECTED
        await controller.close()

    @pytest.mark.asyncio
    async def test_start_while_streaming_is_rejected(self, controller, connector):
        await controller.start_analysis()
        await _send_frames(controller, 3)

        assert await controller.start_analysis() is False
        assert controller.session.frame_count == 3
        assert len([m for m in connector.last.sent_json() if m.get("action") == "start_video_stream"]) == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_frame_count_resets_on_each_start(self, controller):
        await controller.start_analysis()
        await _send_frames(controller, 4)
        await controller.stop_analysis()

        await controller.start_analysis()

        assert controller.session.frame_count == 0
        await _send_frames(controller, 1)
        assert controller.session.frame_count == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_stop_sends_stop_command(self, controller, connector):
        await controller.start_analysis()

        assert await controller.stop_analysis() is True

        assert connector.last.sent_json()[-1] == {"action": "stop_video_stream"}
        assert not controller.session.analysis_active
        assert not controller.scheduler.running
        assert controller.session.status == "Ready for analysis"
        await controller.close()

    @pytest.mark.asyncio
    async def test_stop_when_idle_is_noop(self, controller, connector):
        await controller.open()
        status = controller.session.status

        assert await controller.stop_analysis() is False

        assert connector.last.sent == []
        assert controller.session.status == status
        await controller.close()


class TestReconnect:
    """Caller-driven retry of a failed start."""

    @pytest.mark.asyncio
    async def test_failed_connect_schedules_one_retry_after_one_second(
        self, controller, connector
    ):
        connector.fail = True
        loop = asyncio.get_running_loop()

        assert await controller.start_analysis() is False

        handle = controller.pending_retry
        assert handle is not None
        assert handle.when() - loop.time() == pytest.approx(1.0, abs=0.05)
        assert connector.calls == 1
        assert controller.connection.state is ConnectionState.DISCONNECTED
        await controller.close()

    @pytest.mark.asyncio
    async def test_open_failure_is_not_retried(self, controller, connector):
        connector.fail = True

        assert await controller.open() is False
        assert controller.pending_retry is None
        await controller.close()

    @pytest.mark.asyncio
    async def test_retry_starts_stream_once_server_is_back(self, source, connector):
        config = Config(reconnect_delay_seconds=0.01, fps_settle_seconds=0.01)
        controller = StreamController(config, source, connector=connector, scheduler_autorun=False)
        connector.fail = True
        await controller.start_analysis()

        connector.fail = False
        await asyncio.sleep(0.05)
        await drain()

        assert connector.calls == 2
        assert controller.session.analysis_active
        assert controller.pending_retry is None
        await controller.close()

    @pytest.mark.asyncio
    async def test_retries_back_off_and_give_up(self, source, connector):
        config = Config(
            reconnect_delay_seconds=0.01,
            reconnect_max_delay_seconds=0.02,
            reconnect_max_attempts=2,
        )
        controller = StreamController(config, source, connector=connector, scheduler_autorun=False)
        connector.fail = True
        loop = asyncio.get_running_loop()

        await controller.start_analysis()
        assert controller.pending_retry.when() - loop.time() == pytest.approx(0.01, abs=0.005)

        await asyncio.sleep(0.2)
        await drain()

        assert connector.calls == 3
        assert controller.pending_retry is None
        assert controller.session.status == "Connection failed - tap to retry"
        await controller.close()

    @pytest.mark.asyncio
    async def test_overlapping_starts_leave_no_retry(self, source):
        gate = asyncio.Event()
        calls = []

        async def slow_connector(url):
            calls.append(url)
            await gate.wait()
            return FakeWebSocket()

        controller = StreamController(
            Config(), source, connector=slow_connector, scheduler_autorun=False
        )
        first = asyncio.create_task(controller.start_analysis())
        await drain()

        assert await controller.start_analysis() is False
        assert controller.pending_retry is None

        gate.set()
        assert await first is True
        assert controller.pending_retry is None
        assert len(calls) == 1
        await controller.close()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_retry(self, controller, connector):
        connector.fail = True
        await controller.start_analysis()
        handle = controller.pending_retry

        await controller.stop_analysis()

        assert handle.cancelled()
        assert controller.pending_retry is None
        await controller.close()


class TestInbound:
    """Server messages flowing into the session."""

    @pytest.mark.asyncio
    async def test_twelve_alternating_predictions(self, controller, connector):
        await controller.start_analysis()

        for i in range(12):
            connector.last.feed({
                "type": "prediction",
                "predicted_class": "cavity" if i % 2 == 0 else "healthy",
                "confidence": 0.6 + i / 100,
            })
        await drain(40)

        session = controller.session
        assert len(session.history) == 12
        assert [p.label for p in session.history] == ["cavity", "healthy"] * 6
        assert session.current_prediction is session.history[-1]
        assert session.current_prediction.label == "healthy"
        assert session.current_prediction.confidence == pytest.approx(0.71)
        await controller.close()

    @pytest.mark.asyncio
    async def test_server_error_keeps_streaming(self, controller, connector):
        await controller.start_analysis()

        connector.last.feed({"type": "error", "message": "model unavailable"})
        await drain()

        session = controller.session
        assert session.status == "Error: model unavailable"
        assert len(session.history) == 1
        assert isinstance(session.history[0], SystemNotice)
        assert session.analysis_active is True
        assert controller.scheduler.running
        await controller.close()

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_messages_are_dropped(self, controller, connector):
        await controller.start_analysis()

        connector.last.feed("{not json")
        connector.last.feed({"type": "heartbeat"})
        connector.last.feed({"action": "ack", "frame_count": 10})
        connector.last.feed({"msg_type": "STATUS", "message": "model loaded"})
        await drain(40)

        session = controller.session
        assert [entry.text for entry in session.history] == ["model loaded"]
        assert session.analysis_active
        await controller.close()

    @pytest.mark.asyncio
    async def test_deeply_nested_frame_does_not_stop_receiving(self, controller, connector):
        await controller.start_analysis()

        connector.last.feed("[" * 200_000)
        connector.last.feed({"type": "status", "message": "still alive"})
        await drain(40)

        assert [entry.text for entry in controller.session.history] == ["still alive"]
        assert controller.connection.is_connected

        connector.last.drop()
        await drain()
        assert controller.connection.state is ConnectionState.DISCONNECTED
        assert not controller.scheduler.running
        await controller.close()


class TestConnectionLoss:
    """Socket closes mid-stream."""

    @pytest.mark.asyncio
    async def test_socket_close_mid_stream(self, controller, connector):
        await controller.start_analysis()
        await _send_frames(controller, 3)
        websocket = connector.last
        sent_before = len(websocket.sent)

        websocket.drop()
        await drain()

        assert controller.connection.state is ConnectionState.DISCONNECTED
        assert controller.session.analysis_active is False
        assert controller.session.current_prediction is None
        assert not controller.scheduler.running

        assert controller.scheduler.tick(1_800_000_000_000) is None
        assert await controller.stop_analysis() is False
        assert len(websocket.sent) == sent_before
        await controller.close()


class TestRateAndCamera:
    """Frame rate changes, camera facing and history clearing."""

    @pytest.mark.asyncio
    async def test_set_fps_while_streaming_restarts_scheduler(self, controller):
        await controller.start_analysis()

        await controller.set_target_fps(10)

        assert controller.session.target_fps == 10
        assert controller.scheduler.running
        assert controller.scheduler.fps == 10
        assert controller.session.status == "Streaming video (10 FPS)..."
        assert controller.session.analysis_active
        await controller.close()

    @pytest.mark.asyncio
    async def test_set_fps_while_idle_only_records_rate(self, controller):
        await controller.open()

        await controller.set_target_fps(3)

        assert controller.session.target_fps == 3
        assert not controller.scheduler.running
        await controller.close()

    @pytest.mark.asyncio
    async def test_overlapping_fps_changes_latest_wins(self, controller):
        await controller.start_analysis()

        await asyncio.gather(controller.set_target_fps(8), controller.set_target_fps(10))

        assert controller.scheduler.running
        assert controller.scheduler.fps == 10
        await controller.close()

    @pytest.mark.asyncio
    async def test_fps_change_after_stop_does_not_restart(self, controller):
        await controller.start_analysis()

        change = asyncio.create_task(controller.set_target_fps(8))
        await drain()
        await controller.stop_analysis()
        await change

        assert not controller.scheduler.running
        await controller.close()

    @pytest.mark.asyncio
    async def test_invalid_fps(self, controller):
        with pytest.raises(ValueError):
            await controller.set_target_fps(60)

    @pytest.mark.asyncio
    async def test_toggle_fps_cycles(self, controller):
        assert [await controller.toggle_fps() for _ in range(4)] == [8, 10, 3, 5]

    def test_toggle_facing(self, controller, source):
        assert controller.toggle_facing() is CameraFacing.BACK
        assert source.facing is CameraFacing.BACK
        assert controller.session.facing is CameraFacing.BACK

    @pytest.mark.asyncio
    async def test_clear_history(self, controller, connector):
        await controller.start_analysis()
        connector.last.feed({"type": "prediction", "predicted_class": "cavity", "confidence": 0.8})
        await drain()

        controller.clear_history()

        assert len(controller.session.history) == 0
        assert controller.session.total_predictions == 0
        assert controller.session.current_prediction is None
        await controller.close()


class TestClose:
    """Teardown."""

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self, controller, connector):
        await controller.start_analysis()
        websocket = connector.last

        await controller.close()
        await controller.close()

        assert controller.token.cancelled
        assert websocket.closed
        assert controller.connection.state is ConnectionState.DISCONNECTED
        assert not controller.scheduler.running
        assert await controller.start_analysis() is False

    @pytest.mark.asyncio
    async def test_close_cancels_pending_retry(self, controller, connector):
        connector.fail = True
        await controller.start_analysis()
        handle = controller.pending_retry

        await controller.close()

        assert handle.cancelled()
        assert controller.pending_retry is None

    @pytest.mark.asyncio
    async def test_no_mutation_after_close(self, controller, connector):
        await controller.start_analysis()
        websocket = connector.last
        await controller.close()
        history_before = list(controller.session.history)

        controller._dispatch('{"type": "status", "message": "late"}')
        websocket.feed({"type": "status", "message": "late"})
        await drain()

        assert list(controller.session.history) == history_before
