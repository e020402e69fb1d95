"""Tests for event delivery handlers."""

import io
import json
from unittest.mock import MagicMock, patch
from urllib.error import HTTPError, URLError

import pytest

from protocol_app.config.defaults import TimerParams
from protocol_app.config.event_delivery import (
    DisplayDeliveryConfig,
    FileDeliveryConfig,
    HttpDeliveryConfig,
    StdoutDeliveryConfig,
)
from protocol_app.delivery.base import (
    BaseEventDelivery,
    DeliveryResult,
    DeliveryStatus,
    EventDeliveryPermanentError,
    EventDeliveryRetryableError,
)
from protocol_app.delivery.display import DisplayEventDelivery, DisplayStateCache
from protocol_app.delivery.file_delivery import FileEventDelivery
from protocol_app.delivery.http_delivery import HttpEventDelivery
from protocol_app.delivery.stdout_delivery import StdoutEventDelivery
from protocol_app.delivery.timer import TimerEventDelivery, build_timer_request


def started_event(run_id="r1", owner_id="kelly"):
    return {
        "event": "run_started",
        "event_id": "e-start",
        "run_id": run_id,
        "owner_id": owner_id,
        "timestamp": "2024-03-01T07:30:00+00:00",
        "protocol_name": "red light",
        "step_index": 0,
        "first_step": {"label": "neck", "duration_minutes": 3},
        "total_duration_minutes": 14,
    }


def advanced_event(index, label="cheek", minutes=3, run_id="r1"):
    return {
        "event": "step_advanced",
        "event_id": f"e-{index}",
        "run_id": run_id,
        "owner_id": "kelly",
        "timestamp": "2024-03-01T07:33:00+00:00",
        "step_index": index,
        "step": {"label": label, "duration_minutes": minutes},
    }


def terminal_event(kind="run_completed", run_id="r1"):
    return {
        "event": kind,
        "event_id": f"e-{kind}",
        "run_id": run_id,
        "owner_id": "kelly",
        "timestamp": "2024-03-01T07:44:00+00:00",
    }


class FlakyDelivery(BaseEventDelivery):
    """Fails a fixed number of times before succeeding."""

    def __init__(self, failures, error=EventDeliveryRetryableError):
        super().__init__("flaky", None)
        self.failures = failures
        self.error = error
        self.calls = 0

    def deliver(self, events):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("temporary outage")
        return [DeliveryResult(status=DeliveryStatus.SUCCESS) for _ in events]

    def health_check(self):
        return True


class TestDeliverWithRetry:
    """Test retry classification in the base class."""

    def test_succeeds_after_retryable_errors(self):
        handler = FlakyDelivery(failures=2)
        result = handler.deliver_with_retry([started_event()], max_retries=2)[0]

        assert result.status is DeliveryStatus.SUCCESS
        assert result.attempt_count == 3
        assert handler.get_stats()["delivered"] == 1

    def test_dead_letter_after_max_retries(self):
        handler = FlakyDelivery(failures=5)
        result = handler.deliver_with_retry([started_event()], max_retries=1)[0]

        assert result.status is DeliveryStatus.DEAD_LETTER
        assert result.attempt_count == 2
        assert handler.calls == 2

    def test_permanent_error_is_not_retried(self):
        handler = FlakyDelivery(failures=5, error=EventDeliveryPermanentError)
        result = handler.deliver_with_retry([started_event()], max_retries=3)[0]

        assert result.status is DeliveryStatus.FAILED
        assert handler.calls == 1

    def test_results_keyed_on_event_id(self):
        handler = FlakyDelivery(failures=0)
        results = handler.deliver_with_retry([started_event(), advanced_event(1)])

        assert [r.event_id for r in results] == ["e-start", "e-1"]

    def test_failed_event_id_in_stats(self):
        handler = FlakyDelivery(failures=5)
        result = handler.deliver_with_retry([advanced_event(2)], max_retries=0)[0]

        assert result.event_id == "e-2"
        assert handler.get_stats()["failed"] == 1
        assert handler.get_stats()["last_failed_event_id"] == "e-2"

    def test_reset_stats(self):
        handler = FlakyDelivery(failures=0)
        handler.deliver_with_retry([started_event()])
        handler.reset_stats()
        assert handler.get_stats()["delivered"] == 0
        assert handler.get_stats()["success_rate"] == 0.0


class TestFileDelivery:
    """Test file output."""

    def test_jsonl_appends(self, tmp_path):
        path = tmp_path / "events" / "runs.jsonl"
        handler = FileEventDelivery("file", FileDeliveryConfig(output_path=str(path)))

        handler.deliver([started_event()])
        handler.deliver([terminal_event()])

        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert [line["event"] for line in lines] == ["run_started", "run_completed"]

    def test_json_array(self, tmp_path):
        path = tmp_path / "runs.json"
        handler = FileEventDelivery("file", FileDeliveryConfig(output_path=str(path), format="json"))

        handler.deliver([started_event()])
        handler.deliver([terminal_event()])

        assert len(json.loads(path.read_text())) == 2

    def test_json_array_skips_logged_event_ids(self, tmp_path):
        path = tmp_path / "runs.json"
        handler = FileEventDelivery("file", FileDeliveryConfig(output_path=str(path), format="json"))

        handler.deliver([started_event()])
        results = handler.deliver([started_event(), advanced_event(1)])

        logged = json.loads(path.read_text())
        assert [entry["event_id"] for entry in logged] == ["e-start", "e-1"]
        assert [r.message for r in results] == ["Already logged", str(path)]

    def test_corrupt_json_array_fails(self, tmp_path):
        path = tmp_path / "runs.json"
        path.write_text("{\"not\": \"a list\"}")
        handler = FileEventDelivery("file", FileDeliveryConfig(output_path=str(path), format="json"))

        result = handler.deliver([started_event()])[0]

        assert result.status is DeliveryStatus.FAILED
        assert result.event_id == "e-start"

    def test_unsupported_format(self, tmp_path):
        with pytest.raises(EventDeliveryPermanentError):
            FileEventDelivery("file", FileDeliveryConfig(output_path=str(tmp_path / "x"), format="csv"))

    def test_health_check(self, tmp_path):
        handler = FileEventDelivery("file", FileDeliveryConfig(output_path=str(tmp_path / "x.jsonl")))
        assert handler.health_check()


class TestStdoutDelivery:
    """Test stdout output."""

    def test_json_output(self, capsys):
        handler = StdoutEventDelivery("stdout", StdoutDeliveryConfig(include_timestamp=False))
        results = handler.deliver([started_event()])

        assert results[0].status is DeliveryStatus.SUCCESS
        assert json.loads(capsys.readouterr().out.strip())["run_id"] == "r1"

    def test_pretty_output(self, capsys):
        handler = StdoutEventDelivery("stdout", StdoutDeliveryConfig(format="pretty"))
        handler.deliver([started_event()])

        out = capsys.readouterr().out
        assert "RUN_STARTED" in out
        assert "neck for 3 min" in out


class TestHttpDelivery:
    """Test HTTP POST delivery with urllib mocked."""

    def setup_method(self):
        self.handler = HttpEventDelivery(
            "webhook", HttpDeliveryConfig(url="http://localhost:3000/api/protocol/events")
        )

    @staticmethod
    def _response(code=200, body=b"ok"):
        response = MagicMock()
        response.getcode.return_value = code
        response.read.return_value = body
        response.__enter__.return_value = response
        return response

    def test_invalid_url(self):
        with pytest.raises(EventDeliveryPermanentError):
            HttpEventDelivery("bad", HttpDeliveryConfig(url="not a url"))

    @patch("protocol_app.delivery.http_delivery.urlopen")
    def test_success(self, mock_urlopen):
        mock_urlopen.return_value = self._response()

        results = self.handler.deliver([started_event()])

        assert results[0].status is DeliveryStatus.SUCCESS
        request = mock_urlopen.call_args.args[0]
        assert json.loads(request.data)["event"] == "run_started"
        assert request.get_header("Content-type") == "application/json"

    @patch("protocol_app.delivery.http_delivery.urlopen")
    def test_server_error_is_retryable(self, mock_urlopen):
        mock_urlopen.side_effect = HTTPError("http://x", 503, "Unavailable", {}, io.BytesIO())

        with pytest.raises(EventDeliveryRetryableError):
            self.handler.deliver([started_event()])

    @patch("protocol_app.delivery.http_delivery.urlopen")
    def test_client_error_is_permanent(self, mock_urlopen):
        mock_urlopen.side_effect = HTTPError("http://x", 400, "Bad Request", {}, io.BytesIO())

        result = self.handler.deliver_with_retry([started_event()], max_retries=3)[0]

        assert result.status is DeliveryStatus.FAILED
        assert mock_urlopen.call_count == 1

    @patch("protocol_app.delivery.http_delivery.urlopen")
    def test_network_error_retries(self, mock_urlopen):
        mock_urlopen.side_effect = [URLError("refused"), self._response()]

        result = self.handler.deliver_with_retry([started_event()], max_retries=2)[0]

        assert result.status is DeliveryStatus.SUCCESS
        assert result.attempt_count == 2


class TestDisplayDelivery:
    """Test the real-time display projection."""

    def setup_method(self):
        self.published = []
        self.cache = DisplayStateCache()
        self.handler = DisplayEventDelivery(
            "display", DisplayDeliveryConfig(), cache=self.cache, publisher=self.published.append
        )

    def test_default_view_when_nothing_cached(self):
        assert self.cache.get("kelly", "ipad") == {"view": "dashboard", "data": {}}

    def test_run_started_shows_protocol_view(self):
        self.handler.deliver([started_event()])

        state = self.cache.get("kelly", "ipad")
        assert state["view"] == "protocol"
        assert state["data"]["step"]["label"] == "neck"
        assert state["data"]["protocol_name"] == "red light"

        message = self.published[0]
        assert message["type"] == "display:changed"
        assert message["owner_id"] == "kelly"
        assert message["device_id"] == "ipad"

    def test_step_advanced_keeps_protocol_context(self):
        self.handler.deliver([started_event(), advanced_event(1)])

        data = self.cache.get("kelly", "ipad")["data"]
        assert data["step_index"] == 1
        assert data["step"]["label"] == "cheek"
        assert data["total_duration_minutes"] == 14

    def test_stale_or_repeated_steps_ignored(self):
        self.handler.deliver([started_event(), advanced_event(2, "chest", 5)])
        self.handler.deliver([advanced_event(1), advanced_event(2, "chest", 5)])

        assert self.cache.get("kelly", "ipad")["data"]["step_index"] == 2
        assert len(self.published) == 2

    def test_terminal_event_resets_to_dashboard_once(self):
        self.handler.deliver([started_event(), terminal_event("run_cancelled")])
        self.handler.deliver([terminal_event("run_cancelled"), advanced_event(1)])

        state = self.cache.get("kelly", "ipad")
        assert state["view"] == "dashboard"
        assert state["data"]["last_run"] == {"run_id": "r1", "outcome": "run_cancelled"}
        assert len(self.published) == 2

    def test_finished_runs_are_bounded(self):
        cache = DisplayStateCache(max_finished_runs=10)
        handler = DisplayEventDelivery("display", DisplayDeliveryConfig(), cache=cache)

        for i in range(50):
            handler.deliver([started_event(run_id=f"r{i}"), terminal_event("run_cancelled", run_id=f"r{i}")])

        assert cache.finished_run_count == 10
        assert cache.is_finished("r49")
        assert not cache.is_finished("r0")

    def test_publisher_failure_reported(self):
        def broken(_message):
            raise RuntimeError("socket closed")

        handler = DisplayEventDelivery("display", DisplayDeliveryConfig(), publisher=broken)
        result = handler.deliver([started_event()])[0]

        assert result.status is DeliveryStatus.FAILED


class TestTimerDelivery:
    """Test the external timer surface."""

    def setup_method(self):
        self.client = MagicMock()
        self.client.create_timer.side_effect = ["t1", "t2", "t3"]
        self.handler = TimerEventDelivery("timer", TimerParams(), self.client)

    def test_build_timer_request(self):
        request = build_timer_request("neck", 3)

        assert request["duration"] == "PT3M"
        assert request["timerLabel"] == "neck"
        assert request["creationBehavior"]["displayExperience"]["visibility"] == "VISIBLE"
        content = request["alertInfo"]["spokenInfo"]["content"][0]
        assert content == {"locale": "en-US", "text": "neck complete. Time for the next step."}

    def test_timer_per_step(self):
        self.handler.deliver([started_event(), advanced_event(1)])

        requests = [c.args[1] for c in self.client.create_timer.call_args_list]
        assert [r["timerLabel"] for r in requests] == ["neck", "cheek"]
        self.client.cancel_timer.assert_called_once_with("kelly", "t1")

    def test_repeated_step_does_not_create_second_timer(self):
        self.handler.deliver([started_event(), advanced_event(1), advanced_event(1)])
        assert self.client.create_timer.call_count == 2

    def test_terminal_event_cancels_timer(self):
        self.handler.deliver([started_event(), terminal_event("run_cancelled")])
        self.handler.deliver([advanced_event(1)])

        self.client.cancel_timer.assert_called_once_with("kelly", "t1")
        assert self.client.create_timer.call_count == 1

    def test_disabled_timers(self):
        handler = TimerEventDelivery("timer", TimerParams(enabled=False), self.client)
        results = handler.deliver([started_event()])

        assert results[0].status is DeliveryStatus.SUCCESS
        self.client.create_timer.assert_not_called()

    def test_client_error_reported(self):
        self.client.create_timer.side_effect = ConnectionError("no consent")
        result = self.handler.deliver([started_event()])[0]
        assert result.status is DeliveryStatus.FAILED

    def test_retry_after_failed_create_cancels_once(self):
        self.client.create_timer.side_effect = ["t1", ConnectionError("busy"), "t2"]
        self.handler.deliver([started_event()])

        result = self.handler.deliver_with_retry([advanced_event(1)], max_retries=2)[0]

        assert result.status is DeliveryStatus.SUCCESS
        assert result.attempt_count == 2
        self.client.cancel_timer.assert_called_once_with("kelly", "t1")

    def test_stale_step_ignored_after_failed_create(self):
        self.client.create_timer.side_effect = ["t1", ConnectionError("busy")]
        self.handler.deliver([started_event(), advanced_event(1)])

        results = self.handler.deliver([started_event()])

        assert results[0].message == "Timer already set"
        assert self.client.create_timer.call_count == 2

    def test_finished_runs_are_bounded(self):
        self.client.create_timer.side_effect = None
        self.client.create_timer.return_value = "t"
        handler = TimerEventDelivery("timer", TimerParams(), self.client, max_finished_runs=10)

        for i in range(50):
            handler.deliver([started_event(run_id=f"r{i}"), terminal_event("run_cancelled", run_id=f"r{i}")])

        assert handler.finished_run_count == 10
        handler.deliver([terminal_event("run_cancelled", run_id="r49")])
        assert self.client.cancel_timer.call_count == 50
