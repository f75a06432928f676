"""Unit tests for the recognition session controller."""

import pytest

from config import RecognitionConfig
from speech.capabilities import Hypothesis, RecognitionResult, RecognizerSettings, ResultBatch
from speech.recognition import (
    NOT_SUPPORTED,
    RecognitionController,
    RecognitionSession,
    SessionState,
    apply_result_batch,
    classify_error,
)
from tests.conftest import FakeRecognition, FakeScheduler, final, interim


class Harness:
    """Controller wired to fakes, recording every caller callback."""

    def __init__(self, config=None, recognition=None):
        self.scheduler = FakeScheduler()
        self.recognition = recognition or FakeRecognition()
        self.controller = RecognitionController(
            self.recognition, config=config or RecognitionConfig(), scheduler=self.scheduler,
        )
        self.results = []
        self.ends = []

    def start(self):
        return self.controller.start(
            lambda text, is_final: self.results.append((text, is_final)),
            self.ends.append,
        )

    @property
    def rec(self):
        return self.recognition.latest


@pytest.fixture
def harness():
    return Harness()


class TestApplyResultBatch:

    def test_best_alternative_wins(self):
        session = RecognitionSession(session_id=1)
        result = RecognitionResult(
            alternatives=(Hypothesis("a", 0.5, True), Hypothesis("b", 0.95, True)),
            is_final=True,
        )
        update = apply_result_batch(session, ResultBatch((result,)))
        assert (update.text, update.is_final) == ("b", True)

    def test_unchanged_entries_skipped(self):
        session = RecognitionSession(session_id=1)
        batch = ResultBatch((final("lama"), interim("baru")), result_index=1)
        update = apply_result_batch(session, batch)
        assert (update.text, update.is_final) == ("baru", False)
        assert session.final_transcript == ""

    def test_empty_batch_reports_nothing(self):
        session = RecognitionSession(session_id=1)
        assert apply_result_batch(session, ResultBatch(())) is None


class TestStart:

    def test_recognizer_configured(self, harness):
        handle = harness.start()
        assert handle is not None
        assert harness.rec.calls == ["start"]
        assert harness.rec.settings == RecognizerSettings(
            language="id-ID", continuous=True, interim_results=True, max_alternatives=3,
        )
        assert harness.controller.session.state is SessionState.LISTENING

    def test_missing_capability_reports_not_supported(self):
        ends = []
        controller = RecognitionController(None, scheduler=FakeScheduler())
        assert controller.start(lambda t, f: None, ends.append) is None
        assert ends == [{"error": NOT_SUPPORTED, "recoverable": False}]

    def test_start_failure_reported_through_on_end(self):
        harness = Harness(recognition=FakeRecognition(fail_on_start=RuntimeError("mic busy")))
        assert harness.start() is None
        assert harness.ends == [{"error": "mic busy", "recoverable": False}]


class TestResults:

    def test_interim_then_final_scenario(self, harness):
        harness.start()
        harness.rec.emit_start()
        harness.rec.emit_result(interim("hal", 0.4))
        harness.rec.emit_result(final("halo dunia", 0.92))
        harness.rec.emit_end()

        assert harness.results == [("hal", False), ("halo dunia", True)]
        assert harness.ends == [{"transcript": "halo dunia", "status": "complete"}]

    def test_low_confidence_final_does_not_overwrite(self, harness):
        harness.start()
        harness.rec.emit_result(final("halo", 0.9))
        harness.rec.emit_result(final("halo salah", 0.5))
        harness.rec.emit_end()
        assert harness.ends[0]["transcript"] == "halo"

    def test_later_final_replaces_not_concatenates(self, harness):
        harness.start()
        harness.rec.emit_result(final("halo", 0.8))
        harness.rec.emit_result(final("halo dunia", 0.9))
        harness.rec.emit_end()
        assert harness.ends[0]["transcript"] == "halo dunia"

    def test_transcript_trimmed(self, harness):
        harness.start()
        harness.rec.emit_result(final("  halo  ", 0.9))
        harness.rec.emit_end()
        assert harness.ends[0]["transcript"] == "halo"

    def test_on_end_fires_once(self, harness):
        harness.start()
        harness.rec.emit_end()
        harness.rec.emit_end()
        assert len(harness.ends) == 1

    def test_failing_callback_does_not_break_session(self):
        harness = Harness()

        def boom(text, is_final):
            raise ValueError("ui broke")

        harness.controller.start(boom, harness.ends.append)
        harness.rec.emit_result(final("halo", 0.9))
        harness.rec.emit_end()
        assert harness.ends == [{"transcript": "halo", "status": "complete"}]


class TestSilenceTimer:

    def test_interim_only_session_ends_on_silence(self, harness):
        harness.start()
        harness.rec.emit_result(interim("hal"))
        harness.scheduler.advance(3.5)
        assert "stop" not in harness.rec.calls

        harness.scheduler.advance(0.5)
        assert harness.rec.calls[-1] == "stop"

        harness.rec.emit_end()
        assert all(not is_final for _, is_final in harness.results)
        assert harness.ends == [{"transcript": "", "status": "complete"}]

    def test_new_speech_rearms_timer(self, harness):
        harness.start()
        harness.rec.emit_result(interim("ha"))
        harness.scheduler.advance(3.0)
        harness.rec.emit_result(interim("halo"))
        harness.scheduler.advance(3.0)
        assert "stop" not in harness.rec.calls
        harness.scheduler.advance(1.0)
        assert "stop" in harness.rec.calls

    def test_timer_cleared_on_end(self, harness):
        harness.start()
        harness.rec.emit_result(interim("hal"))
        harness.rec.emit_end()
        assert harness.scheduler.pending() == []


class TestErrors:

    @pytest.mark.parametrize("code, recoverable", [
        ("not-allowed", False),
        ("audio-capture", False),
        ("network", True),
        ("aborted", True),
        ("no-speech", True),
        ("service-not-allowed", False),
        ("bad-grammar", False),
    ])
    def test_classification(self, code, recoverable):
        error = classify_error(code)
        assert error.recoverable is recoverable
        assert error.code == code
        assert error.message

    def test_unknown_code_message(self):
        assert classify_error("bad-grammar").message == "Error with speech recognition"

    def test_recoverable_error_restarts_after_delay(self, harness):
        harness.start()
        harness.rec.emit_result(interim("hal"))
        harness.rec.emit_error("network")

        assert harness.ends == [{
            "error": "Network error occurred. Please check your connection.",
            "recoverable": True,
            "code": "network",
        }]
        assert harness.scheduler.pending() and harness.controller.restart_pending

        harness.scheduler.advance(0.5)
        assert len(harness.recognition.recognizers) == 1
        harness.scheduler.advance(0.5)
        assert len(harness.recognition.recognizers) == 2
        assert harness.controller.session.final_transcript == ""

    def test_stale_events_after_retry_ignored(self, harness):
        harness.start()
        old = harness.rec
        old.emit_error("no-speech")
        harness.scheduler.advance(1.0)

        old.emit_result(final("basi", 0.99))
        old.emit_end()
        assert harness.results == []
        assert len(harness.ends) == 1

    def test_fatal_error_does_not_restart(self, harness):
        harness.start()
        harness.rec.emit_error("not-allowed")
        harness.scheduler.advance(5.0)
        assert len(harness.recognition.recognizers) == 1
        assert harness.ends[0]["recoverable"] is False

    def test_auto_restarts_are_bounded(self):
        harness = Harness(RecognitionConfig(max_auto_restarts=2))
        harness.start()
        for _ in range(3):
            harness.rec.emit_error("no-speech")
            harness.scheduler.advance(1.0)
        assert len(harness.recognition.recognizers) == 3
        assert not harness.controller.restart_pending

    def test_speech_resets_restart_budget(self):
        harness = Harness(RecognitionConfig(max_auto_restarts=1))
        harness.start()
        harness.rec.emit_error("no-speech")
        harness.scheduler.advance(1.0)
        harness.rec.emit_result(interim("ha"))
        harness.rec.emit_error("network")
        assert harness.controller.restart_pending


class TestControls:

    def test_stop_waits_for_platform_end(self, harness):
        handle = harness.start()
        harness.rec.emit_result(final("halo", 0.9))
        handle.stop()
        assert harness.rec.calls[-1] == "stop"
        assert harness.ends == []
        harness.rec.emit_end()
        assert harness.ends == [{"transcript": "halo", "status": "complete"}]

    def test_abort_suppresses_aborted_error(self, harness):
        handle = harness.start()
        handle.abort()
        harness.rec.emit_error("aborted")
        harness.scheduler.advance(2.0)
        assert harness.ends == []
        assert len(harness.recognition.recognizers) == 1

        harness.rec.emit_end()
        assert harness.ends == [{"transcript": "", "status": "complete"}]

    def test_restart_starts_clean_session(self, harness):
        handle = harness.start()
        old = harness.rec
        old.emit_result(final("halo", 0.9))

        handle.restart()
        assert old.calls[-1] == "abort"
        harness.scheduler.advance(0.2)
        assert len(harness.recognition.recognizers) == 1
        harness.scheduler.advance(0.2)
        assert len(harness.recognition.recognizers) == 2

        old.emit_end()
        assert harness.ends == []
        assert handle.active
        assert harness.controller.session.final_transcript == ""

    def test_adjust_threshold(self, harness):
        handle = harness.start()
        assert handle.adjust_threshold(0.5)
        harness.rec.emit_result(final("pelan", 0.6))
        harness.rec.emit_end()
        assert harness.ends[0]["transcript"] == "pelan"

    @pytest.mark.parametrize("value", [1.5, -0.1, True, "0.5", None])
    def test_invalid_threshold_rejected(self, harness, value):
        handle = harness.start()
        assert not handle.adjust_threshold(value)
        assert harness.controller.confidence_threshold == 0.75

    def test_threshold_reset_on_new_start(self, harness):
        harness.start().adjust_threshold(0.3)
        harness.start()
        assert harness.controller.confidence_threshold == 0.75

    def test_superseded_handle_is_inert(self, harness):
        first = harness.start()
        old = harness.rec
        second = harness.start()

        assert old.calls[-1] == "abort"
        old.emit_result(final("lama", 0.99))
        assert harness.results == []

        first.stop()
        assert harness.rec.calls == ["start"]
        assert not first.active
        assert second.active
