import logging
import math

from typerace_core import (
    KeystrokeRecord,
    calculate_accuracy,
    calculate_consistency,
    calculate_live_accuracy,
    calculate_progress,
    calculate_raw_wpm,
    calculate_wpm,
    calculate_wpm_windows,
    compute_session_metrics,
    reconstruct_typed_text,
    sanitize_metric,
    verify_metrics,
)

BACKSPACE = "\b"


def _ks(typed, ts, expected=None, correct=None, event="keydown"):
    is_backspace = typed == BACKSPACE
    expected = typed if expected is None else expected
    if correct is None:
        correct = not is_backspace and typed == expected
    return KeystrokeRecord(
        session_id="s-1",
        char_expected="" if is_backspace else expected,
        char_typed="" if is_backspace else typed,
        event_type=event,
        timestamp_ms=ts,
        cursor_index=0,
        is_backspace=is_backspace,
        is_correct=correct,
    )


def _session(text, interval_ms=200, start=0):
    return [_ks(ch, start + i * interval_ms) for i, ch in enumerate(text)]


def test_calculate_wpm_reference_values():
    assert calculate_wpm(50, 60000) == 10
    assert calculate_wpm(400, 60000) == 80
    assert calculate_wpm(123, 0) == 0
    assert calculate_wpm(123, -50) == 0


def test_wpm_rounds_half_up():
    # 125 chars in 2 minutes is exactly 12.5 WPM
    assert calculate_wpm(125, 120000) == 13
    assert calculate_raw_wpm(125, 120000) == 13


def test_calculate_accuracy_cases():
    assert calculate_accuracy(100, 0, 0, 0, True) == 99.99
    assert calculate_accuracy(100, 0, 0, 0, False) == 100
    assert calculate_accuracy(90, 10, 0, 0, False) == 90
    assert calculate_accuracy(0, 0, 0, 0, False) == 100
    assert calculate_accuracy(2, 1, 0, 0, False) == 66.67
    assert calculate_accuracy(8, 0, 1, 1, True) == 80


def test_live_accuracy_counts_typed_only():
    assert calculate_live_accuracy(9, 10) == 90
    assert calculate_live_accuracy(0, 0) == 100
    assert calculate_live_accuracy(2, 3) == 67


def test_calculate_consistency():
    assert calculate_consistency([]) == 100
    assert calculate_consistency([55]) == 100
    assert calculate_consistency([50, 50, 50]) == 100
    assert calculate_consistency([40, 60]) == 80
    # zero and non-finite samples are dropped before measuring
    assert calculate_consistency([0, 50, math.nan, math.inf]) == 100
    assert calculate_consistency([1, 1000]) == 0.2


def test_wpm_windows_slide_over_session():
    keystrokes = _session("a" * 51, interval_ms=200)  # t = 0 .. 10000
    windows = calculate_wpm_windows(keystrokes)
    assert [w.start_ms for w in windows] == [0, 1000, 2000, 3000, 4000, 5000]
    assert all(w.end_ms == w.start_ms + 5000 for w in windows)
    assert all(w.correct_chars == 25 for w in windows)
    assert all(w.wpm == 60 for w in windows)


def test_wpm_windows_empty_for_short_sessions():
    assert calculate_wpm_windows([]) == []
    assert calculate_wpm_windows(_session("abc", interval_ms=100)) == []


def test_wpm_windows_ignore_errors_backspaces_and_keyups():
    keystrokes = _session("a" * 26, interval_ms=200)  # t = 0 .. 5000
    noise = [
        _ks("x", 100, expected="a"),
        _ks(BACKSPACE, 150),
        _ks("a", 160, event="keyup"),
    ]
    merged = sorted(keystrokes + noise, key=lambda ks: ks.timestamp_ms)
    (window,) = calculate_wpm_windows(merged)
    assert window.correct_chars == 25


def test_calculate_progress():
    assert calculate_progress(50, 200) == 25
    assert calculate_progress(1, 3) == 33.3
    assert calculate_progress(250, 200) == 100
    assert calculate_progress(5, 0) == 0


def test_sanitize_metric():
    assert sanitize_metric(math.nan) == 0
    assert sanitize_metric(math.inf) == 0
    assert sanitize_metric(-3) == 0
    assert sanitize_metric(-3, allow_negative=True) == -3
    assert sanitize_metric(42.5) == 42.5


def test_reconstruct_typed_text_applies_backspace():
    keystrokes = [_ks(ch, i * 100) for i, ch in enumerate(["h", "e", "x", BACKSPACE, "l", "l", "o"])]
    assert reconstruct_typed_text(keystrokes) == "hello"


def test_reconstruct_typed_text_ignores_noise():
    keystrokes = [
        _ks(BACKSPACE, 0),
        _ks("a", 10),
        _ks("a", 20, event="keyup"),
        _ks("Shift", 30),
        _ks("b", 40),
    ]
    assert reconstruct_typed_text(keystrokes) == "ab"


def test_session_metrics_for_empty_log():
    metrics = compute_session_metrics([], "hello world", "")
    assert metrics.raw_wpm == metrics.net_wpm == 0
    assert metrics.accuracy == 100
    assert metrics.consistency == 100
    assert metrics.missed_chars == 11
    assert metrics.is_valid is False
    assert metrics.validation_errors == ("No keystrokes recorded",)


def test_session_metrics_for_clean_session():
    text = "hello world"
    keystrokes = _session(text, interval_ms=200)  # 2000ms
    metrics = compute_session_metrics(keystrokes, text, reconstruct_typed_text(keystrokes))

    assert metrics.is_valid
    assert metrics.validation_errors == ()
    assert metrics.duration_ms == 2000
    assert metrics.duration_seconds == 2
    assert metrics.raw_wpm == 66
    assert metrics.net_wpm == 66
    assert metrics.accuracy == 100
    assert metrics.chars_per_second == 5.5
    assert metrics.correct_chars == 11
    assert metrics.incorrect_chars == metrics.missed_chars == metrics.extra_chars == 0
    # too short for a window: peak/lowest fall back to net WPM
    assert metrics.peak_wpm == metrics.lowest_wpm == 66
    assert metrics.consistency == 100


def test_session_metrics_character_classes():
    metrics = compute_session_metrics(_session("hxllo!!"), "hello", "hxllo!!")
    assert metrics.correct_chars == 4
    assert metrics.incorrect_chars == 1
    assert metrics.extra_chars == 2
    assert metrics.missed_chars == 0
    assert metrics.accuracy == 57.14

    short = compute_session_metrics(_session("hel"), "hello", "hel")
    assert short.missed_chars == 2
    assert short.accuracy == 60


def test_session_metrics_backspace_caps_accuracy():
    keystrokes = [_ks(ch, i * 100) for i, ch in enumerate(["h", "e", "x", BACKSPACE, "l", "l", "o"])]
    metrics = compute_session_metrics(keystrokes, "hello", reconstruct_typed_text(keystrokes))
    assert metrics.backspace_count == 1
    assert metrics.accuracy == 99.99


def test_session_metrics_zero_duration_is_invalid():
    metrics = compute_session_metrics([_ks("a", 1000)], "a", "a")
    assert metrics.is_valid is False
    assert "Invalid duration" in metrics.validation_errors
    assert metrics.raw_wpm == 0
    assert metrics.chars_per_second == 0


def test_session_metrics_wire_shape():
    wire = compute_session_metrics(_session("abc"), "abc", "abc").as_wire()  # 400ms
    assert wire["rawWpm"] == 90
    assert wire["validationErrors"] == []
    assert wire["isValid"] is True


def test_keystroke_record_wire_helpers():
    record = KeystrokeRecord.from_wire(
        {
            "session_id": "s",
            "char_expected": "a",
            "char_typed": "a",
            "event_type": "keydown",
            "timestamp_ms": 12.5,
            "cursor_index": 3,
            "is_backspace": False,
            "is_correct": True,
        }
    )
    assert record.cursor_index == 3
    assert record.to_wire()["timestamp_ms"] == 12.5
    assert "user_id" not in record.to_wire()


def _fast_session():
    # 100 chars at 25ms: raw WPM 485, so 0.5% (2.425) is looser than the 2 WPM floor
    text = "a" * 100
    keystrokes = _session(text, interval_ms=25)
    return text, keystrokes


def test_verify_accepts_matching_metrics():
    text, keystrokes = _fast_session()
    result = verify_metrics({"rawWpm": 485, "accuracy": 100}, keystrokes, text)
    assert result.valid
    assert result.errors == ()
    assert result.computed_metrics.raw_wpm == 485


def test_verify_wpm_threshold_needs_relative_and_absolute_excess():
    text, keystrokes = _fast_session()
    assert verify_metrics({"rawWpm": 487.4}, keystrokes, text).valid

    result = verify_metrics({"rawWpm": 488}, keystrokes, text)
    assert not result.valid
    assert result.errors == ("rawWpm mismatch: client=488, server=485",)

    slow_text = "hello world"
    slow = _session(slow_text, interval_ms=200)  # 66 WPM, floor dominates
    assert verify_metrics({"raw_wpm": 68}, slow, slow_text).valid
    assert not verify_metrics({"raw_wpm": 69}, slow, slow_text).valid


def test_verify_accuracy_tolerance():
    text, keystrokes = _fast_session()
    assert verify_metrics({"accuracy": 99.6}, keystrokes, text).valid
    result = verify_metrics({"accuracy": 99.4}, keystrokes, text)
    assert not result.valid
    assert result.errors[0].startswith("accuracy mismatch")


def test_verify_logs_mismatch(caplog):
    text, keystrokes = _fast_session()
    with caplog.at_level(logging.WARNING, logger="typerace_core.metrics"):
        verify_metrics({"rawWpm": 900}, keystrokes, text)
    assert "Metric verification failed" in caplog.text


def test_verify_ignores_absent_fields():
    text, keystrokes = _fast_session()
    assert verify_metrics({}, keystrokes, text).valid


def test_wpm_windows_skip_long_pauses():
    keystrokes = _session("a" * 26, interval_ms=200) + _session("a" * 26, interval_ms=200, start=10**9)
    windows = calculate_wpm_windows(keystrokes)
    assert all(w.correct_chars > 0 for w in windows)
    assert len(windows) < 20
    assert windows[-1].start_ms == 10**9
    assert windows[-1].correct_chars == 25


def test_session_metrics_with_huge_gap():
    keystrokes = [_ks("a", 0), _ks("a", 2 * 10**10)]
    assert len(calculate_wpm_windows(keystrokes)) == 1

    metrics = compute_session_metrics(keystrokes, "aa", "aa")
    assert metrics.duration_ms == 2 * 10**10
    assert metrics.raw_wpm == 0
