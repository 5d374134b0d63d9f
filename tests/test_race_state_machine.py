import math

import pytest

from typerace_core import (
    InvalidTransition,
    MissingOpponent,
    ParticipantConflict,
    ParticipantNotFound,
    WrongStatus,
    add_opponent,
    cancel_race,
    complete_race,
    create_race_state,
    deserialize_race_state,
    is_valid_transition,
    serialize_race_state,
    start_countdown,
    start_race,
    update_progress,
)

T0 = 1_767_225_600_000  # 2026-01-01T00:00:00Z


def _race(**kwargs):
    return create_race_state("race-1", "ABC123", "host-1", "Test text", now=T0, **kwargs)


def _active_race(opponent_id="opponent-1"):
    race = add_opponent(_race(), opponent_id, now=T0 + 1)
    race = start_countdown(race, "host-1", now=T0 + 2)
    return start_race(race, now=T0 + 3)


def test_create_race_state_defaults():
    race = _race()
    assert race.status == "waiting"
    assert race.version == 0
    assert race.host.id == "host-1"
    assert race.host.progress == 0
    assert race.host.accuracy == 100
    assert race.opponent is None
    assert race.created_at == race.updated_at == T0


def test_transition_table():
    allowed = {
        ("waiting", "countdown"),
        ("waiting", "cancelled"),
        ("countdown", "active"),
        ("countdown", "cancelled"),
        ("active", "completed"),
        ("active", "cancelled"),
    }
    statuses = ["waiting", "countdown", "active", "completed", "cancelled"]
    for src in statuses:
        for dst in statuses:
            assert is_valid_transition(src, dst) == ((src, dst) in allowed), (src, dst)


def test_unknown_status_is_never_valid():
    assert not is_valid_transition("lobby", "countdown")
    assert not is_valid_transition("waiting", "racing")


def test_add_opponent_human_and_bot():
    human = add_opponent(_race(), "opponent-1")
    assert human.opponent.id == "opponent-1"
    assert human.opponent.is_bot is False
    assert human.version == 1

    bot = add_opponent(_race(), "bot-1", True, "intermediate")
    assert bot.opponent.is_bot is True
    assert bot.opponent.bot_level == "intermediate"


def test_add_opponent_guards():
    race = add_opponent(_race(), "opponent-1")
    with pytest.raises(ParticipantConflict):
        add_opponent(race, "opponent-2")

    with pytest.raises(WrongStatus) as exc:
        add_opponent(_active_race(), "opponent-2")
    assert exc.value.kind == "wrong_status"

    with pytest.raises(ParticipantConflict):
        add_opponent(_race(), "host-1")


def test_start_countdown_requires_opponent():
    with pytest.raises(MissingOpponent):
        start_countdown(_race(), "host-1")


def test_start_countdown_stamps_and_is_idempotent():
    race = add_opponent(_race(), "opponent-1", now=T0 + 1)
    countdown = start_countdown(race, "host-1", "key-1", now=T0 + 10)
    assert countdown.status == "countdown"
    assert countdown.countdown_started_at == T0 + 10
    assert countdown.version == 2
    assert start_countdown(countdown, "host-1", "key-1") is None


def test_only_first_of_many_countdowns_applies():
    race = add_opponent(_race(), "opponent-1")
    results = []
    current = race
    for _ in range(10):
        result = start_countdown(current, "host-1")
        results.append(result)
        current = result or current
    assert sum(1 for r in results if r is not None) == 1


def test_start_countdown_from_terminal_is_invalid():
    cancelled = cancel_race(_race())
    with pytest.raises(InvalidTransition):
        start_countdown(cancelled, "host-1")


def test_start_race_is_idempotent_and_checked():
    active = _active_race()
    assert active.status == "active"
    assert active.race_started_at == T0 + 3
    assert start_race(active) is None
    with pytest.raises(InvalidTransition):
        start_race(_race())


def test_update_progress_for_each_participant():
    active = _active_race()
    updated = update_progress(active, "host-1", 50, 60, 95)
    assert (updated.host.progress, updated.host.wpm, updated.host.accuracy) == (50, 60, 95)
    assert updated.version == active.version + 1

    updated = update_progress(updated, "opponent-1", 30, 45, 90)
    assert (updated.opponent.progress, updated.opponent.wpm, updated.opponent.accuracy) == (30, 45, 90)
    assert updated.host.progress == 50


def test_update_progress_clamps():
    active = _active_race()
    assert update_progress(active, "host-1", 150, 60, 95).host.progress == 100
    assert update_progress(active, "host-1", -10, 60, 95).host.progress == 0
    assert update_progress(active, "host-1", 50, 600, 95).host.wpm == 500
    assert update_progress(active, "host-1", 50, 60, 140).host.accuracy == 100

    weird = update_progress(active, "host-1", math.nan, math.inf, -math.inf)
    assert weird.host.progress == 0
    assert weird.host.wpm == 0
    assert weird.host.accuracy == 0


def test_update_progress_guards():
    with pytest.raises(WrongStatus):
        update_progress(_race(), "host-1", 50, 60, 95)
    with pytest.raises(ParticipantNotFound) as exc:
        update_progress(_active_race(), "stranger", 50, 60, 95)
    assert exc.value.kind == "participant_not_found"


def test_finished_at_is_set_once():
    active = _active_race()
    finished = update_progress(active, "host-1", 100, 60, 95, now=T0 + 5000)
    assert finished.host.finished_at == T0 + 5000
    again = update_progress(finished, "host-1", 100, 62, 96, now=T0 + 9000)
    assert again.host.finished_at == T0 + 5000


def test_winner_finished_first_beats_higher_wpm():
    race = _active_race()
    race = update_progress(race, "host-1", 100, 60, 95, now=T0 + 5000)
    race = update_progress(race, "opponent-1", 100, 90, 95, now=T0 + 5100)
    completed = complete_race(race, now=T0 + 6000)
    assert completed.status == "completed"
    assert completed.winner_id == "host-1"
    assert completed.race_ended_at == T0 + 6000


def test_winner_finisher_beats_unfinished():
    race = _active_race()
    race = update_progress(race, "host-1", 80, 70, 90)
    race = update_progress(race, "opponent-1", 100, 40, 90)
    assert complete_race(race).winner_id == "opponent-1"


def test_winner_ignores_finish_after_progress_drops():
    race = _active_race()
    race = update_progress(race, "host-1", 100, 60, 95, now=T0 + 10)
    race = update_progress(race, "host-1", 50, 60, 95, now=T0 + 20)
    race = update_progress(race, "opponent-1", 80, 40, 90, now=T0 + 30)
    assert race.host.finished_at == T0 + 10
    assert complete_race(race).winner_id == "opponent-1"


def test_winner_by_progress_when_nobody_finished():
    race = _active_race()
    race = update_progress(race, "host-1", 60, 50, 95)
    race = update_progress(race, "opponent-1", 40, 70, 90)
    assert complete_race(race).winner_id == "host-1"


def test_winner_by_wpm_on_equal_progress():
    race = _active_race()
    race = update_progress(race, "host-1", 50, 60, 95)
    race = update_progress(race, "opponent-1", 50, 70, 90)
    assert complete_race(race).winner_id == "opponent-1"


def test_winner_same_millisecond_finish_uses_wpm():
    race = _active_race()
    race = update_progress(race, "host-1", 100, 60, 95, now=T0 + 5000)
    race = update_progress(race, "opponent-1", 100, 70, 90, now=T0 + 5000)
    assert complete_race(race).winner_id == "opponent-1"


def test_exact_tie_goes_to_host():
    race = _active_race()
    race = update_progress(race, "host-1", 50, 60, 95)
    race = update_progress(race, "opponent-1", 50, 60, 99)
    assert complete_race(race).winner_id == "host-1"


def test_complete_race_is_idempotent():
    completed = complete_race(update_progress(_active_race(), "host-1", 100, 60, 95))
    assert complete_race(completed) is completed


def test_complete_race_requires_active():
    with pytest.raises(InvalidTransition):
        complete_race(_race())
    with pytest.raises(InvalidTransition):
        complete_race(cancel_race(_race()))


def test_cancel_race_from_each_live_status():
    waiting = _race()
    countdown = start_countdown(add_opponent(waiting, "opponent-1"), "host-1")
    for race in (waiting, countdown, _active_race()):
        cancelled = cancel_race(race, "host left", now=T0 + 99)
        assert cancelled.status == "cancelled"
        assert cancelled.race_ended_at == T0 + 99
        assert cancelled.version == race.version + 1


def test_cancel_race_is_noop_from_terminal():
    cancelled = cancel_race(_race())
    assert cancel_race(cancelled) is cancelled

    completed = complete_race(_active_race())
    result = cancel_race(completed)
    assert result is completed
    assert result.status == "completed"


def test_inputs_are_not_mutated():
    race = _race()
    add_opponent(race, "opponent-1")
    assert race.opponent is None
    assert race.version == 0


def test_serialize_round_trip():
    race = add_opponent(_race(), "opponent-1", True, "pro", now=T0 + 1)
    race = start_countdown(race, "host-1", now=T0 + 2)
    race = start_race(race, now=T0 + 3)
    race = update_progress(race, "host-1", 100, 60, 95, now=T0 + 4)

    row = serialize_race_state(race)
    assert row["room_code"] == "ABC123"
    assert row["opponent_is_bot"] is True
    assert row["opponent_bot_level"] == "pro"
    assert row["created_at"] == "2026-01-01T00:00:00.000Z"
    assert row["started_at"] == "2026-01-01T00:00:00.003Z"
    assert row["ended_at"] is None

    assert deserialize_race_state(row) == race


def test_deserialize_without_opponent():
    row = serialize_race_state(_race())
    assert row["opponent_id"] is None
    assert row["opponent_accuracy"] == 100
    assert deserialize_race_state(row).opponent is None


def test_deserialize_tolerates_missing_columns():
    race = deserialize_race_state(
        {
            "id": "race-9",
            "room_code": "XYZ789",
            "status": "waiting",
            "expected_text": "abc",
            "host_id": "h",
            "created_at": "2026-01-01T00:00:00Z",
            "updated_at": "2026-01-01T00:00:00+00:00",
        }
    )
    assert race.host.accuracy == 100
    assert race.version == 0
    assert race.created_at == T0
    assert race.updated_at == T0
