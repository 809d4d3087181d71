import asyncio

import pytest

from academia.tracking.accumulator import WatchTimeAccumulator


class Recorder:
    def __init__(self) -> None:
        self.flushes: list[float] = []
        self.events: list[tuple[str, float, dict | None]] = []

    def on_flush(self, total: float) -> None:
        self.flushes.append(total)

    def on_event(self, kind: str, position: float, metadata: dict | None) -> None:
        self.events.append((kind, position, metadata))

    @property
    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.events]


def make_accumulator(position=None, **kwargs):
    recorder = Recorder()
    state = {"position": position}
    accumulator = WatchTimeAccumulator(
        on_flush=recorder.on_flush,
        on_event=recorder.on_event,
        position_source=lambda: state["position"],
        flush_interval=None,
        **kwargs,
    )
    return accumulator, recorder, state


def test_continuous_playback_credits_each_tick() -> None:
    accumulator, recorder, state = make_accumulator(position=0.0)

    accumulator.on_play(0.0)
    for second in range(3, 31, 3):
        state["position"] = float(second)
        accumulator.tick()

    assert accumulator.total_watched_seconds == pytest.approx(30.0)
    assert recorder.flushes[-1] == pytest.approx(30.0)
    assert recorder.kinds == ["play"]


def test_seek_forward_credits_nothing_for_the_jump() -> None:
    accumulator, recorder, _ = make_accumulator()

    accumulator.on_play(0.0)
    accumulator.on_seek(5.0, 300.0)
    accumulator.on_pause(308.0)

    assert accumulator.total_watched_seconds == pytest.approx(13.0)
    assert recorder.kinds == ["play", "seek", "pause"]
    seek_metadata = recorder.events[1][2]
    assert seek_metadata == {"previous_position": 5.0, "new_position": 300.0}


def test_rewind_is_not_credited_but_moves_pointer() -> None:
    accumulator, _, state = make_accumulator(position=0.0)

    accumulator.on_play(60.0)
    state["position"] = 40.0
    accumulator.tick()
    assert accumulator.total_watched_seconds == 0.0
    assert accumulator.play_start_position == 40.0

    state["position"] = 45.0
    accumulator.tick()
    assert accumulator.total_watched_seconds == pytest.approx(5.0)


def test_gap_longer_than_cap_is_discarded() -> None:
    accumulator, _, state = make_accumulator(position=0.0)

    accumulator.on_play(0.0)
    state["position"] = 8.0
    accumulator.tick()
    # Background tab resumed far ahead
    state["position"] = 250.0
    accumulator.tick()
    state["position"] = 253.0
    accumulator.tick()

    assert accumulator.total_watched_seconds == pytest.approx(11.0)


def test_total_never_decreases() -> None:
    accumulator, _, state = make_accumulator(position=0.0)
    accumulator.on_play(0.0)
    previous = 0.0
    for position in [3.0, 6.0, 2.0, 100.0, 104.0, 50.0, 51.0, 51.0, 55.0]:
        state["position"] = position
        accumulator.tick()
        assert accumulator.total_watched_seconds >= previous
        previous = accumulator.total_watched_seconds


def test_pause_when_not_playing_emits_nothing() -> None:
    accumulator, recorder, _ = make_accumulator()

    accumulator.on_pause(12.0)

    assert recorder.events == []
    assert recorder.flushes == []
    assert accumulator.last_known_position == 12.0


def test_play_is_emitted_only_on_transition() -> None:
    accumulator, recorder, _ = make_accumulator()

    accumulator.on_play(0.0)
    accumulator.on_play(2.0)

    assert recorder.kinds == ["play"]


def test_pause_carries_metadata() -> None:
    accumulator, recorder, _ = make_accumulator()

    accumulator.on_play(0.0)
    accumulator.on_pause(4.0, {"reason": "tab_hidden"})

    assert recorder.events[-1] == ("pause", 4.0, {"reason": "tab_hidden"})
    assert recorder.flushes == [pytest.approx(4.0)]


def test_ended_commits_and_flushes() -> None:
    accumulator, recorder, _ = make_accumulator()

    accumulator.on_play(595.0)
    accumulator.on_ended(600.0)

    assert accumulator.ended is True
    assert accumulator.is_playing is False
    assert recorder.kinds == ["play", "ended"]
    assert recorder.flushes == [pytest.approx(5.0)]


def test_tick_while_paused_does_nothing() -> None:
    accumulator, recorder, state = make_accumulator(position=10.0)

    accumulator.tick()

    assert recorder.flushes == []
    assert accumulator.total_watched_seconds == 0.0


def test_finish_commits_without_emitting() -> None:
    accumulator, recorder, _ = make_accumulator()

    accumulator.on_play(0.0)
    total = accumulator.finish(6.0)

    assert total == pytest.approx(6.0)
    assert recorder.kinds == ["play"]
    assert recorder.flushes == []
    assert accumulator.is_playing is False


def test_reset_clears_state() -> None:
    accumulator, _, _ = make_accumulator()
    accumulator.on_play(0.0)
    accumulator.on_pause(5.0)

    accumulator.reset()

    assert accumulator.total_watched_seconds == 0.0
    assert accumulator.last_known_position == 0.0
    assert accumulator.is_playing is False


def test_rejects_non_positive_cap() -> None:
    with pytest.raises(ValueError):
        WatchTimeAccumulator(max_credit_per_tick=0)


@pytest.mark.anyio
async def test_flush_timer_runs_only_while_playing() -> None:
    recorder = Recorder()
    state = {"position": 0.0}
    accumulator = WatchTimeAccumulator(
        on_flush=recorder.on_flush,
        position_source=lambda: state["position"],
        flush_interval=0.01,
    )

    accumulator.on_play(0.0)
    assert accumulator.timer_running is True
    state["position"] = 1.0
    await asyncio.sleep(0.05)
    accumulator.on_pause(1.0)

    assert accumulator.timer_running is False
    assert recorder.flushes
    assert recorder.flushes[-1] == pytest.approx(1.0)
