import json

import pytest

from imagefs import timing
from imagefs.timing import TimedRun, Timer, format_duration, start


@pytest.mark.parametrize(
    "existing, category, wait, want",
    [
        ({}, "foo", 3.0, 3.0),
        ({"foo": 4.0}, "foo", 2.0, 6.0),
    ],
    ids=["new category", "existing category"],
)
def test_timed_run_start_stop(existing, category, wait, want):
    tr = TimedRun(clock=lambda: wait)
    tr.categories.update(existing)
    timer = Timer(category=category, start_time=0.0)
    tr.stop(timer)
    assert tr.categories[category] == pytest.approx(want)


@pytest.mark.parametrize(
    "categories, want",
    [
        ({"foo": 3.0}, "foo: 3s\n"),
        ({"foo": 3.0, "bar": 1.0}, "bar: 1s\nfoo: 3s\n"),
        ({"foo": 3.0, "bar": 0.001}, "bar: 1ms\nfoo: 3s\n"),
    ],
    ids=["single key", "two keys", "units"],
)
def test_timed_run_summary(categories, want):
    tr = TimedRun()
    tr.categories.update(categories)
    assert tr.summary() == want


def test_json_uses_nanoseconds_sorted():
    tr = TimedRun()
    tr.categories.update({"foo": 3.0, "bar": 0.001})
    assert tr.json() == '{"bar":1000000,"foo":3000000000}'


def test_start_uses_clock():
    timer = start("cat", clock=lambda: 12.5)
    assert timer == Timer(category="cat", start_time=12.5)


def test_start_and_stop_with_same_clock():
    ticks = iter([10.0, 13.0])
    clock = lambda: next(ticks)
    tr = TimedRun(clock=clock)
    tr.stop(start("work", clock=clock))
    assert tr.summary() == "work: 3s\n"


@pytest.mark.parametrize(
    "seconds, want",
    [
        (0, "0s"),
        (3, "3s"),
        (0.001, "1ms"),
        (60, "1m0s"),
        (3600, "1h0m0s"),
    ],
)
def test_format_duration(seconds, want):
    assert format_duration(seconds) == want


def test_format_duration_negative_has_sign():
    assert format_duration(-3) == "-" + format_duration(3)


def test_default_run_summary_and_json():
    timer = timing.start("imagefs-test-category")
    timing.DEFAULT_RUN.stop(timer)
    assert "imagefs-test-category: " in timing.summary()
    assert "imagefs-test-category" in json.loads(timing.json_summary())