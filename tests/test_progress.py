"""Tests for progress events."""

import pytest

from uploader.progress import ProgressTracker, remaining_seconds


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_percentage_and_speed():
    clock = FakeClock()
    events = []
    tracker = ProgressTracker('a.bin', 1000, events.append, upload_id='up-1', clock=clock)

    tracker.start_transfer()
    clock.now = 2.0
    event = tracker.emit('uploading', loaded=400)

    assert event.percentage == 40
    assert event.speed == pytest.approx(200.0)
    assert event.remaining_time == pytest.approx(3.0)
    assert event.upload_id == 'up-1'
    assert events == [event]


def test_resumed_bytes_do_not_count_towards_speed():
    clock = FakeClock()
    tracker = ProgressTracker('a.bin', 1000, clock=clock)

    tracker.start_transfer(already_loaded=600)
    clock.now = 1.0
    event = tracker.emit('uploading', loaded=700)

    assert event.speed == pytest.approx(100.0)


def test_zero_byte_file_is_complete_at_once():
    tracker = ProgressTracker('empty.txt', 0)

    assert tracker.emit('preparing', loaded=0).percentage == 100
    assert tracker.emit('complete', loaded=0).percentage == 100


def test_complete_is_always_100_percent():
    tracker = ProgressTracker('a.bin', 1000)

    assert tracker.emit('complete', loaded=999).percentage == 100


def test_chunk_fields_carry_over_between_events():
    tracker = ProgressTracker('a.bin', 100)

    tracker.emit('preparing', loaded=0, chunked=True, total_chunks=10, chunk_size=10)
    event = tracker.emit('uploading', loaded=20, uploaded_chunk_indices=[0, 1])

    assert event.chunked
    assert event.total_chunks == 10
    assert event.uploaded_chunk_indices == [0, 1]


def test_finalization_event():
    tracker = ProgressTracker('a.bin', 100)

    event = tracker.finalization('assembling', 50, 'Assembling file on storage node')

    assert event.status == 'processing'
    assert event.finalization.phase == 'assembling'
    assert event.loaded == 100
    assert tracker.emit('complete').finalization is None


def test_observer_errors_are_swallowed():
    def broken(event):
        raise ValueError("ui gone")

    tracker = ProgressTracker('a.bin', 100, broken)

    assert tracker.emit('uploading', loaded=10).loaded == 10


def test_remaining_seconds_without_speed():
    assert remaining_seconds(100, 10, 0) == 0.0
