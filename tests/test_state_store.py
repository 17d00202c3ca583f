"""Tests for the resumable state stores."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from uploader.exceptions import LocalStateError
from uploader.models import UploadSession
from uploader.state_store import JsonFileStateStore, MemoryStateStore


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / 'state' / 'uploads.json'


def make_session(**kwargs) -> UploadSession:
    return UploadSession.create('movie.mp4', 45, 10, node_id='primary', **kwargs)


def test_save_persists_to_disk(state_path):
    store = JsonFileStateStore(state_path)
    session = make_session()
    session.acknowledge(0)
    session.acknowledge(3)

    store.save(session)

    with open(state_path) as f:
        data = json.load(f)
    assert data[session.upload_id]['acknowledged_chunks'] == [0, 3]
    assert not state_path.with_suffix('.json.tmp').exists()


def test_sessions_survive_restart(state_path):
    session = make_session()
    session.acknowledge(1)
    JsonFileStateStore(state_path).save(session)

    reopened = JsonFileStateStore(state_path)
    loaded = reopened.load(session.upload_id)

    assert loaded is not None
    assert loaded.acknowledged_chunks == {1}
    assert loaded.total_chunks == 5


def test_load_unknown_id_returns_none(state_path):
    assert JsonFileStateStore(state_path).load('missing') is None


def test_remove(state_path):
    store = JsonFileStateStore(state_path)
    session = make_session()
    store.save(session)

    assert store.remove(session.upload_id) is True
    assert store.remove(session.upload_id) is False
    assert JsonFileStateStore(state_path).list_all() == []


def test_save_bumps_updated_at(state_path):
    store = JsonFileStateStore(state_path)
    session = make_session()
    session.updated_at = '2000-01-01T00:00:00+00:00'

    store.save(session)

    assert session.updated_at != '2000-01-01T00:00:00+00:00'


def test_corrupt_file_is_backed_up(state_path):
    state_path.parent.mkdir(parents=True)
    state_path.write_text('{ not json')

    store = JsonFileStateStore(state_path)

    assert store.list_all() == []
    backup = state_path.with_suffix('.json.bak')
    assert backup.exists()
    assert backup.read_text() == '{ not json'


def test_corrupt_record_is_skipped_and_load_raises(state_path):
    good = make_session()
    state_path.parent.mkdir(parents=True)
    state_path.write_text(json.dumps({
        good.upload_id: good.to_dict(),
        'broken': {'upload_id': 'broken', 'file_name': 'x'},
    }))

    store = JsonFileStateStore(state_path)

    assert [s.upload_id for s in store.list_all()] == [good.upload_id]
    with pytest.raises(LocalStateError):
        store.load('broken')


def test_prune_expired_removes_old_sessions():
    store = MemoryStateStore()
    old = make_session()
    old.created_at = (datetime.now(timezone.utc) - timedelta(hours=25)).isoformat()
    fresh = make_session()
    store.save(old)
    store.save(fresh)

    pruned = store.prune_expired(24 * 3600)

    assert pruned == 1
    assert store.load(old.upload_id) is None
    assert store.load(fresh.upload_id) is not None


def test_prune_handles_timestamps_without_timezone(state_path):
    old = make_session()
    old.created_at = '2024-01-01T00:00:00'
    fresh = make_session()
    store = JsonFileStateStore(state_path)
    store.save(old)
    store.save(fresh)

    reopened = JsonFileStateStore(state_path)
    pruned = reopened.prune_expired(3600)

    assert pruned == 1
    assert [s.upload_id for s in reopened.list_all()] == [fresh.upload_id]


def test_naive_timestamp_is_read_as_utc():
    session = make_session()
    record = session.to_dict()
    record['created_at'] = '2024-01-01T00:00:00'

    restored = UploadSession.from_dict(record)

    assert restored.created_at == '2024-01-01T00:00:00+00:00'
    assert restored.age_seconds(datetime(2024, 1, 1, 1, 0, tzinfo=timezone.utc)) == 3600


def test_memory_store_returns_copies():
    store = MemoryStateStore()
    session = make_session()
    store.save(session)

    session.acknowledge(2)

    assert store.load(session.upload_id).acknowledged_chunks == set()
