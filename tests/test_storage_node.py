"""Tests for the storage node API endpoints."""

import pytest
from fastapi.testclient import TestClient

from storage_node.config import NodeSettings
from storage_node.main import create_app

AUTH = {'Authorization': 'Bearer user-token', 'X-Node-Key': 'node-secret'}


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / 'node'


@pytest.fixture
def client(data_dir):
    """Create FastAPI test client for a node with a key and a 1000 byte quota."""
    app = create_app(NodeSettings(data_dir=data_dir, api_key='node-secret', capacity_bytes=1000))
    return TestClient(app)


def send_chunk(client, upload_id, index, data, total, file_name='movie.mp4', storage_file_name=None, headers=AUTH):
    form = {'uploadId': upload_id, 'chunkIndex': str(index), 'totalChunks': str(total), 'fileName': file_name}
    if storage_file_name:
        form['storageFileName'] = storage_file_name
    return client.post('/chunk-upload', data=form, files={'chunk': (f'chunk_{index}', data)}, headers=headers)


def test_health_needs_no_auth(client):
    response = client.get('/health')

    assert response.status_code == 200
    data = response.json()
    assert data['status'] == 'online'
    assert data['storage']['totalBytes'] == 1000
    assert data['storage']['usedBytes'] == 0
    assert response.headers['X-Request-ID']


def test_missing_bearer_is_rejected(client):
    response = send_chunk(client, 'up-1', 0, b'abc', 1, headers={})

    assert response.status_code == 401


def test_wrong_node_key_is_rejected(client):
    response = send_chunk(client, 'up-1', 0, b'abc', 1, headers={
        'Authorization': 'Bearer user-token', 'X-Node-Key': 'wrong'
    })

    assert response.status_code == 403
    assert response.json()['code'] == 'INVALID_NODE_KEY'


def test_chunked_upload_round_trip(client, data_dir):
    first = send_chunk(client, 'up-1', 0, b'0123456789', 3)
    assert first.status_code == 200
    storage_name = first.json()['storageFileName']
    assert storage_name.endswith('.mp4')

    send_chunk(client, 'up-1', 2, b'xy', 3, storage_file_name=storage_name)
    status = client.get('/chunk-status/up-1', headers=AUTH).json()
    assert status['uploadedChunks'] == [0, 2]
    assert status['totalChunks'] == 3
    assert status['chunkSize'] == 10
    assert status['storageFileName'] == storage_name

    send_chunk(client, 'up-1', 1, b'abcdefghij', 3, storage_file_name=storage_name)
    response = client.post('/finalize-upload', headers=AUTH, json={
        'uploadId': 'up-1', 'storageFileName': storage_name, 'totalChunks': 3,
        'mimeType': 'video/mp4', 'userId': 'u1',
    })

    assert response.status_code == 200
    assert response.json() == {'path': f'u1/{storage_name}', 'size': 22}
    assert (data_dir / 'u1' / storage_name).read_bytes() == b'0123456789abcdefghijxy'
    assert client.get('/chunk-status/up-1', headers=AUTH).status_code == 404


def test_storage_name_fixed_by_first_chunk(client):
    first = send_chunk(client, 'up-1', 0, b'abc', 2, storage_file_name='chosen.bin').json()
    second = send_chunk(client, 'up-1', 1, b'def', 2, storage_file_name='other.bin').json()

    assert first['storageFileName'] == 'chosen.bin'
    assert second['storageFileName'] == 'chosen.bin'


def test_resent_chunk_overwrites(client, data_dir):
    send_chunk(client, 'up-1', 0, b'old', 1, storage_file_name='s.bin')
    send_chunk(client, 'up-1', 0, b'new', 1, storage_file_name='s.bin')

    response = client.post('/finalize-upload', headers=AUTH, json={
        'uploadId': 'up-1', 'storageFileName': 's.bin', 'totalChunks': 1,
    })

    assert response.json()['size'] == 3
    assert (data_dir / 'anonymous' / 's.bin').read_bytes() == b'new'


def test_chunk_index_out_of_range(client):
    response = send_chunk(client, 'up-1', 3, b'abc', 3)

    assert response.status_code == 400


def test_finalize_reports_missing_chunks(client):
    send_chunk(client, 'up-1', 0, b'abc', 3, storage_file_name='s.bin')

    response = client.post('/finalize-upload', headers=AUTH, json={
        'uploadId': 'up-1', 'storageFileName': 's.bin', 'totalChunks': 3,
    })

    assert response.status_code == 400
    assert response.json()['code'] == 'MISSING_CHUNKS'
    assert response.json()['missingChunks'] == [1, 2]


def test_finalize_reports_failed_chunks(client, data_dir):
    send_chunk(client, 'up-1', 0, b'abc', 2, storage_file_name='s.bin')
    send_chunk(client, 'up-1', 1, b'def', 2, storage_file_name='s.bin')
    (data_dir / '.chunks' / 'up-1' / 'chunk_1').write_bytes(b'')

    response = client.post('/finalize-upload', headers=AUTH, json={
        'uploadId': 'up-1', 'storageFileName': 's.bin', 'totalChunks': 2,
    })

    assert response.status_code == 422
    assert response.json()['failedChunks'] == [1]


def test_finalize_unknown_upload(client):
    response = client.post('/finalize-upload', headers=AUTH, json={
        'uploadId': 'ghost', 'storageFileName': 's.bin', 'totalChunks': 2,
    })

    assert response.status_code == 404
    assert response.json()['code'] == 'UPLOAD_NOT_FOUND'


def test_storage_full(client):
    response = send_chunk(client, 'up-1', 0, b'x' * 1001, 1)

    assert response.status_code == 507
    assert response.json()['code'] == 'STORAGE_FULL'


def test_direct_upload_and_delete(client, data_dir):
    response = client.post(
        '/upload',
        files={'file': ('notes.txt', b'hello', 'text/plain')},
        data={'userId': 'u1'},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body['size'] == 5
    assert body['mimeType'] == 'text/plain'
    assert body['path'].startswith('u1/') and body['path'].endswith('.txt')
    assert (data_dir / body['path']).read_bytes() == b'hello'

    deleted = client.request('DELETE', '/delete', json={'path': body['path']}, headers=AUTH)
    assert deleted.json() == {'success': True, 'deleted': True}
    assert not (data_dir / body['path']).exists()


def test_delete_rejects_path_traversal(client):
    response = client.request('DELETE', '/delete', json={'path': '../outside.txt'}, headers=AUTH)

    assert response.status_code == 400
    assert response.json()['code'] == 'INVALID_PATH'


def test_delete_cannot_reach_chunk_storage(client):
    send_chunk(client, 'up-1', 0, b'abc', 1)

    response = client.request('DELETE', '/delete', json={'path': '.chunks/up-1/chunk_0'}, headers=AUTH)

    assert response.status_code == 400
