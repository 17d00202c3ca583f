"""Unit tests for StorageRouter (node selection and the HTTP protocol client)."""

import asyncio

import httpx
import pytest

from common.constants import MIB
from uploader.collaborators import StaticTokenProvider
from uploader.config import UploadSettings
from uploader.exceptions import AuthError, CapacityError, IntegrityError, TransientNetworkError
from uploader.models import StorageNode
from uploader.sources import BytesSource
from uploader.storage_router import StorageRouter


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def node():
    return StorageNode(id='primary', endpoint='http://node.test', credential='node-secret', capacity=MIB, priority=0)


@pytest.fixture
def settings():
    return UploadSettings(chunk_retries=2, retry_base_delay=0.5, retry_backoff_multiplier=2.0)


def make_router(handler, nodes, settings, token_provider=None, sleep=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StorageRouter(
        nodes,
        settings=settings,
        token_provider=token_provider,
        client=client,
        sleep=sleep or RecordingSleep(),
    )


def chunk_ack(index: int, name: str = 'stored.bin') -> dict:
    return {'uploadId': 'up-1', 'chunkIndex': index, 'storageFileName': name, 'size': 3}


class TestNodeSelection:
    """Ranking is (priority asc, free desc) over online nodes with room."""

    def test_prefers_priority_then_free_space(self, settings):
        nodes = [
            StorageNode(id='a', endpoint='http://a', capacity=100, used=90, priority=1),
            StorageNode(id='b', endpoint='http://b', capacity=100, used=10, priority=1),
            StorageNode(id='c', endpoint='http://c', capacity=100, used=80, priority=0),
        ]
        router = StorageRouter(nodes, settings=settings, client=httpx.AsyncClient())

        assert [n.id for n in router.ranked_nodes(5)] == ['c', 'b', 'a']
        assert router.select_node(5).id == 'c'

    def test_skips_offline_and_full_nodes(self, settings):
        nodes = [
            StorageNode(id='offline', endpoint='http://a', capacity=100, priority=0, status='offline'),
            StorageNode(id='full', endpoint='http://b', capacity=100, used=95, priority=0),
            StorageNode(id='ok', endpoint='http://c', capacity=100, used=10, priority=5),
        ]
        router = StorageRouter(nodes, settings=settings, client=httpx.AsyncClient())

        assert [n.id for n in router.ranked_nodes(50)] == ['ok']

    def test_no_node_fits(self, settings):
        nodes = [StorageNode(id='a', endpoint='http://a', capacity=100, status='offline')]
        router = StorageRouter(nodes, settings=settings, client=httpx.AsyncClient())

        assert router.select_node(1) is None

    def test_record_usage_reduces_free_space(self, settings):
        router = StorageRouter(
            [StorageNode(id='a', endpoint='http://a', capacity=100)], settings=settings, client=httpx.AsyncClient()
        )

        router.record_usage('a', 60)

        assert router.get_node('a').free == 40
        assert router.select_node(50) is None

    def test_primary_cannot_be_removed(self, node, settings):
        router = StorageRouter([node], settings=settings, client=httpx.AsyncClient())
        router.add_node(StorageNode(id='extra', endpoint='http://extra'))

        assert router.remove_node('primary') is False
        assert router.remove_node('extra') is True
        assert [n.id for n in router.nodes] == ['primary']


class TestHeaders:

    @pytest.mark.asyncio
    async def test_token_provider_and_node_key(self, node, settings):
        seen = []

        def handler(request):
            seen.append(request.headers)
            return httpx.Response(200, json=chunk_ack(0))

        router = make_router(handler, [node], settings, token_provider=StaticTokenProvider('user-token'))
        await router.upload_chunk(node, 'up-1', 0, b'abc', 1, 'a.bin')

        assert seen[0]['Authorization'] == 'Bearer user-token'
        assert seen[0]['X-Node-Key'] == 'node-secret'
        assert seen[0]['X-Request-ID']

    @pytest.mark.asyncio
    async def test_node_credential_is_bearer_without_provider(self, node, settings):
        seen = []

        def handler(request):
            seen.append(request.headers)
            return httpx.Response(200, json=chunk_ack(0))

        router = make_router(handler, [node], settings)
        await router.upload_chunk(node, 'up-1', 0, b'abc', 1, 'a.bin')

        assert seen[0]['Authorization'] == 'Bearer node-secret'

    @pytest.mark.asyncio
    async def test_missing_token_fails_before_any_request(self, node, settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200)

        router = make_router(handler, [node], settings, token_provider=StaticTokenProvider(None))

        with pytest.raises(AuthError):
            await router.upload_chunk(node, 'up-1', 0, b'abc', 1, 'a.bin')
        assert calls == []


class TestChunkUpload:

    @pytest.mark.asyncio
    async def test_sends_form_fields(self, node, settings):
        bodies = []

        def handler(request):
            bodies.append(request.read())
            return httpx.Response(200, json=chunk_ack(2, 'assigned.mp4'))

        router = make_router(handler, [node], settings)
        ack = await router.upload_chunk(node, 'up-1', 2, b'abc', 5, 'movie.mp4', storage_file_name='assigned.mp4')

        assert ack.storage_file_name == 'assigned.mp4'
        assert ack.chunk_index == 2
        body = bodies[0]
        assert b'name="uploadId"' in body and b'up-1' in body
        assert b'name="chunkIndex"' in body
        assert b'name="totalChunks"' in body
        assert b'name="storageFileName"' in body
        assert b'name="chunk"' in body

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_backoff(self, node, settings):
        """Chunk fails twice with 500, then succeeds within the retry budget."""
        responses = [httpx.Response(500), httpx.Response(503), httpx.Response(200, json=chunk_ack(2))]
        sleep = RecordingSleep()

        router = make_router(lambda request: responses.pop(0), [node], settings, sleep=sleep)
        ack = await router.upload_chunk(node, 'up-1', 2, b'abc', 5, 'movie.mp4')

        assert ack.chunk_index == 2
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_server_errors_beyond_budget_are_transient(self, node, settings):
        router = make_router(lambda request: httpx.Response(500, json={'detail': 'boom'}), [node], settings)

        with pytest.raises(TransientNetworkError) as exc_info:
            await router.upload_chunk(node, 'up-1', 0, b'abc', 1, 'a.bin')
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_timeouts_are_retried_then_transient(self, node, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        router = make_router(handler, [node], settings)

        with pytest.raises(TransientNetworkError):
            await router.upload_chunk(node, 'up-1', 0, b'abc', 1, 'a.bin')
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_unauthorized_is_auth_error(self, node, settings):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(401, json={'detail': 'expired'})

        router = make_router(handler, [node], settings)

        with pytest.raises(AuthError):
            await router.upload_chunk(node, 'up-1', 0, b'abc', 1, 'a.bin')
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_storage_full_is_capacity_error(self, node, settings):
        router = make_router(
            lambda request: httpx.Response(507, json={'detail': 'full', 'code': 'STORAGE_FULL'}), [node], settings
        )

        with pytest.raises(CapacityError):
            await router.upload_chunk(node, 'up-1', 0, b'abc', 1, 'a.bin')

    @pytest.mark.asyncio
    async def test_rejected_chunk_is_transient(self, node, settings):
        router = make_router(lambda request: httpx.Response(400, json={'detail': 'bad index'}), [node], settings)

        with pytest.raises(TransientNetworkError) as exc_info:
            await router.upload_chunk(node, 'up-1', 0, b'abc', 1, 'a.bin')
        assert exc_info.value.status_code == 400


class TestChunkStatus:

    @pytest.mark.asyncio
    async def test_unknown_upload_is_empty(self, node, settings):
        router = make_router(lambda request: httpx.Response(404, json={'detail': 'nope'}), [node], settings)

        status = await router.chunk_status(node, 'up-1')

        assert status.uploaded_chunks == []
        assert status.chunk_size is None

    @pytest.mark.asyncio
    async def test_parses_remote_view(self, node, settings):
        def handler(request):
            assert request.url.path == '/chunk-status/up-1'
            return httpx.Response(200, json={
                'uploadId': 'up-1', 'storageFileName': 's.bin', 'totalChunks': 5,
                'chunkSize': 10, 'uploadedChunks': [0, 1, 3],
            })

        router = make_router(handler, [node], settings)
        status = await router.chunk_status(node, 'up-1')

        assert status.uploaded_chunks == [0, 1, 3]
        assert status.chunk_size == 10
        assert status.storage_file_name == 's.bin'


class TestFinalize:

    @pytest.mark.asyncio
    async def test_success(self, node, settings):
        bodies = []

        def handler(request):
            bodies.append(request.read())
            return httpx.Response(200, json={'path': 'u1/s.bin', 'size': 45})

        router = make_router(handler, [node], settings)
        result = await router.finalize(node, 'up-1', 's.bin', 5, 'video/mp4', user_id='u1')

        assert result.path == 'u1/s.bin'
        assert result.size == 45
        assert b'"totalChunks":5' in bodies[0].replace(b' ', b'')

    @pytest.mark.asyncio
    async def test_missing_chunks(self, node, settings):
        router = make_router(
            lambda request: httpx.Response(400, json={'detail': 'missing', 'missingChunks': [4, 2]}), [node], settings
        )

        with pytest.raises(IntegrityError) as exc_info:
            await router.finalize(node, 'up-1', 's.bin', 5, 'video/mp4')
        assert exc_info.value.missing_chunks == [2, 4]
        assert exc_info.value.failed_chunks == []

    @pytest.mark.asyncio
    async def test_failed_chunks(self, node, settings):
        router = make_router(
            lambda request: httpx.Response(422, json={'detail': 'corrupt', 'failedChunks': [1]}), [node], settings
        )

        with pytest.raises(IntegrityError) as exc_info:
            await router.finalize(node, 'up-1', 's.bin', 5, 'video/mp4')
        assert exc_info.value.failed_chunks == [1]

    @pytest.mark.asyncio
    async def test_rejection_without_lists_is_terminal(self, node, settings):
        router = make_router(lambda request: httpx.Response(404, json={'detail': 'unknown'}), [node], settings)

        with pytest.raises(IntegrityError) as exc_info:
            await router.finalize(node, 'up-1', 's.bin', 5, 'video/mp4')
        assert exc_info.value.failed_chunks == []
        assert exc_info.value.missing_chunks == []

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, node, settings):
        router = make_router(lambda request: httpx.Response(502), [node], settings)

        with pytest.raises(TransientNetworkError):
            await router.finalize(node, 'up-1', 's.bin', 5, 'video/mp4')

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 429])
    async def test_throttled_finalize_is_transient(self, node, settings, status):
        router = make_router(lambda request: httpx.Response(status, json={'detail': 'slow down'}), [node], settings)

        with pytest.raises(TransientNetworkError) as exc_info:
            await router.finalize(node, 'up-1', 's.bin', 5, 'video/mp4')

        assert exc_info.value.status_code == status


class TestDirectUploadAndDelete:

    @pytest.mark.asyncio
    async def test_direct_upload_reports_bytes_sent(self, node, settings):
        def handler(request):
            assert request.url.path == '/upload'
            return httpx.Response(200, json={
                'path': 'u1/abc.txt', 'fileName': 'abc.txt', 'size': 200 * 1024, 'mimeType': 'text/plain'
            })

        router = make_router(handler, [node], settings)
        sent = []
        source = BytesSource('notes.txt', b'x' * (200 * 1024))

        result = await router.upload_direct(node, source, user_id='u1', on_bytes_sent=sent.append)

        assert result.path == 'u1/abc.txt'
        assert sent[-1] == source.size
        assert sent == sorted(sent)

    @pytest.mark.asyncio
    async def test_delete_never_raises(self, node, settings):
        router = make_router(lambda request: httpx.Response(500), [node], settings)

        assert await router.delete(node, 'u1/abc.txt') is False

    @pytest.mark.asyncio
    async def test_delete_success(self, node, settings):
        router = make_router(lambda request: httpx.Response(200, json={'success': True}), [node], settings)

        assert await router.delete(node, 'u1/abc.txt') is True


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_updates_capacity(self, node, settings):
        def handler(request):
            return httpx.Response(200, json={
                'status': 'online', 'timestamp': '2024-01-01T00:00:00Z',
                'storage': {'totalBytes': 1000, 'usedBytes': 250, 'freeBytes': 750, 'fileCount': 3},
            })

        node.status = 'checking'
        router = make_router(handler, [node], settings)

        assert await router.health_check(node) is True
        assert node.status == 'online'
        assert node.capacity == 1000
        assert node.free == 750

    @pytest.mark.asyncio
    async def test_unreachable_node_goes_offline(self, node, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        router = make_router(handler, [node], settings)

        assert await router.health_check(node) is False
        assert node.status == 'offline'
        assert router.select_node(1) is None

    @pytest.mark.asyncio
    async def test_refresh_nodes_probes_all(self, settings):
        nodes = [
            StorageNode(id='up', endpoint='http://up.test', capacity=100),
            StorageNode(id='down', endpoint='http://down.test', capacity=100),
        ]

        def handler(request):
            if request.url.host == 'up.test':
                return httpx.Response(200, json={'status': 'online', 'timestamp': 'now'})
            return httpx.Response(503)

        router = make_router(handler, nodes, settings)

        assert await router.refresh_nodes() == {'up': True, 'down': False}

    @pytest.mark.asyncio
    async def test_background_probes_run_until_stopped(self, node, settings):
        probes = []

        def handler(request):
            probes.append(request.url.path)
            return httpx.Response(200, json={'status': 'online', 'timestamp': 'now'})

        node.status = 'offline'
        router = make_router(handler, [node], settings)

        router.start_health_probes(interval=0.01)
        router.start_health_probes(interval=0.01)
        await asyncio.sleep(0.05)
        await router.close()
        seen = len(probes)
        await asyncio.sleep(0.03)

        assert seen >= 2
        assert len(probes) == seen
        assert node.status == 'online'
