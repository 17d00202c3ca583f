"""Command handler functions for CLI operations."""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar, Union

import httpx

from common.logging_config import get_logger
from cli.config import Config
from cli.constants import CONFIG_PATH
from cli.models import (
    AbandonCommand,
    NodesCommand,
    ResumeCommand,
    SessionsCommand,
    UploadCommand,
)
from cli.utils import ProgressPrinter, format_file_size
from uploader.collaborators import InMemoryCatalog, StaticTokenProvider
from uploader.exceptions import UploadError
from uploader.models import FileRecord, StorageNode
from uploader.orchestrator import UploadOrchestrator
from uploader.sources import FileSource, UploadSource
from uploader.speed_profiler import NetworkHint
from uploader.state_store import JsonFileStateStore
from uploader.storage_router import StorageRouter

logger = get_logger(__name__)

T = TypeVar('T')

RESUMABLE_CATEGORIES = ('network', 'cancelled')

_config: Optional[Config] = None


def get_config() -> Config:
    """
    Get or create global Config instance.

    Returns:
        Config instance
    """
    global _config
    if _config is None:
        logger.debug("Loading CLI config")
        _config = Config(CONFIG_PATH)
    return _config


def build_router(config: Config, client: httpx.AsyncClient) -> StorageRouter:
    token = config.get_token()
    return StorageRouter(
        config.get_nodes(),
        settings=config.get_upload_settings(),
        token_provider=StaticTokenProvider(token) if token else None,
        client=client,
    )


def build_orchestrator(config: Config, client: httpx.AsyncClient) -> UploadOrchestrator:
    router = build_router(config, client)
    return UploadOrchestrator(
        router,
        JsonFileStateStore(config.get_state_file()),
        InMemoryCatalog(),
        settings=router.settings,
        network_hint=NetworkHint.from_env(),
    )


async def _with_orchestrator(
    config: Config,
    transport: Optional[httpx.AsyncBaseTransport],
    action: Callable[[UploadOrchestrator], Awaitable[T]]
) -> T:
    async with httpx.AsyncClient(transport=transport) as client:
        orchestrator = build_orchestrator(config, client)
        await orchestrator.router.refresh_nodes()
        try:
            return await action(orchestrator)
        finally:
            await orchestrator.hooks.drain()


def _format_result(source: UploadSource, result: Union[FileRecord, BaseException]) -> str:
    if isinstance(result, FileRecord):
        return (
            f"Uploaded: {result.name} -> {result.storage_path} "
            f"(ID: {result.id[:8]}..., Size: {format_file_size(result.size_bytes)})"
        )
    if isinstance(result, UploadError):
        message = f"Error uploading {source.name}: {result.user_message} ({result})"
        if result.upload_id and result.category in RESUMABLE_CATEGORIES:
            message += f"\n  Resume with: resume {result.upload_id} {_source_path(source)}"
        return message
    return f"Error uploading {source.name}: {result}"


def _source_path(source: UploadSource) -> str:
    return str(source.path) if isinstance(source, FileSource) else source.name


def handle_upload(
    cmd: UploadCommand,
    config: Optional[Config] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> str:
    """
    Handle 'upload' command.

    Args:
        cmd: UploadCommand with file_list and optional folder_id
        config: Optional Config for dependency injection (testing)
        transport: Optional httpx transport for dependency injection (testing)

    Returns:
        One result line per file
    """
    logger.info(f"Executing upload command: {len(cmd.file_list)} file(s), folder={cmd.folder_id}")
    config = config or get_config()

    results: List[str] = []
    sources: List[UploadSource] = []
    for file_path in cmd.file_list:
        try:
            sources.append(FileSource(Path(file_path).expanduser()))
        except FileNotFoundError:
            results.append(f"Error: File not found: {file_path}")

    if not sources:
        return '\n'.join(results) if results else "No files uploaded."

    printer = ProgressPrinter()

    async def run(orchestrator: UploadOrchestrator):
        return await orchestrator.upload_many(
            sources,
            destination_folder_id=cmd.folder_id,
            on_progress=printer.for_batch,
            user_id=config.get_user_id(),
            return_exceptions=True,
        )

    try:
        outcomes = asyncio.run(_with_orchestrator(config, transport, run))
    except KeyboardInterrupt:
        return "\nUpload interrupted. Run 'sessions' to see uploads that can be resumed."
    except (UploadError, ValueError) as e:
        return f"Error: {e}"

    for source, outcome in zip(sources, outcomes):
        results.append(_format_result(source, outcome))
    return '\n'.join(results)


def handle_resume(
    cmd: ResumeCommand,
    config: Optional[Config] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> str:
    """
    Handle 'resume' command.

    Args:
        cmd: ResumeCommand with upload_id and file_path
        config: Optional Config for dependency injection (testing)
        transport: Optional httpx transport for dependency injection (testing)

    Returns:
        Result message
    """
    logger.info(f"Executing resume command: upload_id={cmd.upload_id} file={cmd.file_path}")
    config = config or get_config()
    try:
        source = FileSource(Path(cmd.file_path).expanduser())
    except FileNotFoundError:
        return f"Error: File not found: {cmd.file_path}"

    printer = ProgressPrinter()

    async def run(orchestrator: UploadOrchestrator) -> FileRecord:
        return await orchestrator.upload(
            source,
            on_progress=printer,
            resume_upload_id=cmd.upload_id,
            user_id=config.get_user_id(),
        )

    try:
        record = asyncio.run(_with_orchestrator(config, transport, run))
    except KeyboardInterrupt:
        return f"\nUpload interrupted. Resume with: resume {cmd.upload_id} {cmd.file_path}"
    except UploadError as e:
        return _format_result(source, e)
    except ValueError as e:
        return f"Error: {e}"
    return _format_result(source, record)


def handle_sessions(cmd: SessionsCommand, config: Optional[Config] = None) -> str:
    """
    Handle 'sessions' command.

    Args:
        cmd: SessionsCommand
        config: Optional Config for dependency injection (testing)

    Returns:
        Formatted list of resumable sessions
    """
    config = config or get_config()
    sessions = JsonFileStateStore(config.get_state_file()).list_all()
    if not sessions:
        return "No resumable uploads."

    sessions.sort(key=lambda s: s.created_at)
    lines = [f"Found {len(sessions)} resumable upload(s):"]
    for s in sessions:
        lines.append(
            f"  {s.upload_id}  {s.file_name}  "
            f"{len(s.acknowledged_chunks)}/{s.total_chunks} chunks  "
            f"{format_file_size(s.acknowledged_bytes())} / {format_file_size(s.total_size)}  "
            f"node={s.node_id}  started={s.created_at[:19]}"
        )
    return '\n'.join(lines)


def handle_abandon(cmd: AbandonCommand, config: Optional[Config] = None) -> str:
    """
    Handle 'abandon' command.

    Args:
        cmd: AbandonCommand with upload_id
        config: Optional Config for dependency injection (testing)

    Returns:
        Success or error message
    """
    config = config or get_config()
    store = JsonFileStateStore(config.get_state_file())
    if store.remove(cmd.upload_id):
        logger.info(f"Abandoned upload session [upload_id={cmd.upload_id}]")
        return f"Abandoned upload {cmd.upload_id}"
    return f"Error: No saved upload with id {cmd.upload_id}"


def _format_node(node: StorageNode) -> str:
    capacity = format_file_size(node.capacity) if node.capacity else "unknown"
    return (
        f"  {node.id:<12} {node.status:<8} priority={node.priority}  "
        f"free={format_file_size(max(node.free, 0))} of {capacity}  {node.endpoint}"
    )


def handle_nodes(
    cmd: NodesCommand,
    config: Optional[Config] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> str:
    """
    Handle 'nodes' command.

    Args:
        cmd: NodesCommand with action and node fields
        config: Optional Config for dependency injection (testing)
        transport: Optional httpx transport for dependency injection (testing)

    Returns:
        Node listing or result message
    """
    config = config or get_config()

    if cmd.action == "add":
        node = StorageNode(
            id=cmd.node_id,
            name=cmd.node_id,
            endpoint=cmd.endpoint.rstrip('/'),
            credential=cmd.key,
            priority=cmd.priority,
            status="checking",
        )
        try:
            config.add_node(node)
        except ValueError as e:
            return f"Error: {e}"
        return f"Added node {node.id} ({node.endpoint}). Run 'nodes check' to probe it."

    if cmd.action == "remove":
        if cmd.node_id == config.primary_node().id:
            return "Error: The primary node cannot be removed"
        if config.remove_node(cmd.node_id):
            return f"Removed node {cmd.node_id}"
        return f"Error: Unknown node {cmd.node_id}"

    if cmd.action == "check":
        async def probe() -> List[StorageNode]:
            async with httpx.AsyncClient(transport=transport) as client:
                router = build_router(config, client)
                await router.refresh_nodes()
                return router.nodes

        try:
            nodes = asyncio.run(probe())
        except (UploadError, ValueError) as e:
            return f"Error: {e}"
        for node in nodes:
            if not node.is_primary:
                config.add_node(node)
        online = sum(1 for n in nodes if n.status == "online")
        return '\n'.join([f"{online}/{len(nodes)} node(s) online:"] + [_format_node(n) for n in nodes])

    nodes = config.get_nodes()
    return '\n'.join([f"{len(nodes)} storage node(s):"] + [_format_node(n) for n in nodes])
