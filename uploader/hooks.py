"""Failure-isolated side effects that run after a file record exists."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from common.logging_config import get_logger
from uploader.collaborators import UsageAccountant
from uploader.models import FileRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class UploadCompleted:
    """Completion event handed to every hook."""
    record: FileRecord
    node_id: str
    upload_id: Optional[str]
    bytes_transferred: int


@dataclass(frozen=True)
class HookResult:
    """Tagged outcome of one hook invocation."""
    name: str
    ok: bool
    error: Optional[str] = None


PostUploadHook = Callable[[UploadCompleted], Awaitable[None]]
HookFailureNotifier = Callable[[HookResult, UploadCompleted], None]


class PostUploadHookDispatcher:
    """
    Runs registered hooks in the background with bounded concurrency.

    A failing hook is logged and reported to on_failure; it never affects
    other hooks or the upload that triggered it.
    """

    def __init__(
        self,
        concurrency: int = 4,
        on_failure: Optional[HookFailureNotifier] = None
    ):
        self._hooks: Dict[str, PostUploadHook] = {}
        self._semaphore = asyncio.Semaphore(concurrency)
        self._pending: Set[asyncio.Task] = set()
        self.on_failure = on_failure

    def register(self, name: str, hook: PostUploadHook) -> None:
        self._hooks[name] = hook
        logger.debug(f"Registered post-upload hook: {name}")

    @property
    def hook_names(self) -> List[str]:
        return list(self._hooks)

    def dispatch(self, event: UploadCompleted) -> Optional[asyncio.Task]:
        """
        Schedule every hook for event without waiting for them.

        Returns:
            The background task (resolves to a list of HookResult), or None with no hooks
        """
        if not self._hooks:
            return None
        task = asyncio.create_task(self.run_hooks(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def run_hooks(self, event: UploadCompleted) -> List[HookResult]:
        hooks = list(self._hooks.items())
        return list(await asyncio.gather(*(self._run_one(name, hook, event) for name, hook in hooks)))

    async def _run_one(self, name: str, hook: PostUploadHook, event: UploadCompleted) -> HookResult:
        async with self._semaphore:
            try:
                await hook(event)
            except Exception as e:
                logger.error(
                    f"Post-upload hook {name} failed for {event.record.name}: {e} "
                    f"[upload_id={event.upload_id}]",
                    exc_info=True
                )
                result = HookResult(name=name, ok=False, error=str(e))
                self._notify(result, event)
                return result

        logger.debug(f"Post-upload hook {name} finished for {event.record.name}")
        return HookResult(name=name, ok=True)

    def _notify(self, result: HookResult, event: UploadCompleted) -> None:
        if self.on_failure is None:
            return
        try:
            self.on_failure(result, event)
        except Exception as e:
            logger.warning(f"Hook failure notifier raised: {e}")

    async def drain(self) -> None:
        """Wait for every dispatched hook to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def usage_accounting_hook(accountant: UsageAccountant) -> PostUploadHook:
    """Hook reporting (user_id, bytes_transferred) to the usage-accounting collaborator."""

    async def record_usage(event: UploadCompleted) -> None:
        await accountant.record_transfer(event.record.user_id, event.bytes_transferred)

    return record_usage
