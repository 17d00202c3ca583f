"""
Persistent record of in-flight uploads, keyed by upload id.

Resume is best-effort: the store may be lost or corrupted at any time, and the
orchestrator re-derives progress from the storage node when it disagrees
with (or lacks) local state.
"""

import json
import os
import shutil
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from common.logging_config import get_logger
from uploader.exceptions import LocalStateError
from uploader.models import UploadSession, utc_now_iso

logger = get_logger(__name__)


class ResumableStateStore(ABC):
    """Key-value persistence port for upload sessions."""

    @abstractmethod
    def save(self, session: UploadSession) -> None:
        """Insert or overwrite a session. Saving an unchanged session only bumps updated_at."""

    @abstractmethod
    def load(self, upload_id: str) -> Optional[UploadSession]:
        """
        Load a session.

        Returns:
            The session, or None if the id is unknown

        Raises:
            LocalStateError: If the stored record is unreadable
        """

    @abstractmethod
    def remove(self, upload_id: str) -> bool:
        """Remove a session. Returns True if it existed."""

    @abstractmethod
    def list_all(self) -> List[UploadSession]:
        """All readable sessions; corrupt records are skipped."""

    def prune_expired(self, max_age_seconds: float) -> int:
        """
        Remove sessions created more than max_age_seconds ago.

        Returns:
            Number of sessions removed
        """
        now = datetime.now(timezone.utc)
        pruned = 0
        for session in self.list_all():
            try:
                expired = session.age_seconds(now) > max_age_seconds
            except (TypeError, ValueError) as e:
                logger.warning(f"Removing upload session with unreadable timestamp: {e} [upload_id={session.upload_id}]")
                expired = True
            if expired:
                self.remove(session.upload_id)
                pruned += 1
        if pruned:
            logger.info(f"Pruned {pruned} expired upload session(s) (older than {max_age_seconds:.0f}s)")
        return pruned


class MemoryStateStore(ResumableStateStore):
    """In-process store. Does not survive a restart; intended for tests and one-shot tools."""

    def __init__(self):
        self._records: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def save(self, session: UploadSession) -> None:
        session.updated_at = utc_now_iso()
        with self._lock:
            self._records[session.upload_id] = session.to_dict()

    def load(self, upload_id: str) -> Optional[UploadSession]:
        with self._lock:
            record = self._records.get(upload_id)
        return UploadSession.from_dict(record) if record is not None else None

    def remove(self, upload_id: str) -> bool:
        with self._lock:
            return self._records.pop(upload_id, None) is not None

    def list_all(self) -> List[UploadSession]:
        with self._lock:
            records = list(self._records.values())
        return [UploadSession.from_dict(r) for r in records]


class JsonFileStateStore(ResumableStateStore):
    """
    Thread-safe store persisted to a single JSON file.

    Every mutation rewrites the file through a temp file + os.replace, so a
    crash mid-write leaves the previous version intact. A file that cannot be
    parsed is backed up to <name>.bak and the store starts empty.
    """

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._lock = threading.RLock()
        self._records: Dict[str, dict] = {}
        self._load_from_disk()
        logger.info(f"Upload state store initialized [path={self._path}] [sessions={len(self._records)}]")

    @property
    def path(self) -> Path:
        return self._path

    def save(self, session: UploadSession) -> None:
        session.updated_at = utc_now_iso()
        with self._lock:
            self._records[session.upload_id] = session.to_dict()
            self._save_to_disk()

    def load(self, upload_id: str) -> Optional[UploadSession]:
        with self._lock:
            record = self._records.get(upload_id)
        if record is None:
            return None
        return UploadSession.from_dict(record)

    def remove(self, upload_id: str) -> bool:
        with self._lock:
            existed = self._records.pop(upload_id, None) is not None
            if existed:
                self._save_to_disk()
        return existed

    def list_all(self) -> List[UploadSession]:
        with self._lock:
            records = list(self._records.values())

        sessions = []
        for record in records:
            try:
                sessions.append(UploadSession.from_dict(record))
            except LocalStateError as e:
                logger.warning(f"Skipping unreadable upload session: {e}")
        return sessions

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            logger.debug(f"State file not found at {self._path}, starting empty")
            return

        try:
            with open(self._path, 'r') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            self._records = {str(k): v for k, v in data.items() if isinstance(v, dict)}
        except (json.JSONDecodeError, ValueError, OSError) as e:
            backup_path = self._path.with_suffix(self._path.suffix + '.bak')
            logger.warning(
                f"Failed to read upload state from {self._path}: {e}; "
                f"backing up to {backup_path} and starting empty"
            )
            try:
                shutil.copy(self._path, backup_path)
            except OSError as copy_error:
                logger.warning(f"Could not back up corrupt state file: {copy_error}")
            self._records = {}

    def _save_to_disk(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + '.tmp')
            with open(tmp_path, 'w') as f:
                json.dump(self._records, f, indent=2)
            os.replace(tmp_path, self._path)
        except OSError as e:
            logger.warning(
                f"Failed to persist upload state to {self._path}: {e}, "
                "continuing with in-memory state only"
            )
