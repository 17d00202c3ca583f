"""Exception taxonomy for the upload engine."""

from typing import Iterable, Optional


class UploadError(Exception):
    """
    Base exception class for all upload-engine errors.
    """
    category = 'upload'
    user_message = 'Upload failed.'

    def __init__(self, message: str = '', upload_id: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.upload_id = upload_id


class TransientNetworkError(UploadError):
    """
    Raised on timeouts, connection resets, 5xx responses and rejected chunks.
    Retried at the chunk level and through the verify/finalize rounds.
    """
    category = 'network'
    user_message = 'Network problem while uploading. The upload can be resumed.'

    def __init__(
        self,
        message: str = '',
        upload_id: Optional[str] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, upload_id)
        self.status_code = status_code


class AuthError(UploadError):
    """
    Raised when the bearer credential is missing, expired or rejected.
    Terminal, never retried.
    """
    category = 'auth'
    user_message = 'Your session has expired. Please sign in again.'


class CapacityError(UploadError):
    """
    Raised when no storage node is online with enough free space.
    Terminal, never retried.
    """
    category = 'capacity'
    user_message = 'No storage node has room for this file.'


class IntegrityError(UploadError):
    """
    Raised when finalize keeps reporting failed or missing chunks after the
    retry budget is spent, or when the node refuses to assemble the file.
    """
    category = 'integrity'
    user_message = 'The upload could not be assembled on the server and cannot complete.'

    def __init__(
        self,
        message: str = '',
        upload_id: Optional[str] = None,
        failed_chunks: Iterable[int] = (),
        missing_chunks: Iterable[int] = ()
    ):
        super().__init__(message, upload_id)
        self.failed_chunks = sorted(set(failed_chunks))
        self.missing_chunks = sorted(set(missing_chunks))


class LocalStateError(UploadError):
    """
    Raised when a persisted session is unreadable or does not match the file.
    Callers treat it as "start fresh".
    """
    category = 'state'
    user_message = 'Saved upload state was unusable; the upload restarted.'


class UploadCancelledError(UploadError):
    """
    Raised when the caller cancels an upload. The session stays resumable.
    """
    category = 'cancelled'
    user_message = 'Upload paused.'


class CatalogError(UploadError):
    """
    Raised when the catalog collaborator fails to record an already-stored file.
    """
    category = 'catalog'
    user_message = 'The file was uploaded but could not be added to your library.'
