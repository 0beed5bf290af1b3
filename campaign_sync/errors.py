"""Error taxonomy for the sync engine."""

from enum import Enum
from typing import Any, Optional


class CampaignSyncError(Exception):
    """Base class for every error raised by the sync engine."""

    kind = "error"


class AuthError(CampaignSyncError):
    """The ad platform rejected our credentials. Fatal for the run."""

    kind = "auth"


class TransportErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    RATE_LIMIT_EXHAUSTED = "rate_limit_exhausted"


_RETRYABLE_KINDS = frozenset(
    {TransportErrorKind.TIMEOUT, TransportErrorKind.NETWORK_ERROR, TransportErrorKind.SERVER_ERROR}
)


class TransportError(CampaignSyncError):
    """An HTTP exchange failed, or kept failing until its retries ran out."""

    def __init__(self, kind: TransportErrorKind, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind.value
        self.error_kind = kind
        self.status = status
        # Set once the transport has spent its retries on this error
        self.exhausted = False

    @property
    def retryable(self) -> bool:
        return self.error_kind in _RETRYABLE_KINDS

    def __repr__(self) -> str:
        return f"TransportError(kind={self.kind!r}, status={self.status!r}, message={str(self)!r})"


class ResponseFormatError(CampaignSyncError):
    """A 2xx response body did not match the expected schema."""

    kind = "response_format"


class SyncRejected(CampaignSyncError):
    """The sync endpoint answered but reported success=false."""

    kind = "sync_rejected"


class PersistenceError(CampaignSyncError):
    """The campaign could not be written to the database."""

    kind = "persistence"


class PaginationIncomplete(CampaignSyncError):
    """A page could not be fetched; carries the records gathered before it."""

    kind = "pagination_incomplete"

    def __init__(self, records: list[Any], page: int, cause: BaseException) -> None:
        super().__init__(
            f"Pagination stopped at page {page} after {len(records)} records: {cause}"
        )
        self.records = records
        self.page = page
        self.cause = cause
