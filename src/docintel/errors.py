"""Exception taxonomy shared by the ingestion, search and query stages."""
from __future__ import annotations


class DocIntelError(RuntimeError):
    """Base class for pipeline errors carrying an optional underlying cause."""

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.__cause__ = cause


class NotFoundError(DocIntelError):
    """Raised when a corpus or document path does not exist in the content store."""


class ParseError(DocIntelError):
    """Raised when document bytes cannot be parsed."""

    def __init__(self, message: str, *, path: str | None = None, cause: Exception | None = None) -> None:
        super().__init__(message, cause=cause)
        self.path = path


class ClassificationError(DocIntelError):
    """Raised when the classifier is unavailable or answers with an unknown label."""


class ExtractionError(DocIntelError):
    """Raised when generated table output cannot be interpreted."""


class IndexBuildError(DocIntelError):
    """Raised when a search index generation cannot be built."""


class QueryError(DocIntelError):
    """Raised for malformed filters, dimensions or metrics in a query."""


class IndexRetryError(DocIntelError):
    """Signals that an index is still building and the query should be retried."""

    def __init__(self, message: str, *, retry_after: float = 1.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientServiceError(DocIntelError):
    """Raised by external collaborators for failures worth retrying."""


class ServiceTimeoutError(TransientServiceError):
    """Raised when an external collaborator does not answer in time."""


__all__ = [
    "ClassificationError",
    "DocIntelError",
    "ExtractionError",
    "IndexBuildError",
    "IndexRetryError",
    "NotFoundError",
    "ParseError",
    "QueryError",
    "ServiceTimeoutError",
    "TransientServiceError",
]
