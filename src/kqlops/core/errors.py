"""Exception types raised by the kqlops core.

Structural problems (a malformed connection string, a frame with the wrong
shape, frames arriving in an impossible order) are raised as exceptions.
Content-level problems (a cell value that does not fit its column type) are
never raised; they surface as warnings on the QueryResult instead.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from kqlops.core.frames import QueryError


class KqlopsError(Exception):
    """Base class for every error raised by kqlops."""


class ConnectionStringError(KqlopsError, ValueError):
    """Raised when a connection string cannot be turned into a descriptor."""


class MalformedConnectionString(ConnectionStringError):
    """Empty keys, missing values, duplicate keys or bad quoting."""


class UnrecognizedKey(ConnectionStringError):
    """A key that is not part of the recognized key set."""

    def __init__(self, key: str):
        super().__init__(f"Unrecognized connection string key '{key}'")
        self.key = key


class InvalidIdentityConfiguration(ConnectionStringError):
    """Missing or conflicting fields for the selected identity mode."""

    def __init__(self, message: str, fields: Iterable[str] = ()):
        super().__init__(message)
        self.fields = tuple(fields)


class InvalidServiceUri(ConnectionStringError):
    """The Data Source is not an absolute http(s) URI."""


class FrameDecodeError(KqlopsError, ValueError):
    """Raised when a response element does not have a valid frame shape."""

    def __init__(self, message: str, index: int | None = None):
        if index is not None:
            message = f"{message} (frame #{index})"
        super().__init__(message)
        self.index = index


class UnknownFrameKind(FrameDecodeError):
    """The element names a FrameType this client does not know."""


class MalformedFrame(FrameDecodeError):
    """The element is missing fields or carries values of the wrong type."""


class MaterializationError(KqlopsError, RuntimeError):
    """Raised when frames violate the table lifecycle."""

    def __init__(self, message: str, table_id: int | None = None):
        super().__init__(message)
        self.table_id = table_id


class DuplicateTableHeader(MaterializationError):
    """A table id was opened twice."""


class FragmentBeforeHeader(MaterializationError):
    """Rows or a completion arrived for a table id that was never opened."""


class FragmentAfterCompletion(MaterializationError):
    """Rows or a completion arrived for a table id that is already closed."""


class RowArityMismatch(MaterializationError):
    """A row does not have one cell per column."""


class IncompleteDataset(MaterializationError):
    """The dataset ended while tables were still open."""


class UnexpectedEndOfStream(MaterializationError):
    """The frame stream stopped before its DataSetCompletion frame."""


class QueryServiceError(KqlopsError, RuntimeError):
    """One or more errors reported by the service itself."""

    def __init__(self, errors: Iterable[QueryError]):
        self.errors = tuple(errors)
        if len(self.errors) == 1:
            message = _describe(self.errors[0])
        else:
            message = f"{len(self.errors)} service errors: " + "; ".join(
                _describe(e) for e in self.errors
            )
        super().__init__(message)


class AuthError(KqlopsError, RuntimeError):
    """Raised when a bearer token cannot be obtained."""


class MissingDatabase(KqlopsError, ValueError):
    """A query names no database and the connection has no Initial Catalog."""


class TransportError(KqlopsError, RuntimeError):
    """The service answered with a non-success status and no service error body."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP {status_code}: {body[:500]}")
        self.status_code = status_code
        self.body = body


def _describe(error: QueryError) -> str:
    return f"{error.code}: {error.message}" if error.code else error.message
