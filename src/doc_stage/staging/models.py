"""
Data models for staged documents.
"""

import io
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Any, Optional, Tuple

from ..errors import InvalidIdentityError
from .schema import (
    UID_FIELD, HOST_FIELD, PATH_FIELD, ON_DELETE_FIELD, DATA_FIELD,
    UID_LENGTH, HOST_LENGTH, PATH_LENGTH,
)

DELETE_MARKER = "1"
UPSERT_MARKER = "0"


@dataclass(frozen=True)
class DocumentRecord:
    """A staged document as read back from the queue."""
    scope_host: str
    scope_path: str
    document_id: str
    pending_delete: bool
    payload: Optional[bytes] = field(default=None, repr=False)

    @property
    def identity(self) -> Tuple[str, str, str]:
        return (self.scope_host, self.scope_path, self.document_id)

    @property
    def payload_size(self) -> Optional[int]:
        return len(self.payload) if self.payload is not None else None

    def open_payload(self) -> Optional[BinaryIO]:
        """Return a new reader over the payload, or None for a tombstone."""
        if self.payload is None:
            return None
        return io.BytesIO(self.payload)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization (payload reported by size only)."""
        return {
            'scope_host': self.scope_host,
            'scope_path': self.scope_path,
            'document_id': self.document_id,
            'pending_delete': self.pending_delete,
            'payload_size': self.payload_size,
        }

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'DocumentRecord':
        """Create DocumentRecord from database row."""
        payload = row.get(DATA_FIELD)
        if payload is not None and not isinstance(payload, bytes):
            # Drivers may hand back memoryview/buffer objects
            payload = bytes(payload)

        return cls(
            scope_host=row[HOST_FIELD],
            scope_path=row[PATH_FIELD],
            document_id=row[UID_FIELD],
            pending_delete=row.get(ON_DELETE_FIELD) == DELETE_MARKER,
            payload=payload,
        )


def identity_clause(scope_host: str, scope_path: str, document_id: str) -> Dict[str, str]:
    """Equality clause selecting one staged row."""
    return {HOST_FIELD: scope_host, PATH_FIELD: scope_path, UID_FIELD: document_id}


def scope_clause(scope_host: str, scope_path: str) -> Dict[str, str]:
    """Equality clause selecting every staged row of a scope."""
    return {HOST_FIELD: scope_host, PATH_FIELD: scope_path}


def validate_identity(scope_host: str, scope_path: str, document_id: Optional[str] = None) -> None:
    """
    Check identity components against the column limits.

    Raises:
        InvalidIdentityError: If a component is not a string, is empty, or is too long
    """
    checks = [("scope_host", scope_host, HOST_LENGTH), ("scope_path", scope_path, PATH_LENGTH)]
    if document_id is not None:
        checks.append(("document_id", document_id, UID_LENGTH))

    for name, value, limit in checks:
        if not isinstance(value, str):
            raise InvalidIdentityError(f"{name} must be a string, got {type(value).__name__}")
        if name == "document_id" and not value:
            raise InvalidIdentityError("document_id must not be empty")
        if len(value) > limit:
            raise InvalidIdentityError(f"{name} is longer than {limit} characters")
