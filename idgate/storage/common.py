"""Storage contracts shared between memory and postgres implementations.

The user repository talks to a ``DocumentStore``; which concrete store sits
behind it is decided once by the runtime.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

# Fields a single user document can be looked up by; all are unique.
LOOKUP_FIELDS = frozenset({"id", "email", "username"})

# Fields ``update_one`` may write. ``id``, ``email``, ``username`` and
# ``created_at`` are immutable after insert.
MUTABLE_FIELDS = frozenset(
    {"password_hash", "first_name", "last_name", "role", "status", "updated_at"}
)


class DocumentStore(Protocol):
    def find_one(self, field: str, value: str) -> Optional[Dict[str, Any]]: ...

    def insert_one(self, doc: Dict[str, Any]) -> None: ...

    def update_one(self, user_id: str, fields: Dict[str, Any]) -> bool: ...

    def delete_one(self, user_id: str) -> bool: ...

    def count_documents(self) -> int: ...

    def find_many(self, offset: int, limit: int) -> List[Dict[str, Any]]: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


def check_lookup_field(field: str) -> str:
    if field not in LOOKUP_FIELDS:
        raise ValueError(f"unsupported lookup field: {field}")
    return field


def check_update_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"fields not updatable: {', '.join(sorted(unknown))}")
    return fields


def page_offset(page: int, limit: int) -> int:
    """Translate a 1-based page number into a row offset."""
    return (max(page, 1) - 1) * max(limit, 0)
