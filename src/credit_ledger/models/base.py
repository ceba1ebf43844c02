from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for documents persisted by a ledger store.

    Stores mirror `id` into the backend's native key (`_id` for MongoDB),
    which keeps services agnostic of the database in use.
    """

    # Logical collection name; subclasses should override
    collection_name: ClassVar[str]

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        store adapters can still post-process this if needed.
        """
        return self.model_dump(by_alias=True, exclude_none=True)
