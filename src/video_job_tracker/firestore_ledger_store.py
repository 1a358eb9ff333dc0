from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from google.cloud import firestore

from .ledger_store import Listener, ListenerRegistry, Unsubscribe

logger = logging.getLogger(__name__)


class FirestoreLedgerStore:
    """Firestore-backed ledger store for production use.

    Each key maps to one document in ``COLLECTION_NAME`` holding the value
    under ``value``. Listeners are notified of writes made through this
    instance.
    """

    COLLECTION_NAME = "video_ledgers"

    def __init__(self, project_id: str | None = None, *, client: Any | None = None) -> None:
        self._db = client or firestore.Client(project=project_id)
        self._collection = self._db.collection(self.COLLECTION_NAME)
        self._listeners = ListenerRegistry()

    def get(self, key: str) -> Any | None:
        """Read the value stored under ``key``."""
        doc = self._collection.document(key).get()

        if not doc.exists:
            return None

        data = doc.to_dict() or {}
        return data.get("value")

    def set(self, key: str, value: Any) -> None:
        """Replace the value stored under ``key``."""
        doc_ref = self._collection.document(key)
        doc_ref.set({"value": value, "updated_at": datetime.now(timezone.utc)})

        logger.debug(
            "Wrote ledger document",
            extra={
                "key": key,
                "size": len(value) if isinstance(value, list) else None,
            },
        )

        self._listeners.notify(key, value)

    def subscribe(self, listener: Listener) -> Unsubscribe:
        return self._listeners.add(listener)


__all__ = ["FirestoreLedgerStore"]
