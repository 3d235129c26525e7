"""
chatrelay: Firestore document store gateway.

Path-addressed, async facade over the Firestore client. Every call goes
through the ``firestore`` circuit breaker. Mutation helpers batch at the
Firestore per-commit ceiling (500) and treat "already gone" as success so
sweeps and cascades can be re-run safely.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Sequence

from firebase_admin import firestore
from google.api_core import exceptions as gcloud_exceptions
from google.cloud.firestore_v1 import FieldFilter

from chatrelay.services.circuit_breaker import CircuitBreaker
from chatrelay.services.deadline import Deadline
from chatrelay.services.firebase import run_blocking

logger = logging.getLogger(__name__)

MAX_BATCH_WRITES = 500

# (field, op, value), e.g. ("uid", "in", ["a", "b"])
Filter = tuple[str, str, Any]


@dataclass
class Doc:
    id: str
    path: str
    data: dict = field(default_factory=dict)


@dataclass
class Write:
    """One mutation in a batched commit. ``op`` is set / update / delete."""
    op: str
    path: str
    data: Optional[dict] = None
    merge: bool = False


def chunked(items: Sequence, size: int) -> list:
    return [items[i : i + size] for i in range(0, len(items), size)]


class FirestoreGateway:
    def __init__(self, client, breaker: CircuitBreaker):
        self._client = client
        self.breaker = breaker

    async def _call(self, fn, *args, **kwargs):
        return await self.breaker.execute(lambda: run_blocking(fn, *args, **kwargs))

    # ── Reads ───────────────────────────────────────────

    async def get(self, path: str) -> Optional[dict]:
        def _get():
            snap = self._client.document(path).get()
            return snap.to_dict() if snap.exists else None

        return await self._call(_get)

    async def query(
        self,
        collection: str,
        where: Iterable[Filter] = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        group: bool = False,
    ) -> list[Doc]:
        """Run a query. ``group=True`` queries every collection named ``collection``."""
        where = list(where)

        def _query() -> list[Doc]:
            q = self._client.collection_group(collection) if group else self._client.collection(collection)
            for field_path, op, value in where:
                q = q.where(filter=FieldFilter(field_path, op, value))
            if order_by:
                q = q.order_by(order_by)
            if limit:
                q = q.limit(limit)
            return [Doc(s.id, s.reference.path, s.to_dict() or {}) for s in q.stream()]

        return await self._call(_query)

    async def list_ids(self, collection: str, limit: Optional[int] = None) -> list[str]:
        docs = await self.query(collection, limit=limit)
        return [d.id for d in docs]

    # ── Writes ──────────────────────────────────────────

    async def set(self, path: str, data: dict, merge: bool = False) -> None:
        await self._call(lambda: self._client.document(path).set(data, merge=merge))

    async def add(self, collection: str, data: dict) -> str:
        def _add() -> str:
            ref = self._client.collection(collection).document()
            ref.set(data)
            return ref.id

        return await self._call(_add)

    async def update(self, path: str, data: dict) -> bool:
        """Update fields (sentinels allowed). Returns False if the doc is gone."""
        def _update() -> bool:
            try:
                self._client.document(path).update(data)
                return True
            except gcloud_exceptions.NotFound:
                return False

        return await self._call(_update)

    async def update_if(self, path: str, field_name: str, allowed: Sequence[Any], data: dict) -> bool:
        """Transactionally update only while ``field_name`` is one of ``allowed``.

        Guards state transitions against a concurrent writer that already
        moved the document on. Returns True when the update was applied.
        """
        allowed = list(allowed)

        def _update_if() -> bool:
            ref = self._client.document(path)

            @firestore.transactional
            def _txn(transaction) -> bool:
                snap = ref.get(transaction=transaction)
                if not snap.exists or (snap.to_dict() or {}).get(field_name) not in allowed:
                    return False
                transaction.update(ref, data)
                return True

            return _txn(self._client.transaction())

        return await self._call(_update_if)

    async def commit(self, writes: Sequence[Write]) -> int:
        """Apply writes in batches of at most 500. Returns writes applied."""
        applied = 0
        for chunk in chunked(list(writes), MAX_BATCH_WRITES):
            await self._call(self._commit_chunk, chunk)
            applied += len(chunk)
        return applied

    def _commit_chunk(self, chunk: Sequence[Write]) -> None:
        batch = self._client.batch()
        for w in chunk:
            ref = self._client.document(w.path)
            if w.op == "set":
                batch.set(ref, w.data or {}, merge=w.merge)
            elif w.op == "update":
                batch.update(ref, w.data or {})
            elif w.op == "delete":
                batch.delete(ref)
            else:
                raise ValueError(f"Unknown write op: {w.op}")
        batch.commit()

    # ── Deletes ─────────────────────────────────────────

    async def delete(self, path: str) -> None:
        # Firestore deletes are no-ops on missing documents
        await self._call(lambda: self._client.document(path).delete())

    async def delete_paths(self, paths: Sequence[str]) -> int:
        return await self.commit([Write("delete", p) for p in paths])

    async def delete_where(
        self,
        collection: str,
        where: Iterable[Filter] = (),
        page_size: int = MAX_BATCH_WRITES,
        group: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> int:
        """Delete every matching doc, one page at a time, until a short page."""
        where = list(where)
        deleted = 0
        while True:
            if deadline is not None and deadline.expired():
                logger.warning("Deadline reached while sweeping %s (%d deleted)", collection, deleted)
                break
            page = await self.query(collection, where, limit=page_size, group=group)
            if page:
                deleted += await self.delete_paths([d.path for d in page])
            if len(page) < page_size:
                break
        return deleted

    async def delete_collection(
        self,
        collection: str,
        page_size: int = MAX_BATCH_WRITES,
        deadline: Optional[Deadline] = None,
    ) -> int:
        return await self.delete_where(collection, page_size=page_size, deadline=deadline)
