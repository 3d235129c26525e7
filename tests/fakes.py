"""
In-memory doubles of the Firebase gateways.

Same async surface as the real gateways. The document store honours the
Firestore sentinels the services write (Increment, ArrayUnion,
ArrayRemove, DELETE_FIELD, SERVER_TIMESTAMP) so tests can assert on the
resulting document state.
"""

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from firebase_admin import firestore

from chatrelay.services.push import MULTICAST_LIMIT, MulticastOutcome, TokenFailure
from chatrelay.services.store import MAX_BATCH_WRITES, Doc, Write, chunked

_MISSING = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Document store ──────────────────────────────────────


def _get_field(data: dict, path: str) -> Any:
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _apply_value(current: Any, value: Any) -> Any:
    if value is firestore.SERVER_TIMESTAMP:
        return _now()
    if isinstance(value, firestore.Increment):
        base = current if isinstance(current, (int, float)) and current is not _MISSING else 0
        return base + value.value
    if isinstance(value, firestore.ArrayUnion):
        base = list(current) if isinstance(current, list) else []
        return base + [v for v in value.values if v not in base]
    if isinstance(value, firestore.ArrayRemove):
        base = list(current) if isinstance(current, list) else []
        return [v for v in base if v not in value.values]
    if isinstance(value, dict):
        return {k: _apply_value(_MISSING, v) for k, v in value.items()}
    return copy.deepcopy(value)


def _set_field(data: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        if not isinstance(node.get(part), dict):
            node[part] = {}
        node = node[part]
    leaf = parts[-1]
    if value is firestore.DELETE_FIELD:
        node.pop(leaf, None)
        return
    node[leaf] = _apply_value(node.get(leaf, _MISSING), value)


def _merge(data: dict, updates: dict) -> None:
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            _merge(data[key], value)
        else:
            _set_field(data, key, value)


def _matches(data: dict, field_path: str, op: str, value: Any) -> bool:
    actual = _get_field(data, field_path)
    if actual is _MISSING:
        return False
    try:
        if op == "==":
            return actual == value
        if op == "!=":
            return actual != value
        if op == "<":
            return actual < value
        if op == "<=":
            return actual <= value
        if op == ">":
            return actual > value
        if op == ">=":
            return actual >= value
        if op == "in":
            return actual in value
        if op == "array_contains":
            return isinstance(actual, list) and value in actual
    except TypeError:
        return False
    raise ValueError(f"unsupported operator {op}")


class FakeStore:
    def __init__(self, docs: Optional[dict[str, dict]] = None):
        self.docs: dict[str, dict] = {}
        self.commits: list[int] = []
        for path, data in (docs or {}).items():
            self.docs[path] = copy.deepcopy(data)
        self._next_id = 0

    # helpers for tests
    def seed(self, path: str, data: dict) -> None:
        self.docs[path] = copy.deepcopy(data)

    def doc(self, path: str) -> Optional[dict]:
        return self.docs.get(path)

    def paths_under(self, collection: str) -> list[str]:
        return [p for p in self.docs if p.rsplit("/", 1)[0] == collection]

    # reads
    async def get(self, path: str) -> Optional[dict]:
        await asyncio.sleep(0)
        data = self.docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def query(
        self,
        collection: str,
        where: Iterable = (),
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        group: bool = False,
    ) -> list[Doc]:
        await asyncio.sleep(0)
        where = list(where)
        results = []
        for path, data in sorted(self.docs.items()):
            parent, doc_id = path.rsplit("/", 1)
            if group:
                if parent.rsplit("/", 1)[-1] != collection:
                    continue
            elif parent != collection:
                continue
            if all(_matches(data, f, op, v) for f, op, v in where):
                results.append(Doc(doc_id, path, copy.deepcopy(data)))
        if order_by:
            results.sort(key=lambda d: d.data.get(order_by))
        if limit:
            results = results[:limit]
        return results

    async def list_ids(self, collection: str, limit: Optional[int] = None) -> list[str]:
        return [d.id for d in await self.query(collection, limit=limit)]

    # writes
    async def set(self, path: str, data: dict, merge: bool = False) -> None:
        await asyncio.sleep(0)
        self._set(path, data, merge)

    def _set(self, path: str, data: dict, merge: bool) -> None:
        if merge and path in self.docs:
            _merge(self.docs[path], data)
        else:
            fresh: dict = {}
            _merge(fresh, data)
            self.docs[path] = fresh

    async def add(self, collection: str, data: dict) -> str:
        self._next_id += 1
        doc_id = f"auto{self._next_id:05d}"
        await self.set(f"{collection}/{doc_id}", data)
        return doc_id

    async def update(self, path: str, data: dict) -> bool:
        await asyncio.sleep(0)
        if path not in self.docs:
            return False
        for key, value in data.items():
            _set_field(self.docs[path], key, value)
        return True

    async def update_if(self, path: str, field_name: str, allowed: Sequence[Any], data: dict) -> bool:
        current = self.docs.get(path)
        if current is None or current.get(field_name) not in list(allowed):
            return False
        return await self.update(path, data)

    async def commit(self, writes: Sequence[Write]) -> int:
        applied = 0
        for chunk in chunked(list(writes), MAX_BATCH_WRITES):
            await asyncio.sleep(0)
            self.commits.append(len(chunk))
            for w in chunk:
                if w.op == "set":
                    self._set(w.path, w.data or {}, w.merge)
                elif w.op == "update":
                    if w.path not in self.docs:
                        raise KeyError(f"No document to update: {w.path}")
                    for key, value in (w.data or {}).items():
                        _set_field(self.docs[w.path], key, value)
                elif w.op == "delete":
                    self.docs.pop(w.path, None)
            applied += len(chunk)
        return applied

    # deletes
    async def delete(self, path: str) -> None:
        await asyncio.sleep(0)
        self.docs.pop(path, None)

    async def delete_paths(self, paths: Sequence[str]) -> int:
        return await self.commit([Write("delete", p) for p in paths])

    async def delete_where(self, collection, where=(), page_size=MAX_BATCH_WRITES, group=False, deadline=None) -> int:
        deleted = 0
        while True:
            if deadline is not None and deadline.expired():
                break
            page = await self.query(collection, where, limit=page_size, group=group)
            if page:
                deleted += await self.delete_paths([d.path for d in page])
            if len(page) < page_size:
                break
        return deleted

    async def delete_collection(self, collection, page_size=MAX_BATCH_WRITES, deadline=None) -> int:
        return await self.delete_where(collection, page_size=page_size, deadline=deadline)


# ── Realtime store ──────────────────────────────────────


class FakeRealtime:
    def __init__(self, tree: Optional[dict] = None):
        self.tree: dict = copy.deepcopy(tree or {})

    def _parts(self, path: str) -> list[str]:
        return [p for p in path.strip("/").split("/") if p]

    async def get(self, path: str) -> Any:
        node: Any = self.tree
        for part in self._parts(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    async def set(self, path: str, value: Any) -> None:
        parts = self._parts(path)
        node = self.tree
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = copy.deepcopy(value)

    async def update(self, path: str, values: dict) -> None:
        base = path.strip("/")
        for key, value in values.items():
            await self.set(f"{base}/{key}" if base else key, value)

    async def delete(self, path: str) -> None:
        parts = self._parts(path)
        node = self.tree
        for part in parts[:-1]:
            if part not in node:
                return
            node = node[part]
        node.pop(parts[-1], None)


# ── Push gateway ────────────────────────────────────────


class FakePush:
    def __init__(self, dead_tokens: Optional[dict[str, str]] = None, fail_batches: int = 0):
        self.dead_tokens = dict(dead_tokens or {})
        self.fail_batches = fail_batches
        self.sent: list[tuple[list[str], Any]] = []
        self.validated: list[str] = []
        self.topics: dict[str, set[str]] = {}

    async def send_multicast(self, tokens: Sequence[str], payload) -> MulticastOutcome:
        assert len(tokens) <= MULTICAST_LIMIT
        await asyncio.sleep(0)
        if self.fail_batches > 0:
            self.fail_batches -= 1
            raise RuntimeError("push gateway rejected the batch")
        self.sent.append((list(tokens), payload))
        failures = [TokenFailure(t, self.dead_tokens[t]) for t in tokens if t in self.dead_tokens]
        return MulticastOutcome(len(tokens) - len(failures), len(failures), failures)

    async def validate_tokens(self, tokens: Sequence[str]) -> list[TokenFailure]:
        self.validated.extend(tokens)
        return [TokenFailure(t, self.dead_tokens[t]) for t in tokens if t in self.dead_tokens]

    async def subscribe_to_topic(self, tokens: Sequence[str], topic: str) -> MulticastOutcome:
        self.topics.setdefault(topic, set()).update(tokens)
        return MulticastOutcome(len(tokens), 0, [])

    async def unsubscribe_from_topic(self, tokens: Sequence[str], topic: str) -> MulticastOutcome:
        self.topics.setdefault(topic, set()).difference_update(tokens)
        return MulticastOutcome(len(tokens), 0, [])

    @property
    def delivered_tokens(self) -> list[str]:
        return [t for batch, _ in self.sent for t in batch if t not in self.dead_tokens]


# ── Identity and storage ────────────────────────────────


class FakeIdentity:
    def __init__(self, tokens: Optional[dict[str, dict]] = None):
        self.tokens = dict(tokens or {})
        self.deleted: list[str] = []

    async def verify_id_token(self, id_token: str) -> dict:
        if id_token not in self.tokens:
            raise ValueError("invalid token")
        return dict(self.tokens[id_token])

    async def delete_user(self, uid: str) -> bool:
        self.deleted.append(uid)
        return True


class FakeStorage:
    def __init__(self, blobs: Iterable[str] = ()):
        self.blobs = set(blobs)

    async def delete_prefix(self, prefix: str) -> int:
        matched = [b for b in self.blobs if b.startswith(prefix)]
        self.blobs.difference_update(matched)
        return len(matched)

    async def delete_blob(self, path: str) -> bool:
        if path in self.blobs:
            self.blobs.discard(path)
            return True
        return False


# ── Test helpers ────────────────────────────────────────

TRIGGER_SECRET = "test-trigger-secret"


def auth(token: str = "alice-token") -> dict:
    return {"Authorization": f"Bearer {token}"}


def seed_chat(store: FakeStore, room_id: str = "room1", members=("alice", "bob", "carol"), **extra) -> None:
    store.seed(f"chat_rooms/{room_id}", {"membersIds": list(members), "name": "Weekend plans", **extra})


def seed_tokens(store: FakeStore, owners: dict[str, list[str]]) -> None:
    for uid, tokens in owners.items():
        for t in tokens:
            store.seed(f"fcmTokens/{t}", {"uid": uid})
