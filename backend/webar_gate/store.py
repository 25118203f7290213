"""Persistence adapters: the remote document store and the local secret store."""

import json
import logging
import os
import threading
import uuid
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError
from starlette.concurrency import run_in_threadpool

from webar_gate.core.config import settings
from webar_gate.core.errors import DocumentExists, StoreError
from webar_gate.db import SessionLocal
from webar_gate.models.document import Document
from webar_gate.services.ports import ArrayUnion, Filter, ServerTimestamp

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 5

_SQLITE_LOCK = threading.RLock()


def _resolve_fields(fields: dict, base: dict, now: datetime) -> dict:
    out = dict(base)
    for key, value in fields.items():
        if isinstance(value, ServerTimestamp):
            out[key] = now.isoformat()
        elif isinstance(value, ArrayUnion):
            current = list(out.get(key) or [])
            for v in value.values:
                if v not in current:
                    current.append(v)
            out[key] = current
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


def _matches(data: dict, flt: Filter) -> bool:
    field, op, value = flt
    actual = data.get(field)
    if op == "==":
        return actual == value
    if op == "!=":
        return actual != value
    if op == "in":
        return actual in value
    if op == "array-contains":
        return isinstance(actual, list) and value in actual
    raise ValueError(f"unsupported filter operator: {op}")


def _to_doc(row: Document) -> dict:
    return {"id": row.doc_id, **(row.data or {})}


class SqlDocumentStore:
    """Firestore-like document store on top of one SQLAlchemy table.

    Writes with ``merge=False`` to an existing document of a unique
    collection are rejected with ``DocumentExists``, mirroring a backend
    rule that only allows creates. Filters are evaluated in Python, which
    keeps JSON handling identical on SQLite and Postgres.

    Session work runs in the threadpool. Writes are read-modify-write on
    a versioned row: a write that lost a race against another writer is
    replayed on the fresh row, so ``ArrayUnion`` merges never drop values.
    """

    def __init__(self, session_factory=SessionLocal, unique_collections=None):
        self._session_factory = session_factory
        if unique_collections is None:
            unique_collections = settings.unique_collections
        self.unique_collections = set(unique_collections)
        bind = getattr(session_factory, "kw", {}).get("bind")
        # One SQLite connection may be shared by every session (StaticPool)
        self._serial = bind is not None and bind.dialect.name == "sqlite"

    def _guard(self):
        return _SQLITE_LOCK if self._serial else nullcontext()

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        return await run_in_threadpool(self._get, collection, doc_id)

    async def set(self, collection: str, doc_id: str, fields: dict, merge: bool = False) -> None:
        await run_in_threadpool(self._set, collection, doc_id, fields, merge)

    async def add(self, collection: str, fields: dict) -> str:
        doc_id = uuid.uuid4().hex
        await self.set(collection, doc_id, fields)
        return doc_id

    async def query(self, collection: str, filters=(), limit: Optional[int] = None) -> list[dict]:
        filters = [Filter(*f) for f in filters]
        docs = await run_in_threadpool(self._scan, collection)
        results = [d for d in docs if all(_matches(d, f) for f in filters)]
        if limit is not None:
            results = results[:limit]
        return results

    def _get(self, collection: str, doc_id: str) -> Optional[dict]:
        try:
            with self._guard(), self._session_factory() as db:
                row = db.get(Document, (collection, doc_id))
                return _to_doc(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError(f"get {collection}/{doc_id} failed: {e}") from e

    def _scan(self, collection: str) -> list[dict]:
        try:
            with self._guard(), self._session_factory() as db:
                rows = (
                    db.query(Document)
                    .filter(Document.collection == collection)
                    .order_by(Document.created_at, Document.doc_id)
                    .all()
                )
                return [_to_doc(r) for r in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"query {collection} failed: {e}") from e

    def _load_row(self, db, collection: str, doc_id: str) -> Optional[Document]:
        return db.get(Document, (collection, doc_id), with_for_update=True)

    def _set(self, collection: str, doc_id: str, fields: dict, merge: bool) -> None:
        for attempt in range(1, WRITE_ATTEMPTS + 1):
            try:
                with self._guard(), self._session_factory() as db:
                    self._write(db, collection, doc_id, fields, merge)
                return
            except IntegrityError as e:
                # Another writer created the document between our read and insert
                if not merge and collection in self.unique_collections:
                    raise DocumentExists(collection, doc_id) from e
                logger.info("%s/%s created concurrently (attempt %d); retrying", collection, doc_id, attempt)
            except StaleDataError:
                logger.info("%s/%s updated concurrently (attempt %d); retrying", collection, doc_id, attempt)
            except SQLAlchemyError as e:
                raise StoreError(f"set {collection}/{doc_id} failed: {e}") from e
        raise StoreError(f"set {collection}/{doc_id} failed: write contention after {WRITE_ATTEMPTS} attempts")

    def _write(self, db, collection: str, doc_id: str, fields: dict, merge: bool) -> None:
        now = datetime.now(timezone.utc)
        row = self._load_row(db, collection, doc_id)
        if row is None:
            db.add(
                Document(
                    collection=collection,
                    doc_id=doc_id,
                    data=_resolve_fields(fields, {}, now),
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            if not merge and collection in self.unique_collections:
                raise DocumentExists(collection, doc_id)
            base = dict(row.data or {}) if merge else {}
            row.data = _resolve_fields(fields, base, now)
            row.updated_at = now
        db.commit()


def _ensure_dir(path: str):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)


class JsonFileSecretStore:
    """Local secret persistence: hex-encoded values in a JSON file."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or settings.secret_store_path

    def _load(self) -> dict:
        try:
            with open(self.path, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("secret store %s unreadable, starting empty: %s", self.path, e)
            return {}

    def get(self, key: str) -> Optional[bytes]:
        raw = self._load().get(key)
        if raw is None:
            return None
        try:
            return bytes.fromhex(raw)
        except ValueError:
            logger.warning("secret %r in %s is not hex; ignoring", key, self.path)
            return None

    def set(self, key: str, value: bytes) -> None:
        data = self._load()
        data[key] = value.hex()
        _ensure_dir(self.path)
        with open(self.path, "w") as f:
            json.dump(data, f)


# Dependency we will use in FastAPI routes
def get_store() -> SqlDocumentStore:
    return SqlDocumentStore()
