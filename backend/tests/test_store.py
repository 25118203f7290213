import asyncio
import json

import pytest
from sqlalchemy.orm import sessionmaker

from webar_gate.core.errors import DocumentExists
from webar_gate.db import Base, make_engine
from webar_gate.services.identity import RegistrationDirectory
from webar_gate.services.ports import SERVER_TIMESTAMP, ArrayUnion
from webar_gate.store import JsonFileSecretStore, SqlDocumentStore

PHONE = "+97688112233"
HASH_A = "a" * 64
HASH_B = "b" * 64


def test_get_missing_is_none(store):
    assert asyncio.run(store.get("videos", "nope")) is None


def test_create_only_collection_rejects_overwrite(store):
    async def scenario():
        await store.set("phone_regs", "+97688112233", {"phone": "+97688112233"})
        with pytest.raises(DocumentExists):
            await store.set("phone_regs", "+97688112233", {"phone": "other"})
        # merges are updates, not creates
        await store.set("phone_regs", "+97688112233", {"note": "x"}, merge=True)
        # other collections overwrite freely
        await store.set("videos", "v", {"a": 1})
        await store.set("videos", "v", {"b": 2})
        return await store.get("phone_regs", "+97688112233"), await store.get("videos", "v")

    reg, video = asyncio.run(scenario())
    assert reg == {"id": "+97688112233", "phone": "+97688112233", "note": "x"}
    assert video == {"id": "v", "b": 2}


def test_sentinels(store):
    async def scenario():
        await store.set("docs", "d", {"at": SERVER_TIMESTAMP, "tags": ArrayUnion("a", "b")})
        await store.set("docs", "d", {"tags": ArrayUnion("b", "c")}, merge=True)
        return await store.get("docs", "d")

    doc = asyncio.run(scenario())
    assert isinstance(doc["at"], str) and "T" in doc["at"]
    assert doc["tags"] == ["a", "b", "c"]


def test_query_filters_and_limit(store):
    async def scenario():
        await store.set("videos", "a", {"active": True, "isGlobal": True})
        await store.set("videos", "b", {"active": True, "locationIds": ["sq", "park"]})
        await store.set("videos", "c", {"active": False, "locationIds": ["sq"]})
        return (
            await store.query("videos", [("active", "==", True), ("locationIds", "array-contains", "sq")]),
            await store.query("videos", [("active", "!=", True)]),
            await store.query("videos", [("id", "in", ["a", "c"])]),
            await store.query("videos", limit=2),
        )

    contains, inactive, by_id, limited = asyncio.run(scenario())
    assert [d["id"] for d in contains] == ["b"]
    assert [d["id"] for d in inactive] == ["c"]
    assert sorted(d["id"] for d in by_id) == ["a", "c"]
    assert len(limited) == 2


def test_add_generates_ids(store):
    async def scenario():
        first = await store.add("scan_logs", {"ok": True})
        second = await store.add("scan_logs", {"ok": False})
        return first, second, await store.query("scan_logs")

    first, second, logs = asyncio.run(scenario())
    assert first != second
    assert {d["id"] for d in logs} == {first, second}


def test_secret_store_ignores_garbage(tmp_path):
    path = tmp_path / "secret.json"
    path.write_text("{not json")
    secrets = JsonFileSecretStore(str(path))
    assert secrets.get("deviceSecret") is None

    secrets.set("deviceSecret", b"\x01\x02")
    assert json.loads(path.read_text()) == {"deviceSecret": "0102"}
    assert secrets.get("deviceSecret") == b"\x01\x02"


class InterleavedStore(SqlDocumentStore):
    """Lets another writer commit right after this store has read a document."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.interleave = {}

    def _load_row(self, db, collection, doc_id):
        row = super()._load_row(db, collection, doc_id)
        competing = self.interleave.pop((collection, doc_id), None)
        if competing is not None:
            competing()
        return row


@pytest.fixture
def file_factory(tmp_path):
    # A file database gives each session its own connection, like a real server
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'gate.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def test_concurrent_binds_keep_both_hashes(file_factory):
    other = SqlDocumentStore(session_factory=file_factory, unique_collections=["phone_regs"])
    racer = InterleavedStore(session_factory=file_factory, unique_collections=["phone_regs"])
    asyncio.run(other.set("phone_regs", PHONE, {"phone": PHONE, "deviceKeyHashes": []}))
    racer.interleave[("phone_regs", PHONE)] = lambda: other._set(
        "phone_regs", PHONE, {"deviceKeyHashes": ArrayUnion(HASH_B)}, True
    )

    bound = asyncio.run(RegistrationDirectory(racer).bind(PHONE, HASH_A))
    doc = asyncio.run(other.get("phone_regs", PHONE))

    assert bound is True
    assert sorted(doc["deviceKeyHashes"]) == [HASH_A, HASH_B]


def test_concurrent_first_registration_is_a_collision(file_factory):
    other = SqlDocumentStore(session_factory=file_factory, unique_collections=["phone_regs"])
    racer = InterleavedStore(session_factory=file_factory, unique_collections=["phone_regs"])
    racer.interleave[("phone_regs", PHONE)] = lambda: other._set(
        "phone_regs", PHONE, {"phone": PHONE, "source": "first"}, False
    )

    created = asyncio.run(RegistrationDirectory(racer).create(PHONE))
    doc = asyncio.run(other.get("phone_regs", PHONE))

    assert created is False
    assert doc["source"] == "first"


def test_merge_into_concurrently_created_document(file_factory):
    other = SqlDocumentStore(session_factory=file_factory, unique_collections=[])
    racer = InterleavedStore(session_factory=file_factory, unique_collections=[])
    racer.interleave[("device_keys", HASH_A)] = lambda: other._set(
        "device_keys", HASH_A, {"tags": ArrayUnion("b")}, True
    )

    asyncio.run(racer.set("device_keys", HASH_A, {"tags": ArrayUnion("a")}, merge=True))
    doc = asyncio.run(other.get("device_keys", HASH_A))

    assert doc["tags"] == ["b", "a"]
