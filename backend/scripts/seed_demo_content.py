import asyncio

from webar_gate.core.constants import COLLECTION_LOCATIONS, COLLECTION_VIDEOS
from webar_gate.db import Base, SessionLocal, engine
from webar_gate.models.document import Document
from webar_gate.store import SqlDocumentStore

# Sukhbaatar Square, Ulaanbaatar
DEMO_LOCATION_ID = "demo-square"
DEMO_CDN = "https://cdn.example.com/webar"


def clear_demo_content(db) -> None:
    """Delete the demo documents so we can reseed cleanly."""
    db.query(Document).filter(
        Document.collection.in_([COLLECTION_LOCATIONS, COLLECTION_VIDEOS]),
        Document.doc_id.like("demo-%"),
    ).delete(synchronize_session=False)
    db.commit()


async def seed_demo_content(store: SqlDocumentStore) -> int:
    """Insert one location, a global intro and that location's exercise."""
    docs = [
        (
            COLLECTION_LOCATIONS,
            DEMO_LOCATION_ID,
            {"name": "Demo square", "lat": 47.918, "lng": 106.917, "radiusMeters": 150},
        ),
        (
            COLLECTION_VIDEOS,
            "demo-intro",
            {
                "active": True,
                "isGlobal": True,
                "locationIds": [],
                "urls": {
                    "webm": f"{DEMO_CDN}/intro.webm",
                    "mp4_sbs": f"{DEMO_CDN}/intro_sbs.mp4",
                    "mp4": f"{DEMO_CDN}/intro.mp4",
                },
            },
        ),
        (
            COLLECTION_VIDEOS,
            "demo-exercise",
            {
                "active": True,
                "isGlobal": False,
                "locationIds": [DEMO_LOCATION_ID],
                "url": f"{DEMO_CDN}/exercise_sbs.mp4",
            },
        ),
    ]
    for collection, doc_id, fields in docs:
        await store.set(collection, doc_id, fields)

    print(f"Seeded {len(docs)} demo documents")
    return len(docs)


def main():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        clear_demo_content(db)
    finally:
        db.close()
    asyncio.run(seed_demo_content(SqlDocumentStore()))


if __name__ == "__main__":
    main()
