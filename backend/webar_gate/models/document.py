from sqlalchemy import Column, String, DateTime, Integer, JSON
from sqlalchemy.sql import func
from webar_gate.db import Base

class Document(Base):
    __tablename__ = "documents"

    # Firestore-style addressing: <collection>/<doc_id>
    collection = Column(String(64), primary_key=True)
    doc_id = Column(String(255), primary_key=True)

    # Free-form fields as written by the gate (camelCase keys)
    data = Column(JSON, nullable=False, default=dict)

    # Bumped on every update; a concurrent writer's stale UPDATE matches no row
    version = Column(Integer, nullable=False)

    # Timestamps
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __mapper_args__ = {"version_id_col": version}
