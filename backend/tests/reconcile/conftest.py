from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from clinic_recon.db.session import build_session_factory
from clinic_recon.models import Base
from clinic_recon.services.reconcile.store import StoreClient


class Seeder:
    def __init__(self, store: StoreClient) -> None:
        self.store = store

    def patient(self, patient_id, **fields):
        self.store.insert("patients", [{"patient_id": patient_id, **fields}])
        self.store.commit()

    def rows(self, table, *rows):
        for row in rows:
            self.store.insert(table, [row])
        self.store.commit()

    def intake(self, patient_id, line_id=None, created_at=None, answers=None, **fields):
        row = {
            "patient_id": patient_id,
            "line_id": line_id,
            "answers": answers,
            **fields,
        }
        if created_at is not None:
            row["created_at"] = created_at
        self.rows("intake", row)

    def message(self, patient_id, line_uid=None, content=None, sent_at=None):
        self.rows(
            "message_log",
            {
                "patient_id": patient_id,
                "line_uid": line_uid,
                "content": content,
                "sent_at": sent_at or datetime(2026, 1, 1, 9, 0),
            },
        )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    session = build_session_factory(engine)()
    yield session
    session.close()


@pytest.fixture
def store(session):
    # Small pages so every read path crosses a page boundary.
    return StoreClient(session, page_size=2, batch_size=2)


@pytest.fixture
def seed(store):
    return Seeder(store)
