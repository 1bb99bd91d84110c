from datetime import datetime, timezone

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from booking_ledger import events
from booking_ledger.domain import LedgerContext
from booking_ledger.models import Base

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    # One shared in-memory connection so TestClient's worker thread sees the same tables.
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture
def ctx():
    return LedgerContext(actor_id="staff-1", now=NOW)


@pytest.fixture(autouse=True)
def broker_down(monkeypatch):
    """No RabbitMQ in tests: publishing stays best-effort."""
    monkeypatch.setattr(events, "EVENTS_STRICT", False)

    async def _boom(*args, **kwargs):
        raise RuntimeError("rabbitmq down")

    monkeypatch.setattr(events.aio_pika, "connect_robust", _boom)


def auth_headers(role: str = "admin", sub: str = "user-1") -> dict[str, str]:
    token = jwt.encode({"role": role, "sub": sub}, "dev-secret-change-me", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}
