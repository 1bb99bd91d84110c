from __future__ import annotations

import os
from contextlib import contextmanager
from functools import lru_cache
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrencyConflict, NotFound
from .models import Base, Booking

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./booking-ledger.db")


@lru_cache(maxsize=8)
def engine_for(url: str) -> Engine:
    eng = create_engine(url, pool_pre_ping=True)
    Base.metadata.create_all(eng)
    return eng


def get_engine() -> Engine:
    return engine_for(DATABASE_URL)


def session(engine: Engine) -> Session:
    # Endpoints read ORM fields after the commit that closes the unit of work.
    # Keep attributes loaded so they don't expire into DetachedInstanceError.
    return Session(engine, expire_on_commit=False)


@contextmanager
def unit_of_work(engine: Engine) -> Iterator[Session]:
    """One ledger transaction. Commits on success; a lost update becomes a retryable conflict."""
    with session(engine) as s:
        try:
            yield s
            s.commit()
        except StaleDataError:
            s.rollback()
            raise ConcurrencyConflict("Booking was modified by a concurrent request; retry")


def lock_booking(s: Session, booking_id: str) -> Booking:
    """Load a booking holding its row lock (SELECT ... FOR UPDATE where supported)."""
    booking = s.query(Booking).filter(Booking.id == booking_id).with_for_update().first()
    if booking is None:
        raise NotFound("Booking not found")
    return booking
