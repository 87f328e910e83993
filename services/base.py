"""Shared plumbing for services that talk to the relational store."""
from __future__ import annotations

from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db as default_store

from .errors import NotFound, StoreFailure

# largest value a BIGINT / SQLite INTEGER primary key can hold
MAX_ID = 2**63 - 1


def is_storable_id(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= MAX_ID


class StoreService:
    """Holds the injected Flask-SQLAlchemy handle and wraps unit-of-work boundaries."""

    def __init__(self, store=None):
        self._store = store if store is not None else default_store

    @property
    def session(self):
        return self._store.session

    @contextmanager
    def _transaction(self):
        # commit on success, roll back on any failure and re-raise
        try:
            yield self.session
            self.session.commit()
        except BaseException:
            self.session.rollback()
            raise

    def _require_id(self, value, message: str) -> int:
        # ids no row can have never reach the driver
        if not is_storable_id(value):
            raise NotFound(message)
        return value

    def _store_failure(self, action: str, exc: SQLAlchemyError) -> StoreFailure:
        current_app.logger.exception('%s failed: %s', action, exc)
        self.session.rollback()
        return StoreFailure()
