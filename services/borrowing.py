"""Borrow ledger: the loan lifecycle of items and its consistency rules."""
from __future__ import annotations

import datetime
from typing import Callable, Optional

from flask import current_app
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import OPEN_LOAN_INDEX, BorrowRecord, Item, User

from .base import StoreService
from .catalog import CatalogService
from .errors import BorrowServiceError, Conflict, NotFound


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def violates_open_loan_index(exc: IntegrityError) -> bool:
    """True when the failed statement hit the one-open-loan-per-item index."""
    diag = getattr(exc.orig, 'diag', None)
    constraint = getattr(diag, 'constraint_name', None)
    if constraint:
        return constraint == OPEN_LOAN_INDEX
    message = str(exc.orig)
    # SQLite names the indexed column rather than the index
    return OPEN_LOAN_INDEX in message or 'UNIQUE constraint failed: borrow.item_id' in message


class BorrowLedger(StoreService):
    """Owns borrow records and the write path of ``Item.available``.

    An item is AVAILABLE while it has no open record and ON_LOAN while it has
    exactly one. Both mutating operations change the record and the flag in
    one transaction, using conditional updates so that the check and the
    write cannot be split by a concurrent request on the same item.
    Nothing is retried here: a failed transaction is reported to the caller.
    """

    def __init__(
        self,
        catalog: Optional[CatalogService] = None,
        store=None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        super().__init__(store)
        self._catalog = catalog or CatalogService(store)
        self._clock = clock or utc_now

    def create_borrow(self, *, item_id: int, borrower_id: int) -> BorrowRecord:
        self._require_id(item_id, 'Item not found')
        try:
            with self._transaction() as session:
                if not self._catalog.set_availability(item_id, False):
                    exists = session.execute(select(Item.id).where(Item.id == item_id)).first()
                    if exists is None:
                        raise NotFound('Item not found')
                    raise Conflict('Item is already borrowed')
                owner_id = session.execute(
                    select(Item.owner_id).where(Item.id == item_id)
                ).scalar_one()
                record = BorrowRecord(
                    item_id=item_id,
                    borrower_id=borrower_id,
                    owner_id=owner_id,
                    borrowed_at=self._clock(),
                    returned_at=None,
                )
                session.add(record)
                session.flush()
                record_id = record.id
        except Conflict:
            current_app.logger.info('Borrow of item %s refused: already on loan', item_id)
            raise
        except BorrowServiceError:
            raise
        except IntegrityError as exc:
            if not violates_open_loan_index(exc):
                raise self._store_failure('Borrow transaction', exc) from exc
            # the open-loan unique index caught a concurrent insert
            current_app.logger.info('Borrow of item %s refused by open-loan index: %s', item_id, exc.orig)
            raise Conflict('Item is already borrowed') from exc
        except SQLAlchemyError as exc:
            raise self._store_failure('Borrow transaction', exc) from exc
        current_app.logger.info('Borrow %s opened for item %s by user %s', record_id, item_id, borrower_id)
        return record

    def return_borrow(self, *, borrow_id: int, requester_id: int) -> BorrowRecord:
        self._require_id(borrow_id, 'Borrow record not found or unauthorized')
        try:
            with self._transaction() as session:
                closed = session.execute(
                    update(BorrowRecord)
                    .where(
                        BorrowRecord.id == borrow_id,
                        BorrowRecord.borrower_id == requester_id,
                        BorrowRecord.returned_at.is_(None),
                    )
                    .values(returned_at=self._clock())
                    .execution_options(synchronize_session=False)
                )
                if closed.rowcount != 1:
                    # missing, someone else's, or already returned: same answer for all
                    raise NotFound('Borrow record not found or unauthorized')
                record = session.get(BorrowRecord, borrow_id, populate_existing=True)
                if not self._catalog.set_availability(record.item_id, True):
                    current_app.logger.warning(
                        'Item %s was already available when borrow %s closed', record.item_id, borrow_id
                    )
        except BorrowServiceError:
            raise
        except SQLAlchemyError as exc:
            raise self._store_failure('Return transaction', exc) from exc
        current_app.logger.info('Borrow %s closed by user %s', borrow_id, requester_id)
        return record

    def list_borrow_history(self, user_id: int) -> list[dict]:
        """Every loan taken by ``user_id``, newest first, with item details and images."""
        try:
            rows = self.session.execute(
                select(BorrowRecord, Item.name, Item.description)
                .outerjoin(Item, Item.id == BorrowRecord.item_id)
                .where(BorrowRecord.borrower_id == user_id)
                .order_by(BorrowRecord.borrowed_at.desc(), BorrowRecord.id.desc())
            ).all()
            images = self._catalog.get_images(record.item_id for record, _, _ in rows)
        except SQLAlchemyError as exc:
            raise self._store_failure('Borrow history', exc) from exc
        history = []
        for record, item_name, description in rows:
            entry = record.to_dict()
            entry['item_name'] = item_name
            entry['description'] = description
            entry['images'] = images.get(record.item_id, [])
            history.append(entry)
        return history

    def list_rented_out(self, owner_id: int) -> list[dict]:
        """Items of ``owner_id`` that are on loan right now, with the open loan and borrower."""
        try:
            rows = self.session.execute(
                select(Item, BorrowRecord, User.username)
                .join(
                    BorrowRecord,
                    and_(BorrowRecord.item_id == Item.id, BorrowRecord.returned_at.is_(None)),
                )
                .join(User, User.id == BorrowRecord.borrower_id)
                .where(Item.owner_id == owner_id, Item.available.is_(False))
                .order_by(BorrowRecord.borrowed_at.desc(), Item.id)
            ).all()
            images = self._catalog.get_images(item.id for item, _, _ in rows)
        except SQLAlchemyError as exc:
            raise self._store_failure('Rented items', exc) from exc
        rented = []
        for item, record, borrower_name in rows:
            entry = item.to_dict(images=images.get(item.id, []))
            entry.update(
                borrow_id=record.id,
                borrower_id=record.borrower_id,
                borrower_name=borrower_name,
                borrowed_at=record.to_dict()['borrowed_at'],
                returned_at=None,
            )
            rented.append(entry)
        return rented
