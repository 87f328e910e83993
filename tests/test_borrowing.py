import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from conftest import assert_availability_matches_records, make_item, make_user
from models import BorrowRecord, Item, ItemImage, db
from services import BorrowLedger, CatalogService, Conflict, NotFound, StoreFailure
from services.borrowing import violates_open_loan_index


@pytest.fixture
def ledger(app, clock):
    return BorrowLedger(catalog=CatalogService(db), store=db, clock=clock)


@pytest.fixture
def people(app):
    owner = make_user(1, 'owner')
    borrower = make_user(9, 'borrower')
    other = make_user(10, 'other')
    db.session.commit()
    return owner, borrower, other


def test_borrow_and_return_round_trip(ledger, people):
    make_item(5, owner_id=1)
    db.session.commit()

    record = ledger.create_borrow(item_id=5, borrower_id=9)
    assert record.id is not None
    assert record.item_id == 5
    assert record.borrower_id == 9
    assert record.owner_id == 1
    assert record.borrowed_at is not None
    assert record.returned_at is None
    assert db.session.get(Item, 5, populate_existing=True).available is False
    assert_availability_matches_records(5)

    returned = ledger.return_borrow(borrow_id=record.id, requester_id=9)
    assert returned.id == record.id
    assert returned.returned_at is not None
    assert returned.returned_at > returned.borrowed_at
    assert db.session.get(Item, 5, populate_existing=True).available is True
    assert_availability_matches_records(5)


def test_borrow_unknown_item_is_not_found(ledger, people):
    with pytest.raises(NotFound):
        ledger.create_borrow(item_id=404, borrower_id=9)
    assert BorrowRecord.query.count() == 0


def test_borrow_item_on_loan_conflicts(ledger, people):
    make_item(5, owner_id=1)
    db.session.commit()
    ledger.create_borrow(item_id=5, borrower_id=9)

    with pytest.raises(Conflict):
        ledger.create_borrow(item_id=5, borrower_id=10)
    assert BorrowRecord.query.filter_by(item_id=5).count() == 1
    assert_availability_matches_records(5)


def test_item_can_be_lent_again_after_return(ledger, people):
    make_item(5, owner_id=1)
    db.session.commit()
    first = ledger.create_borrow(item_id=5, borrower_id=9)
    ledger.return_borrow(borrow_id=first.id, requester_id=9)

    second = ledger.create_borrow(item_id=5, borrower_id=10)
    assert second.id != first.id
    assert BorrowRecord.query.filter_by(item_id=5, returned_at=None).one().id == second.id
    assert_availability_matches_records(5)


def test_return_is_one_way(ledger, people):
    make_item(5, owner_id=1)
    db.session.commit()
    record = ledger.create_borrow(item_id=5, borrower_id=9)
    closed = ledger.return_borrow(borrow_id=record.id, requester_id=9)
    returned_at = closed.returned_at

    with pytest.raises(NotFound):
        ledger.return_borrow(borrow_id=record.id, requester_id=9)
    again = db.session.get(BorrowRecord, record.id, populate_existing=True)
    assert again.returned_at == returned_at
    assert_availability_matches_records(5)


def test_return_by_someone_else_changes_nothing(ledger, people):
    make_item(5, owner_id=1)
    db.session.commit()
    record = ledger.create_borrow(item_id=5, borrower_id=9)

    # the owner is not the borrower either
    for requester in (10, 1):
        with pytest.raises(NotFound):
            ledger.return_borrow(borrow_id=record.id, requester_id=requester)

    unchanged = db.session.get(BorrowRecord, record.id, populate_existing=True)
    assert unchanged.returned_at is None
    assert db.session.get(Item, 5, populate_existing=True).available is False
    assert_availability_matches_records(5)


def test_return_unknown_record_is_not_found(ledger, people):
    with pytest.raises(NotFound):
        ledger.return_borrow(borrow_id=12345, requester_id=9)


def test_history_is_scoped_to_borrower_and_newest_first(ledger, people):
    for item_id in (1, 2, 3):
        make_item(item_id, owner_id=1, name=f'Item {item_id}')
    db.session.commit()

    a = ledger.create_borrow(item_id=1, borrower_id=9)
    ledger.create_borrow(item_id=2, borrower_id=10)
    ledger.return_borrow(borrow_id=a.id, requester_id=9)
    c = ledger.create_borrow(item_id=3, borrower_id=9)
    d = ledger.create_borrow(item_id=1, borrower_id=9)

    history = ledger.list_borrow_history(9)
    assert [entry['id'] for entry in history] == [d.id, c.id, a.id]
    assert all(entry['borrower_id'] == 9 for entry in history)
    stamps = [entry['borrowed_at'] for entry in history]
    assert stamps == sorted(stamps, reverse=True)
    assert len(set(stamps)) == len(stamps)
    assert ledger.list_borrow_history(11) == []


def test_history_carries_item_details_and_images(ledger, people):
    item = make_item(5, owner_id=1, name='Tent')
    item.images = [ItemImage(image_url='https://img.example/tent-1.jpg'), ItemImage(image_url='https://img.example/tent-2.jpg')]
    make_item(6, owner_id=1, name='Stove')
    db.session.commit()
    ledger.create_borrow(item_id=5, borrower_id=9)
    ledger.create_borrow(item_id=6, borrower_id=9)

    by_item = {entry['item_id']: entry for entry in ledger.list_borrow_history(9)}
    assert by_item[5]['item_name'] == 'Tent'
    assert by_item[5]['description'] == 'Tent to lend'
    assert by_item[5]['images'] == ['https://img.example/tent-1.jpg', 'https://img.example/tent-2.jpg']
    assert by_item[6]['images'] == []
    assert by_item[6]['returned_at'] is None


def test_rented_out_lists_open_loans_of_owner_only(ledger, people):
    make_item(5, owner_id=1, name='Ladder')
    make_item(6, owner_id=1, name='Saw')
    make_item(7, owner_id=10, name='Kayak')
    make_item(8, owner_id=1, name='Sander')
    db.session.commit()

    old = ledger.create_borrow(item_id=5, borrower_id=10)
    ledger.return_borrow(borrow_id=old.id, requester_id=10)
    current = ledger.create_borrow(item_id=5, borrower_id=9)
    ledger.create_borrow(item_id=7, borrower_id=9)
    saw = ledger.create_borrow(item_id=6, borrower_id=10)

    rented = ledger.list_rented_out(1)
    assert [entry['id'] for entry in rented] == [6, 5]
    ladder = rented[1]
    assert ladder['borrow_id'] == current.id
    assert ladder['borrower_id'] == 9
    assert ladder['borrower_name'] == 'borrower'
    assert ladder['available'] is False
    assert ladder['returned_at'] is None
    assert rented[0]['borrow_id'] == saw.id
    assert ledger.list_rented_out(9) == []


def test_open_loan_index_rejects_second_open_record(ledger, people):
    make_item(5, owner_id=1)
    db.session.commit()
    record = ledger.create_borrow(item_id=5, borrower_id=9)

    db.session.add(BorrowRecord(item_id=5, borrower_id=10, owner_id=1, borrowed_at=record.borrowed_at))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()
    assert_availability_matches_records(5)


def test_store_failure_rolls_back_and_hides_detail(ledger, people, monkeypatch):
    make_item(5, owner_id=1)
    db.session.commit()

    def broken_flip(item_id, available):
        raise OperationalError('UPDATE items', {}, Exception('disk I/O error'))

    monkeypatch.setattr(ledger._catalog, 'set_availability', broken_flip)
    with pytest.raises(StoreFailure) as excinfo:
        ledger.create_borrow(item_id=5, borrower_id=9)
    assert 'disk' not in str(excinfo.value)
    assert BorrowRecord.query.count() == 0
    assert_availability_matches_records(5)


def test_open_record_left_without_flag_flip_still_conflicts(ledger, people):
    # an open record exists while the item still reads available
    make_item(5, owner_id=1)
    db.session.commit()
    stray = ledger._clock()
    db.session.add(BorrowRecord(item_id=5, borrower_id=10, owner_id=1, borrowed_at=stray))
    db.session.commit()

    with pytest.raises(Conflict):
        ledger.create_borrow(item_id=5, borrower_id=9)
    assert db.session.get(Item, 5, populate_existing=True).available is True
    assert BorrowRecord.query.filter_by(item_id=5, returned_at=None).count() == 1


def test_other_integrity_errors_are_store_failures(people):
    make_item(5, owner_id=1)
    db.session.commit()

    def failing_clock():
        raise IntegrityError('INSERT INTO borrow', {}, Exception('FOREIGN KEY constraint failed'))

    ledger = BorrowLedger(catalog=CatalogService(db), store=db, clock=failing_clock)
    with pytest.raises(StoreFailure) as excinfo:
        ledger.create_borrow(item_id=5, borrower_id=9)
    assert 'FOREIGN KEY' not in str(excinfo.value)
    assert BorrowRecord.query.count() == 0
    assert_availability_matches_records(5)


class _Diag:
    def __init__(self, constraint_name):
        self.constraint_name = constraint_name


class _DriverError(Exception):
    def __init__(self, message, constraint_name=None):
        super().__init__(message)
        self.diag = _Diag(constraint_name)


@pytest.mark.parametrize('orig, expected', [
    (_DriverError('duplicate key', 'uq_borrow_open_item'), True),
    (_DriverError('insert or update violates foreign key', 'borrow_borrower_id_fkey'), False),
    (Exception('UNIQUE constraint failed: borrow.item_id'), True),
    (Exception('NOT NULL constraint failed: borrow.owner_id'), False),
])
def test_open_loan_index_violation_is_told_apart(orig, expected):
    exc = IntegrityError('INSERT INTO borrow', {}, orig)
    assert violates_open_loan_index(exc) is expected
