import datetime

import pytest
from sqlalchemy.exc import OperationalError

from app import create_app
from models import BorrowRecord, Item, User, db


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


class StepClock:
    """Deterministic clock: every call is one minute after the previous one."""

    def __init__(self, start=None):
        self.current = start or datetime.datetime(2024, 1, 1, 9, 0, tzinfo=datetime.timezone.utc)

    def __call__(self):
        value = self.current
        self.current += datetime.timedelta(minutes=1)
        return value


@pytest.fixture
def clock():
    return StepClock()


def make_user(user_id, username=None):
    username = username or f'user{user_id}'
    user = User(id=user_id, username=username, email=f'{username}@example.com', password_hash='hash')
    db.session.add(user)
    return user


def make_item(item_id=None, owner_id=1, name='Drill', available=True):
    item = Item(id=item_id, owner_id=owner_id, name=name, description=f'{name} to lend', available=available)
    db.session.add(item)
    return item


def assert_availability_matches_records(item_id):
    item = db.session.get(Item, item_id, populate_existing=True)
    open_count = BorrowRecord.query.filter_by(item_id=item_id, returned_at=None).count()
    assert open_count in (0, 1)
    assert item.available == (open_count == 0)


class BrokenSession:
    """Session whose every statement fails the way a dropped connection does."""

    def rollback(self):
        pass

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise OperationalError('SELECT 1', {}, Exception('server closed the connection unexpectedly'))
        return fail


class BrokenStore:
    session = BrokenSession()
