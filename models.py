import datetime
from datetime import timezone
from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy instance (initialized by app)
db = SQLAlchemy()

OPEN_LOAN_INDEX = 'uq_borrow_open_item'


def _utcnow():
    return datetime.datetime.now(timezone.utc)


def _isoformat(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
        }


class Item(db.Model):
    __tablename__ = 'items'
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(80), nullable=True)
    price = db.Column(db.Numeric(10, 2), nullable=True)
    # only written by the borrow ledger after creation
    available = db.Column(db.Boolean, nullable=False, default=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    owner = db.relationship('User', backref=db.backref('items', lazy=True))
    images = db.relationship(
        'ItemImage',
        backref='item',
        lazy=True,
        cascade='all, delete-orphan',
        order_by='ItemImage.id',
    )

    def to_dict(self, images=None):
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'name': self.name,
            'description': self.description,
            'category': self.category,
            'price': str(self.price) if self.price is not None else None,
            'available': self.available,
            'created_at': _isoformat(self.created_at),
            'images': list(images) if images is not None else [],
        }


class ItemImage(db.Model):
    __tablename__ = 'item_images'
    id = db.Column(db.Integer, primary_key=True)
    item_id = db.Column(db.Integer, db.ForeignKey('items.id', ondelete='CASCADE'), nullable=False, index=True)
    image_url = db.Column(db.String(1024), nullable=False)


class BorrowRecord(db.Model):
    __tablename__ = 'borrow'
    __table_args__ = (
        # at most one open loan per item
        db.Index(
            OPEN_LOAN_INDEX,
            'item_id',
            unique=True,
            sqlite_where=db.text('returned_at IS NULL'),
            postgresql_where=db.text('returned_at IS NULL'),
        ),
    )
    id = db.Column(db.Integer, primary_key=True)
    # no FK to items: closed records outlive a deleted item
    item_id = db.Column(db.Integer, nullable=False, index=True)
    borrower_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    owner_id = db.Column(db.Integer, nullable=False)
    borrowed_at = db.Column(db.DateTime(timezone=True), nullable=False)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    borrower = db.relationship('User', foreign_keys=[borrower_id])

    @property
    def is_open(self):
        return self.returned_at is None

    def to_dict(self):
        return {
            'id': self.id,
            'item_id': self.item_id,
            'borrower_id': self.borrower_id,
            'owner_id': self.owner_id,
            'borrowed_at': _isoformat(self.borrowed_at),
            'returned_at': _isoformat(self.returned_at),
        }
