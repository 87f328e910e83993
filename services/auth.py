"""Identity helpers: user accounts and bearer-token verification."""
from __future__ import annotations

from flask_jwt_extended import create_access_token, get_jwt_identity
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from models import User

from .base import StoreService
from .errors import Conflict, NotFound, Unauthorized, ValidationError


class IdentityService(StoreService):
    def register_user(self, *, username: str | None, email: str | None, password: str | None) -> User:
        username = (username or '').strip()
        email = (email or '').strip().lower()
        if not username or not email or not password:
            raise ValidationError('username, email and password are required')
        try:
            taken = (
                self.session.query(User.id)
                .filter(or_(User.email == email, User.username == username))
                .first()
            )
            if taken:
                raise Conflict('User already exists')
            with self._transaction() as session:
                user = User(username=username, email=email, password_hash=generate_password_hash(password))
                session.add(user)
            return user
        except IntegrityError as exc:
            raise Conflict('User already exists') from exc
        except SQLAlchemyError as exc:
            raise self._store_failure('Register user', exc) from exc

    def authenticate(self, *, email: str | None, password: str | None) -> User:
        email = (email or '').strip().lower()
        try:
            user = self.session.query(User).filter_by(email=email).first() if email else None
        except SQLAlchemyError as exc:
            raise self._store_failure('Login', exc) from exc
        if not user or not password or not check_password_hash(user.password_hash, password):
            raise Unauthorized('Invalid credentials')
        return user

    def get_user(self, user_id: int) -> User:
        self._require_id(user_id, 'User not found')
        try:
            user = self.session.get(User, user_id)
        except SQLAlchemyError as exc:
            raise self._store_failure('User lookup', exc) from exc
        if not user:
            raise NotFound('User not found')
        return user


def issue_token(user: User) -> str:
    return create_access_token(identity=str(user.id))


def current_user_id() -> int:
    """Verified caller id; only valid inside a ``jwt_required`` view."""
    return int(get_jwt_identity())
