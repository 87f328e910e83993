from __future__ import annotations

import os

import click
from flask import Flask, current_app, jsonify, request
from flask_jwt_extended import JWTManager, jwt_required
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import BaseConfig, config_by_name
from models import db
from services import (
    BorrowLedger,
    BorrowServiceError,
    CatalogService,
    IdentityService,
    StoreFailure,
    current_user_id,
    issue_token,
)


def _load_config(app: Flask, config_name: str | None, test_config: dict | None) -> None:
    resolved_name = config_name or os.environ.get('FLASK_CONFIG', 'development')
    config_cls = config_by_name.get(resolved_name, BaseConfig)
    app.config.from_object(config_cls)
    if test_config:
        app.config.update(test_config)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _ledger() -> BorrowLedger:
    return current_app.extensions['borrow_ledger']


def _catalog() -> CatalogService:
    return current_app.extensions['catalog']


def _identity() -> IdentityService:
    return current_app.extensions['identity']


def create_app(config_name: str | None = None, test_config: dict | None = None):
    if isinstance(config_name, dict) and test_config is None:
        test_config = config_name
        config_name = None
    app = Flask(__name__)
    _load_config(app, config_name, test_config)
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(app)
    JWTManager(app)

    catalog = CatalogService(store=db)
    app.extensions['catalog'] = catalog
    app.extensions['borrow_ledger'] = BorrowLedger(catalog=catalog, store=db)
    app.extensions['identity'] = IdentityService(store=db)

    @app.cli.command('init-db')
    def init_db():
        """Create the tables for the configured database."""
        db.create_all()
        click.echo(f"Initialized database ({app.config['SQLALCHEMY_DATABASE_URI']})")

    @app.errorhandler(BorrowServiceError)
    def handle_service_error(exc: BorrowServiceError):
        if isinstance(exc, StoreFailure):
            return jsonify({'error': StoreFailure.default_message}), exc.status_code
        return jsonify({'error': str(exc)}), exc.status_code

    @app.after_request
    def set_security_headers(response):
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('Referrer-Policy', 'no-referrer')
        return response

    @app.route('/')
    def index():
        try:
            now = db.session.execute(text('SELECT CURRENT_TIMESTAMP')).scalar()
        except SQLAlchemyError as exc:
            app.logger.exception('Health check failed: %s', exc)
            return 'Database connection failed.', 500
        return f'BorrowBuddy API is running... DB Time: {now}'

    # auth

    @app.route('/api/auth/register', methods=['POST'])
    def register():
        data = _json_body()
        user = _identity().register_user(
            username=data.get('username'),
            email=data.get('email'),
            password=data.get('password'),
        )
        return jsonify({'message': 'User registered successfully', 'token': issue_token(user)}), 201

    @app.route('/api/auth/login', methods=['POST'])
    def login():
        data = _json_body()
        user = _identity().authenticate(email=data.get('email'), password=data.get('password'))
        return jsonify({'message': 'Login successful', 'token': issue_token(user)})

    @app.route('/api/auth/user', methods=['GET'])
    @jwt_required()
    def auth_user():
        user = _identity().get_user(current_user_id())
        return jsonify({'username': user.username, 'email': user.email})

    # items

    @app.route('/api/items/items', methods=['POST'])
    @jwt_required()
    def add_item():
        data = _json_body()
        images = data.get('images') or []
        if not isinstance(images, list):
            return jsonify({'error': 'images must be a list of URLs'}), 400
        item = _catalog().add_item(
            owner_id=current_user_id(),
            name=data.get('name'),
            description=data.get('description'),
            category=data.get('category'),
            price=data.get('price'),
            images=images,
        )
        return jsonify({'success': True, 'itemId': item.id}), 201

    @app.route('/api/items/items', methods=['GET'])
    def list_items():
        return jsonify(_catalog().list_available())

    @app.route('/api/items/items/<int:item_id>', methods=['GET'])
    def item_detail(item_id: int):
        return jsonify(_catalog().item_detail(item_id))

    @app.route('/api/items/items/<int:item_id>', methods=['DELETE'])
    @jwt_required()
    def delete_item(item_id: int):
        _catalog().delete_item(item_id, current_user_id())
        return jsonify({'success': True, 'message': 'Item deleted successfully'})

    @app.route('/api/items/listed', methods=['GET'])
    @jwt_required()
    def listed_items():
        return jsonify(_catalog().list_listed(current_user_id()))

    @app.route('/api/items/rented', methods=['GET'])
    @jwt_required()
    def rented_items():
        return jsonify(_ledger().list_rented_out(current_user_id()))

    # borrow

    @app.route('/api/borrow', methods=['POST'])
    @jwt_required()
    def create_borrow():
        raw_item_id = _json_body().get('item_id')
        if isinstance(raw_item_id, (bool, float)):
            return jsonify({'error': 'Item ID is required'}), 400
        try:
            item_id = int(raw_item_id)
        except (TypeError, ValueError):
            return jsonify({'error': 'Item ID is required'}), 400
        record = _ledger().create_borrow(item_id=item_id, borrower_id=current_user_id())
        return jsonify(record.to_dict()), 201

    @app.route('/api/borrow', methods=['GET'])
    @jwt_required()
    def borrow_history():
        return jsonify(_ledger().list_borrow_history(current_user_id()))

    @app.route('/api/borrow/<int:borrow_id>/return', methods=['PATCH'])
    @jwt_required()
    def return_borrow(borrow_id: int):
        record = _ledger().return_borrow(borrow_id=borrow_id, requester_id=current_user_id())
        return jsonify(record.to_dict())

    return app


if __name__ == '__main__':
    application = create_app()
    with application.app_context():
        db.create_all()
    application.run(debug=application.config.get('DEBUG', False))
