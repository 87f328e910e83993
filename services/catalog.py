"""Item catalog access: item rows, image URLs and the availability flag."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from models import Item, ItemImage

from .base import StoreService
from .errors import BorrowServiceError, Conflict, Forbidden, NotFound, ValidationError


class CatalogService(StoreService):
    """Reads and writes items; ``available`` is only flipped on behalf of the borrow ledger."""

    def get_item(self, item_id: int) -> Item:
        self._require_id(item_id, 'Item not found')
        try:
            item = self.session.get(Item, item_id)
        except SQLAlchemyError as exc:
            raise self._store_failure('Item lookup', exc) from exc
        if not item:
            raise NotFound('Item not found')
        return item

    def set_availability(self, item_id: int, available: bool) -> bool:
        """Flip the flag only if it currently holds the opposite value.

        Runs inside the caller's transaction and returns whether the row
        changed. The conditional update takes the row lock, so concurrent
        callers serialize on it and exactly one of them wins the flip.
        """
        result = self.session.execute(
            update(Item)
            .where(Item.id == item_id, Item.available == (not available))
            .values(available=available)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def get_images(self, item_ids: Iterable[int]) -> dict[int, list[str]]:
        ids = {int(i) for i in item_ids if i is not None}
        images: dict[int, list[str]] = {i: [] for i in ids}
        if not ids:
            return images
        rows = self.session.execute(
            select(ItemImage.item_id, ItemImage.image_url)
            .where(ItemImage.item_id.in_(ids))
            .order_by(ItemImage.id)
        )
        for item_id, image_url in rows:
            images[item_id].append(image_url)
        return images

    def _with_images(self, items: list[Item]) -> list[dict]:
        images = self.get_images(item.id for item in items)
        return [item.to_dict(images=images.get(item.id, [])) for item in items]

    def item_detail(self, item_id: int) -> dict:
        item = self.get_item(item_id)
        try:
            return self._with_images([item])[0]
        except SQLAlchemyError as exc:
            raise self._store_failure('Item detail', exc) from exc

    def list_available(self) -> list[dict]:
        try:
            items = self.session.query(Item).filter_by(available=True).order_by(Item.id).all()
            return self._with_images(items)
        except SQLAlchemyError as exc:
            raise self._store_failure('Available items', exc) from exc

    def list_listed(self, owner_id: int) -> list[dict]:
        try:
            items = self.session.query(Item).filter_by(owner_id=owner_id).order_by(Item.id).all()
            return self._with_images(items)
        except SQLAlchemyError as exc:
            raise self._store_failure('Listed items', exc) from exc

    def add_item(
        self,
        *,
        owner_id: int,
        name: Optional[str],
        description: Optional[str] = None,
        category: Optional[str] = None,
        price=None,
        images: Optional[Iterable[str]] = None,
    ) -> Item:
        name = (name or '').strip()
        if not name:
            raise ValidationError('Item name is required')
        price_value = None
        if price not in (None, ''):
            try:
                price_value = Decimal(str(price))
            except InvalidOperation:
                raise ValidationError('Price must be a number') from None
            if price_value < 0:
                raise ValidationError('Price must not be negative')
        urls = [u.strip() for u in (images or []) if isinstance(u, str) and u.strip()]
        try:
            with self._transaction() as session:
                item = Item(
                    owner_id=owner_id,
                    name=name,
                    description=description,
                    category=category,
                    price=price_value,
                    available=True,
                )
                item.images = [ItemImage(image_url=url) for url in urls]
                session.add(item)
            return item
        except SQLAlchemyError as exc:
            raise self._store_failure('Add item', exc) from exc

    def delete_item(self, item_id: int, requester_id: int) -> None:
        """Delete an owner's item unless it is on loan.

        The delete only matches an available row owned by the requester, so a
        borrow that flips ``available`` first makes it match nothing; the
        reason is worked out afterwards.
        """
        self._require_id(item_id, 'Item not found')
        try:
            with self._transaction() as session:
                deleted = session.execute(
                    delete(Item)
                    .where(Item.id == item_id, Item.owner_id == requester_id, Item.available.is_(True))
                    .execution_options(synchronize_session=False)
                )
                if deleted.rowcount != 1:
                    owner_id = session.execute(select(Item.owner_id).where(Item.id == item_id)).scalar()
                    if owner_id is None:
                        raise NotFound('Item not found')
                    if owner_id != requester_id:
                        raise Forbidden('Unauthorized: You do not own this item')
                    raise Conflict('Item is currently borrowed')
                session.execute(
                    delete(ItemImage)
                    .where(ItemImage.item_id == item_id)
                    .execution_options(synchronize_session=False)
                )
        except BorrowServiceError:
            raise
        except SQLAlchemyError as exc:
            raise self._store_failure('Delete item', exc) from exc
