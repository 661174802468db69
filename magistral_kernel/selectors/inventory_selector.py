"""
Module: magistral_kernel.selectors.inventory_selector
Responsibility: Read access to inventory items and lots, including the
    row-locking read used inside the dispatch generation transaction.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy import select

from magistral_kernel.exceptions import InventoryItemNotFoundError
from magistral_kernel.models.inventory import InventoryItem, InventoryLot
from magistral_kernel.selectors.base import BaseSelector


class InventorySelector(BaseSelector):
    """Queries over inventory_items and inventory_lots."""

    def find(self, item_id: UUID) -> InventoryItem | None:
        return self.session.get(InventoryItem, item_id)

    def get(self, item_id: UUID) -> InventoryItem:
        item = self.find(item_id)
        if item is None:
            raise InventoryItemNotFoundError(str(item_id))
        return item

    def find_many(self, item_ids: Iterable[UUID]) -> dict[UUID, InventoryItem]:
        ids = list(set(item_ids))
        if not ids:
            return {}
        items = self.session.scalars(
            select(InventoryItem).where(InventoryItem.id.in_(ids))
        )
        return {item.id: item for item in items}

    def list_all(self) -> list[InventoryItem]:
        return list(self.session.scalars(select(InventoryItem).order_by(InventoryItem.name)))

    def list_low_stock(self) -> list[InventoryItem]:
        """Items whose purchase-unit quantity is at or below their threshold."""
        return list(
            self.session.scalars(
                select(InventoryItem)
                .where(InventoryItem.quantity <= InventoryItem.low_stock_threshold)
                .order_by(InventoryItem.name)
            )
        )

    def lock_for_update(self, item_ids: Iterable[UUID]) -> dict[UUID, InventoryItem]:
        """
        Lock items and their lots (SELECT ... FOR UPDATE) and re-read them.

        Rows are locked in id order so that two concurrent generations
        touching the same items cannot deadlock.
        """
        ids = sorted(set(item_ids), key=str)
        if not ids:
            return {}
        items = self.session.scalars(
            select(InventoryItem)
            .where(InventoryItem.id.in_(ids))
            .order_by(InventoryItem.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).all()
        self.session.scalars(
            select(InventoryLot)
            .where(InventoryLot.inventory_item_id.in_(ids))
            .order_by(InventoryLot.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).all()
        return {item.id: item for item in items}
