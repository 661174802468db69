"""
Module: magistral_kernel.models.inventory
Responsibility: ORM persistence for stock-keeping items and their
    physical lots.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - InventoryItem.quantity is the authoritative purchase-unit counter and
      never goes negative.
    - InventoryLot.quantity is never negative; lots at zero are excluded
      from selection but kept for traceability.
    - Dispatch consumption decrements both counters in the same transaction
      (DispatchService).

Failure modes:
    - IntegrityError (CHECK) if a decrement would drive a counter below zero.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from magistral_kernel.db.base import Base, TrackedBase, UUIDString


class InventoryItem(TrackedBase):
    """A commercial product held in stock, counted in purchase units (boxes)."""

    __tablename__ = "inventory_items"

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_item_quantity"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unit: Mapped[str] = mapped_column(String(32), default="box", nullable=False)

    # Dose units per purchase unit (tablets per box)
    items_per_base_unit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Active-ingredient content per dose unit
    dose_value: Mapped[Decimal | None] = mapped_column(nullable=True)
    dose_unit: Mapped[str | None] = mapped_column(String(32), nullable=True)

    barcode: Mapped[str | None] = mapped_column(String(64), nullable=True)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    lots: Mapped[list[InventoryLot]] = relationship(
        back_populates="item",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<InventoryItem {self.name} qty={self.quantity}>"

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.low_stock_threshold

    def find_lot(self, lot_number: str) -> InventoryLot | None:
        for lot in self.lots:
            if lot.lot_number == lot_number:
                return lot
        return None


class InventoryLot(Base):
    """A physical lot of an inventory item, for traceability and FEFO."""

    __tablename__ = "inventory_lots"

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_lot_quantity"),
    )

    inventory_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("inventory_items.id"),
        nullable=False,
    )
    lot_number: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    expiry_date: Mapped[date | None] = mapped_column(nullable=True)

    item: Mapped[InventoryItem] = relationship(back_populates="lots")

    def __repr__(self) -> str:
        return f"<InventoryLot {self.lot_number} qty={self.quantity} exp={self.expiry_date}>"
