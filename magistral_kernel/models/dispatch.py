"""
Module: magistral_kernel.models.dispatch
Responsibility: ORM persistence for dispatch notes (internal shipments of
    Skol-supplied raw materials to a compounding pharmacy) and their lines.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - A note is created Active and moves once, irreversibly, to Received.
    - Notes and lines are never deleted; lines are never updated
      (ORM listeners in db/immutability.py).
    - folio is unique.

Audit relevance:
    The note is the shipment record linking inventory lots to the
    prescriptions they were withdrawn for.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from magistral_kernel.db.base import Base, UUIDString


class DispatchStatus(str, Enum):
    ACTIVE = "active"
    RECEIVED = "received"


class DispatchNote(Base):
    """
    A batched, auditable shipment record.

    ``external_pharmacy_id`` is the receiving compounding pharmacy.
    """

    __tablename__ = "dispatch_notes"

    __table_args__ = (
        UniqueConstraint("folio", name="uq_dispatch_note_folio"),
        Index("idx_dispatch_note_status", "status"),
        Index("idx_dispatch_note_pharmacy", "external_pharmacy_id"),
    )

    folio: Mapped[str] = mapped_column(String(32), nullable=False)
    external_pharmacy_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        default=DispatchStatus.ACTIVE.value,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    dispatcher_id: Mapped[str] = mapped_column(String(128), nullable=False)
    dispatcher_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    received_by_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    received_by_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    items: Mapped[list[DispatchItem]] = relationship(
        back_populates="note",
        order_by="DispatchItem.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<DispatchNote {self.folio} status={self.status}>"

    @property
    def is_active(self) -> bool:
        return self.status == DispatchStatus.ACTIVE

    @property
    def recipe_ids(self) -> list[UUID]:
        """Distinct prescription ids in line order."""
        seen: dict[UUID, None] = {}
        for item in self.items:
            seen.setdefault(item.recipe_id, None)
        return list(seen)


class DispatchItem(Base):
    """
    One withdrawn lot quantity, in purchase units, for one prescription item.

    ``prescription_item_id`` identifies the line; two items of a prescription
    may draw on the same source product.
    """

    __tablename__ = "dispatch_items"

    __table_args__ = (
        UniqueConstraint("dispatch_note_id", "position", name="uq_dispatch_item_position"),
        Index("idx_dispatch_item_recipe", "recipe_id"),
    )

    dispatch_note_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("dispatch_notes.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    recipe_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("prescriptions.id"),
        nullable=False,
    )
    prescription_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("prescription_items.id"),
        nullable=False,
    )
    inventory_item_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    recipe_item_name: Mapped[str] = mapped_column(String(200), nullable=False)
    lot_number: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    note: Mapped[DispatchNote] = relationship(back_populates="items")

    def __repr__(self) -> str:
        return f"<DispatchItem {self.recipe_item_name} lot={self.lot_number} qty={self.quantity}>"

    @property
    def checklist_key(self) -> str:
        """Reception checklist key; unique within a note."""
        return f"{self.recipe_id}-{self.prescription_item_id}-{self.lot_number}"
