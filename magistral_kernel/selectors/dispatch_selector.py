"""
Module: magistral_kernel.selectors.dispatch_selector
Responsibility: Read access to dispatch notes and the set of ingredient
    lines already in flight.
Architecture position: Kernel > Selectors.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from magistral_kernel.exceptions import DispatchNoteNotFoundError
from magistral_kernel.models.dispatch import DispatchItem, DispatchNote, DispatchStatus
from magistral_kernel.selectors.base import BaseSelector


class DispatchNoteSelector(BaseSelector):
    """Queries over dispatch_notes and dispatch_items."""

    def find(self, note_id: UUID) -> DispatchNote | None:
        return self.session.get(DispatchNote, note_id)

    def get(self, note_id: UUID) -> DispatchNote:
        note = self.find(note_id)
        if note is None:
            raise DispatchNoteNotFoundError(str(note_id))
        return note

    def get_for_update(self, note_id: UUID) -> DispatchNote:
        note = self.session.execute(
            select(DispatchNote)
            .where(DispatchNote.id == note_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if note is None:
            raise DispatchNoteNotFoundError(str(note_id))
        return note

    def list_active(self) -> list[DispatchNote]:
        """Active notes, newest first."""
        return list(
            self.session.scalars(
                select(DispatchNote)
                .where(DispatchNote.status == DispatchStatus.ACTIVE.value)
                .order_by(DispatchNote.created_at.desc())
            )
        )

    def list_history(self) -> list[DispatchNote]:
        """Received notes, most recently completed first."""
        return list(
            self.session.scalars(
                select(DispatchNote)
                .where(DispatchNote.status == DispatchStatus.RECEIVED.value)
                .order_by(DispatchNote.completed_at.desc(), DispatchNote.created_at.desc())
            )
        )

    def list_for_pharmacy(self, pharmacy_id: str) -> list[DispatchNote]:
        return list(
            self.session.scalars(
                select(DispatchNote)
                .where(DispatchNote.external_pharmacy_id == pharmacy_id)
                .order_by(DispatchNote.created_at.desc())
            )
        )

    def active_line_keys(self) -> set[tuple[UUID, UUID]]:
        """(recipe_id, prescription_item_id) pairs already on an Active note."""
        rows = self.session.execute(
            select(DispatchItem.recipe_id, DispatchItem.prescription_item_id)
            .join(DispatchNote, DispatchItem.dispatch_note_id == DispatchNote.id)
            .where(DispatchNote.status == DispatchStatus.ACTIVE.value)
        ).all()
        return {(recipe_id, item_id) for recipe_id, item_id in rows}

    def dispatched_line_keys(self, recipe_id: UUID) -> set[tuple[UUID, UUID]]:
        """
        (recipe_id, prescription_item_id) pairs on Active notes for one prescription.

        Received notes belong to earlier cycles: reception moves the
        prescription out of Validated.
        """
        rows = self.session.execute(
            select(DispatchItem.recipe_id, DispatchItem.prescription_item_id)
            .join(DispatchNote, DispatchItem.dispatch_note_id == DispatchNote.id)
            .where(DispatchItem.recipe_id == recipe_id)
            .where(DispatchNote.status == DispatchStatus.ACTIVE.value)
        ).all()
        return {(r, item_id) for r, item_id in rows}
