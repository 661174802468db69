"""
Module: magistral_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors (the
    fetch-by-id / fetch-all data access contracts).
Architecture position: Kernel > Selectors.  May import from db/ and models/.
    MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors MUST NOT call session.add(), delete(),
      commit() or flush().
    - Session ownership: the caller owns the session and its transaction.
      Instances returned are bound to that session; module services mutate
      them inside their own transaction boundary.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """Abstract base class for all selectors."""

    def __init__(self, session: Session):
        self.session = session
