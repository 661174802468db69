"""
Module: magistral_engines.checklists
Responsibility:
    Reception checklists.  The compounded-product checklist (label, expiry
    and lot assigned, appearance, plus cold chain for refrigerated items)
    and the per-line dispatch note checklist.

Architecture position:
    Engines -- pure, zero I/O.

Invariants enforced:
    - A check counts only when explicitly ``True``; missing keys, ``None``
      and any other value count as unconfirmed.
"""

from __future__ import annotations

from typing import Iterable, Mapping

LABEL = "label"
EXPIRY_LOT = "expiry_lot"
APPEARANCE = "appearance"
COLD_CHAIN = "cold_chain"

BASE_COMPOUNDED_CHECKS: tuple[str, ...] = (LABEL, EXPIRY_LOT, APPEARANCE)


def compounded_checks(requires_cold_chain: bool) -> tuple[str, ...]:
    """Checks required to receive a compounded product."""
    if requires_cold_chain:
        return BASE_COMPOUNDED_CHECKS + (COLD_CHAIN,)
    return BASE_COMPOUNDED_CHECKS


def missing_checks(required: Iterable[str], confirmed: Mapping[str, object] | None) -> list[str]:
    """Required keys that are not confirmed, in required order."""
    confirmed = confirmed or {}
    return [key for key in required if confirmed.get(key) is not True]
