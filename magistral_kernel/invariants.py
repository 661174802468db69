"""
Kernel Invariants Contract.

These invariants are structural law.  No configuration file may relax them.

This module declares them explicitly and offers a read-only checker for
the one that spans two tables (status vs. audit trail).  Enforcement is
distributed across AuditTrailService, the immutability listeners, the
DispatchService generation and reception transactions, and the schema
constraints.
"""

from enum import Enum, unique


@unique
class KernelInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    STATUS_MATCHES_TRAIL = "status_matches_trail"
    """Prescription.status equals the status of the last audit entry and
    the trail is never empty.  Enforced by AuditTrailService.append."""

    APPEND_ONLY_TRAIL = "append_only_trail"
    """Audit entries and controlled ledger entries are never updated or
    deleted.  Enforced by magistral_kernel.db.immutability."""

    NO_LOST_APPEND = "no_lost_append"
    """Two concurrent appends to one trail cannot claim the same position.
    Enforced by UNIQUE(prescription_id, seq)."""

    ATOMIC_RECEPTION = "atomic_reception"
    """A dispatch note is Received iff every prescription it references
    moved to Preparation in the same transaction."""

    NO_DOUBLE_ALLOCATION = "no_double_allocation"
    """Stock withdrawn by a dispatch note is decremented in the generation
    transaction under row locks; counters never go negative."""

    CONTROLLED_LEDGER_FIRST = "controlled_ledger_first"
    """A controlled prescription reaches Dispensed only together with its
    controlled ledger entries."""


ALL_KERNEL_INVARIANTS: frozenset[KernelInvariant] = frozenset(KernelInvariant)

# The kernel package may not import from these packages.
# Enforced by tests/architecture/test_kernel_boundary.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "magistral_engines",
    "magistral_services",
    "magistral_config",
    "magistral_modules",
)


def status_trail_violations(status: str, trail_statuses: list[str]) -> list[str]:
    """
    Describe every way ``status`` disagrees with its audit trail.

    Returns an empty list when the pair is consistent.
    """
    violations: list[str] = []
    if not trail_statuses:
        violations.append("audit trail is empty")
    elif trail_statuses[-1] != status:
        violations.append(
            f"status {status!r} differs from last audit entry {trail_statuses[-1]!r}"
        )
    return violations
