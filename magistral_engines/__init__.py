"""
Pure calculation engines: cycle estimation, fractionation and FEFO,
dispatch staging, reception checklists.  Zero I/O.
"""

from magistral_engines.checklists import compounded_checks, missing_checks
from magistral_engines.cycles import (
    CyclePolicy,
    RefusalReason,
    RepreparationDecision,
    Urgency,
    classify_urgency,
    estimate_total_cycles,
    evaluate_repreparation,
    is_document_expired,
)
from magistral_engines.fractionation import (
    LineAssessment,
    LineIssue,
    LotView,
    PackRequirement,
    SourceStock,
    assess_line,
    compute_required_packs,
    order_lots_fefo,
)
from magistral_engines.staging import DispatchStaging, StagedLine, ValidationState

__all__ = [
    "compounded_checks",
    "missing_checks",
    "CyclePolicy",
    "RefusalReason",
    "RepreparationDecision",
    "Urgency",
    "classify_urgency",
    "estimate_total_cycles",
    "evaluate_repreparation",
    "is_document_expired",
    "LineAssessment",
    "LineIssue",
    "LotView",
    "PackRequirement",
    "SourceStock",
    "assess_line",
    "compute_required_packs",
    "order_lots_fefo",
    "DispatchStaging",
    "StagedLine",
    "ValidationState",
]
