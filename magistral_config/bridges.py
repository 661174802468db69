"""
Bridges from ``MagistralConfig`` to the engine-side policy types.

The engines never import configuration; the module services call these
functions once at construction.
"""

from __future__ import annotations

from magistral_config.schema import MagistralConfig
from magistral_engines.cycles import CyclePolicy


def cycle_policy_from_config(config: MagistralConfig) -> CyclePolicy:
    return CyclePolicy(
        max_repreparations=config.cycles.max_repreparations,
        early_before_days=config.urgency.early_before_days,
        urgent_after_days=config.urgency.urgent_after_days,
        unit_multipliers=config.cycles.unit_multipliers,
    )
