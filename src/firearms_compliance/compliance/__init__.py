"""Compliance policy and purchase-limit evaluation."""

from firearms_compliance.compliance.evaluator import (
    CartLine,
    ComplianceEvaluator,
    HoldDecision,
    HoldType,
)
from firearms_compliance.compliance.settings_store import (
    ComplianceConfigStore,
    ComplianceSettings,
)

__all__ = [
    "CartLine",
    "ComplianceEvaluator",
    "HoldDecision",
    "HoldType",
    "ComplianceConfigStore",
    "ComplianceSettings",
]
