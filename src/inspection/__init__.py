"""Inspection — the ordered checks that decide an application."""

from src.inspection.pipeline import InspectionPipeline
from src.inspection.rules import check_business_rules, parse_instant, stay_hours

__all__ = [
    "InspectionPipeline",
    "check_business_rules",
    "parse_instant",
    "stay_hours",
]
