"""Orchestration layer: multi-transaction workflows."""

from marketplace_escrow.orchestration.award_workflow import run_award_workflow

__all__ = ["run_award_workflow"]
