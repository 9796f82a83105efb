"""
Access control evaluation.
"""

from .evaluator import AccessEvaluator, AccessRequest, evaluate_membership, guard_last_managers

__all__ = ["AccessEvaluator", "AccessRequest", "evaluate_membership", "guard_last_managers"]
