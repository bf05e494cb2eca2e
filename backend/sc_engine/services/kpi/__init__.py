"""
KPI & Impact Services

- KPICollector: per-division health/risk snapshots
- ImpactEvaluator: before/after impact of a rebalance run
"""

from .collector import KPICollector, KPISource, HttpKPISource, NominalKPISource, clamp_score
from .impact_evaluator import ImpactEvaluator, ImpactResult, compute_impact

__all__ = [
    'KPICollector',
    'KPISource',
    'HttpKPISource',
    'NominalKPISource',
    'clamp_score',
    'ImpactEvaluator',
    'ImpactResult',
    'compute_impact',
]
