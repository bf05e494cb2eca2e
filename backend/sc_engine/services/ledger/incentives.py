"""
Incentive Signals

Measured inputs for the daily reward rules. Each signal reads the node's
own records over the trailing 24h window:

- risk_reduction:  10 - (KPI snapshots at or above the high-risk line), all divisions
- stability:       mean composite score of the rule's division, minus 70
- job_reliability: scheduled jobs that finished successfully
"""
from datetime import datetime
from typing import Callable, Dict

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...errors import ConfigurationError
from ...models.db_models import AutomationLogDB, DivisionKPIDB, IncentiveRuleDB


HIGH_RISK_SCORE = 70.0
RISK_FREE_ALLOWANCE = 10
STABILITY_BASELINE = 70.0


def reward_amount(signal_value: float, rate_sc: float, weight: float, cap_sc_per_day: float) -> float:
    """Capped, non-negative reward for one rule."""
    return min(cap_sc_per_day, max(0.0, signal_value * rate_sc * weight))


def _risk_reduction(db: Session, division: str, since: datetime) -> float:
    high_risk = db.query(func.count(DivisionKPIDB.id)).filter(
        DivisionKPIDB.captured_at >= since,
        DivisionKPIDB.risk_score >= HIGH_RISK_SCORE,
    ).scalar() or 0
    return float(RISK_FREE_ALLOWANCE - high_risk)


def _stability(db: Session, division: str, since: datetime) -> float:
    avg = db.query(func.avg(DivisionKPIDB.composite_score)).filter(
        DivisionKPIDB.division == division,
        DivisionKPIDB.captured_at >= since,
    ).scalar()
    if avg is None:
        return 0.0
    return float(avg) - STABILITY_BASELINE


def _job_reliability(db: Session, division: str, since: datetime) -> float:
    succeeded = db.query(func.count(AutomationLogDB.id)).filter(
        AutomationLogDB.status == "success",
        AutomationLogDB.created_at >= since,
    ).scalar() or 0
    return float(succeeded)


SIGNALS: Dict[str, Callable[[Session, str, datetime], float]] = {
    "risk_reduction": _risk_reduction,
    "stability": _stability,
    "job_reliability": _job_reliability,
}


def measure_signal(db: Session, rule: IncentiveRuleDB, since: datetime) -> float:
    measure = SIGNALS.get(rule.signal)
    if measure is None:
        raise ConfigurationError(f"Unknown incentive signal '{rule.signal}' on rule {rule.rule_key}")
    return measure(db, rule.division, since)
