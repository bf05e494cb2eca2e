"""
Division KPI Collector

Takes one immutable health/risk snapshot per division per cycle.

Sources are pluggable. A source returns:
    {"composite_score": 0-100, "risk_score": 0-100, "metric": {...}}

A failing source is captured for its division only; sibling divisions
are still collected.
"""
import logging
import math
from typing import Any, Dict, List, Optional
from uuid import uuid4

import requests
from sqlalchemy.orm import Session

from ... import config
from ...errors import TransientError, ValidationError
from ...models.db_models import DivisionKPIDB


logger = logging.getLogger(__name__)


def clamp_score(value: Any) -> float:
    """Clamp a score to 0-100. Non-numeric or non-finite input is rejected."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Score is not numeric: {value!r}")
    if not math.isfinite(score):
        raise ValidationError(f"Score is not finite: {value!r}")
    return max(0.0, min(100.0, score))


class KPISource:
    """External collaborator producing a division's raw KPI reading."""

    def fetch(self, division: str) -> Dict[str, Any]:
        raise NotImplementedError


class NominalKPISource(KPISource):
    """Fixed nominal reading for divisions with no live feed."""

    def __init__(self, composite_score: float = 80.0, risk_score: float = 20.0):
        self.composite_score = composite_score
        self.risk_score = risk_score

    def fetch(self, division: str) -> Dict[str, Any]:
        return {
            "composite_score": self.composite_score,
            "risk_score": self.risk_score,
            "metric": {"status": "nominal"},
        }


class HttpKPISource(KPISource):
    """Fetches a JSON KPI document over HTTP with a bounded timeout."""

    def __init__(self, url: str, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout if timeout is not None else config.KPI_HTTP_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def fetch(self, division: str) -> Dict[str, Any]:
        try:
            response = self.session.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise TransientError(f"KPI source for {division} failed: {e}")

        if not isinstance(data, dict):
            raise TransientError(f"KPI source for {division} returned a non-object document")
        return data


class KPICollector:
    """
    Collects KPI snapshots for every configured division.

    Usage:
        collector = KPICollector(db)
        result = collector.collect()
    """

    def __init__(
        self,
        db: Session,
        sources: Optional[Dict[str, KPISource]] = None,
        divisions: Optional[List[str]] = None,
    ):
        self.db = db
        self.divisions = divisions if divisions is not None else config.DIVISIONS
        if sources is None:
            sources = {division: HttpKPISource(url) for division, url in config.KPI_SOURCES.items()}
        self.sources = sources
        self.fallback = NominalKPISource()

    def collect(self) -> Dict[str, Any]:
        collected = []
        errors = []

        for division in self.divisions:
            source = self.sources.get(division, self.fallback)
            try:
                reading = source.fetch(division)
                snapshot = DivisionKPIDB(
                    id=str(uuid4()),
                    division=division,
                    composite_score=clamp_score(reading.get("composite_score")),
                    risk_score=clamp_score(reading.get("risk_score")),
                    metric=reading.get("metric") or {},
                )
                self.db.add(snapshot)
                self.db.flush()
                collected.append(division)
            except (TransientError, ValidationError) as e:
                logger.warning(f"KPI collection failed for {division}: {e.message}")
                errors.append({"division": division, "error": e.message})

        logger.info(f"KPIs collected for {len(collected)} divisions ({len(errors)} errors)")

        return {
            "ok": True,
            "collected": len(collected),
            "divisions": collected,
            "errors": errors,
        }
