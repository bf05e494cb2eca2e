"""
SC Engine - Federation Wire Schemas

Strict pydantic models for bundles exchanged between nodes.
Unknown fields are rejected so a peer cannot smuggle extra data past the
verifier.
"""
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware timestamp to naive UTC (naive values are assumed UTC)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class FederationSignal(BaseModel):
    """Aggregated, noised learning signal for one division."""
    model_config = ConfigDict(extra="forbid")

    division: str = Field(min_length=1)
    impact_per_sc_avg: float = Field(allow_inf_nan=False)
    sample_size: int = Field(ge=0, strict=True)
    stddev: float = Field(ge=0, allow_inf_nan=False)

    @field_validator('division')
    @classmethod
    def division_not_blank(cls, v):
        if not v.strip():
            raise ValueError('division must be non-empty')
        return v


class FederationBundle(BaseModel):
    """Outbound/inbound learning signal bundle."""
    model_config = ConfigDict(extra="forbid")

    window_start: datetime
    window_end: datetime
    node_reliability: Optional[float] = Field(default=None, ge=0, le=1, allow_inf_nan=False)
    signals: List[FederationSignal] = Field(min_length=1)

    @field_validator('window_start', 'window_end', mode='before')
    @classmethod
    def iso_timestamp(cls, v):
        if not isinstance(v, str):
            raise ValueError('timestamp must be an ISO-8601 string')
        text = v[:-1] + '+00:00' if v.endswith('Z') else v
        try:
            return to_naive_utc(datetime.fromisoformat(text))
        except ValueError:
            raise ValueError(f'invalid ISO-8601 timestamp: {v}')

    @model_validator(mode='after')
    def window_ordered(self):
        if self.window_start > self.window_end:
            raise ValueError('window_start must not be after window_end')
        return self
