"""
Scheduler Services

Cadence-driven jobs with automation logging.
"""

from .jobs import JobRunner, JOBS, run_all

__all__ = [
    'JobRunner',
    'JOBS',
    'run_all',
]
