"""Outage detection, aggregate statistics and report rendering."""

from .outage import (
    DEFAULT_GAP_TOLERANCE,
    Outage,
    Severity,
    outages,
    sort_by_recency,
    sort_by_severity,
)
from .stats import CategoryStats, summarize
