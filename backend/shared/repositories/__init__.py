"""Shared repository layer for the broadcast segment tracker."""

from .aggregates import AggregateRepository
from .event_log import EventLogRepository
from .segments import SegmentRepository, SegmentStore

__all__ = [
    "AggregateRepository",
    "EventLogRepository",
    "SegmentRepository",
    "SegmentStore",
]
