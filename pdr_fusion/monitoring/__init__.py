"""Diagnostics and performance monitoring for the fusion engine."""

from .diagnostics import DiagnosticEvent, DiagnosticLog
from .metrics import PerformanceMonitor, PerformanceStats, TickMetrics

__all__ = [
    "DiagnosticEvent",
    "DiagnosticLog",
    "PerformanceMonitor",
    "PerformanceStats",
    "TickMetrics",
]
