"""Scheduler worker implementations."""

from mediavault.jobs.workers import JobWorkers

__all__ = ["JobWorkers"]
