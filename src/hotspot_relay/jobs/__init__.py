"""Durable job scheduling."""

from .store import JobStats, JobStore

__all__ = ["JobStats", "JobStore"]
