"""Remote log monitoring core: configuration, locks, interval scheduling, an in-memory job queue and sweep runners."""

__version__ = "0.1.0"

__all__ = ["config", "locks", "scheduler", "jobs", "runners", "integrity_runner"]