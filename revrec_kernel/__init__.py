"""
Revenue Recognition Kernel

Lowest layer of the revenue recognition and reconciliation engine:
- Structured logging and typed exceptions
- Deterministic clock and hashing
- ORM models for catalog, usage, schedules, ledger and reconciliation runs
- Store abstraction (transactional or degraded)
- Prometheus metrics
"""

__version__ = "0.1.0"
