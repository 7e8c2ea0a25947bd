"""Audit pipeline: job store, orchestrator and result aggregation."""

from auditengine.pipeline.aggregator import ResultAggregator  # noqa: F401
from auditengine.pipeline.orchestrator import AuditOrchestrator, StageEvent  # noqa: F401
from auditengine.pipeline.store import (  # noqa: F401
    InMemoryJobStore,
    JobNotFoundError,
    JobStore,
    SQLAlchemyJobStore,
)

__all__ = [
    "AuditOrchestrator",
    "StageEvent",
    "ResultAggregator",
    "JobStore",
    "InMemoryJobStore",
    "SQLAlchemyJobStore",
    "JobNotFoundError",
]
