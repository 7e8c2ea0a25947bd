"""Database models package."""

from auditengine.models.base import Base, TimestampMixin  # noqa: F401
from auditengine.models.job import AuditJobRecord, AuditResultRecord, AuditStageRecord  # noqa: F401

__all__ = [
    "Base",
    "TimestampMixin",
    "AuditJobRecord",
    "AuditStageRecord",
    "AuditResultRecord",
]
