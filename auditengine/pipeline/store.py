"""Persistent job/stage store.

Two record kinds, each only ever addressed by job id: job records and
stage records keyed by (job id, stage). The orchestrator is the only writer.
"""

from __future__ import annotations

import abc
import copy
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditengine.core.types import (
    STAGE_ORDER,
    AuditJob,
    AuditRequest,
    AuditResult,
    AuditStage,
    JobStatus,
    StageName,
    StageStatus,
)
from auditengine.models.job import AuditJobRecord, AuditResultRecord, AuditStageRecord


class JobNotFoundError(KeyError):
    """Raised when a job id has no record in the store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(job_id)
        self.job_id = job_id

    def __str__(self) -> str:
        return f"Audit job not found: {self.job_id}"


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back out
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def pending_stages(job_id: str) -> list[AuditStage]:
    return [AuditStage(job_id=job_id, stage=stage) for stage in STAGE_ORDER]


class JobStore(abc.ABC):
    """Storage contract used by the orchestrator and the API."""

    @abc.abstractmethod
    async def create_job(self, job: AuditJob, request: AuditRequest) -> None:
        """Persist a new job together with its seven pending stage records."""

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> AuditJob:
        ...

    @abc.abstractmethod
    async def save_job(self, job: AuditJob) -> None:
        ...

    @abc.abstractmethod
    async def get_request(self, job_id: str) -> AuditRequest:
        ...

    @abc.abstractmethod
    async def get_stage(self, job_id: str, stage: StageName) -> AuditStage:
        ...

    @abc.abstractmethod
    async def save_stage(self, stage: AuditStage) -> None:
        ...

    @abc.abstractmethod
    async def list_stages(self, job_id: str) -> list[AuditStage]:
        """Stage records in pipeline order."""

    @abc.abstractmethod
    async def find_oldest_queued(self) -> AuditJob | None:
        """Oldest queued job by creation time, then insertion order."""

    @abc.abstractmethod
    async def find_by_status(self, *statuses: JobStatus) -> list[AuditJob]:
        ...

    @abc.abstractmethod
    async def save_result(self, result: AuditResult) -> None:
        ...

    @abc.abstractmethod
    async def get_result(self, job_id: str) -> AuditResult | None:
        ...


# ── In-memory ────────────────────────────────────────────────────────────────


class InMemoryJobStore(JobStore):
    """Dict-backed store for the CLI and tests. Values are copied on the way in and out."""

    def __init__(self) -> None:
        self._jobs: dict[str, AuditJob] = {}
        self._order: dict[str, int] = {}
        self._requests: dict[str, AuditRequest] = {}
        self._stages: dict[tuple[str, StageName], AuditStage] = {}
        self._results: dict[str, AuditResult] = {}

    async def create_job(self, job: AuditJob, request: AuditRequest) -> None:
        self._jobs[job.job_id] = job.model_copy()
        self._order[job.job_id] = len(self._order)
        self._requests[job.job_id] = request.model_copy(deep=True)
        for stage in pending_stages(job.job_id):
            self._stages[(job.job_id, stage.stage)] = stage

    async def get_job(self, job_id: str) -> AuditJob:
        try:
            return self._jobs[job_id].model_copy()
        except KeyError:
            raise JobNotFoundError(job_id) from None

    async def save_job(self, job: AuditJob) -> None:
        if job.job_id not in self._jobs:
            raise JobNotFoundError(job.job_id)
        self._jobs[job.job_id] = job.model_copy()

    async def get_request(self, job_id: str) -> AuditRequest:
        try:
            return self._requests[job_id].model_copy(deep=True)
        except KeyError:
            raise JobNotFoundError(job_id) from None

    async def get_stage(self, job_id: str, stage: StageName) -> AuditStage:
        try:
            return self._stages[(job_id, stage)].model_copy(deep=True)
        except KeyError:
            raise JobNotFoundError(job_id) from None

    async def save_stage(self, stage: AuditStage) -> None:
        if stage.job_id not in self._jobs:
            raise JobNotFoundError(stage.job_id)
        self._stages[(stage.job_id, stage.stage)] = stage.model_copy(deep=True)

    async def list_stages(self, job_id: str) -> list[AuditStage]:
        if job_id not in self._jobs:
            raise JobNotFoundError(job_id)
        return [self._stages[(job_id, s)].model_copy(deep=True) for s in STAGE_ORDER]

    async def find_oldest_queued(self) -> AuditJob | None:
        queued = [j for j in self._jobs.values() if j.status is JobStatus.QUEUED]
        if not queued:
            return None
        oldest = min(queued, key=lambda j: (j.created_at, self._order[j.job_id]))
        return oldest.model_copy()

    async def find_by_status(self, *statuses: JobStatus) -> list[AuditJob]:
        jobs = [j for j in self._jobs.values() if j.status in statuses]
        jobs.sort(key=lambda j: (j.created_at, self._order[j.job_id]))
        return [j.model_copy() for j in jobs]

    async def save_result(self, result: AuditResult) -> None:
        if result.audit_id not in self._jobs:
            raise JobNotFoundError(result.audit_id)
        self._results[result.audit_id] = copy.deepcopy(result)

    async def get_result(self, job_id: str) -> AuditResult | None:
        result = self._results.get(job_id)
        return copy.deepcopy(result) if result is not None else None


# ── SQLAlchemy ───────────────────────────────────────────────────────────────


class SQLAlchemyJobStore(JobStore):
    """Async SQLAlchemy store; one short session per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from auditengine.core.database import get_session_factory

            session_factory = get_session_factory()
        self._session_factory = session_factory

    async def create_job(self, job: AuditJob, request: AuditRequest) -> None:
        async with self._session_factory() as session:
            session.add(AuditJobRecord(
                job_id=job.job_id,
                project_id=job.project_id,
                status=job.status.value,
                stage=job.stage,
                progress=job.progress,
                request=request.model_dump(mode="json", by_alias=True),
                error=job.error,
                created_at=job.created_at,
                updated_at=job.updated_at,
            ))
            # Parent row must exist before the stage FKs reference it
            await session.flush()
            for stage in pending_stages(job.job_id):
                session.add(AuditStageRecord(
                    job_id=job.job_id,
                    stage=stage.stage.value,
                    position=stage.stage.position,
                    status=stage.status.value,
                ))
            await session.commit()

    async def get_job(self, job_id: str) -> AuditJob:
        async with self._session_factory() as session:
            return self._to_job(await self._job_record(session, job_id))

    async def save_job(self, job: AuditJob) -> None:
        async with self._session_factory() as session:
            record = await self._job_record(session, job.job_id)
            record.status = job.status.value
            record.stage = job.stage
            record.progress = job.progress
            record.error = job.error
            record.updated_at = job.updated_at
            await session.commit()

    async def get_request(self, job_id: str) -> AuditRequest:
        async with self._session_factory() as session:
            record = await self._job_record(session, job_id)
            return AuditRequest.model_validate(record.request)

    async def get_stage(self, job_id: str, stage: StageName) -> AuditStage:
        async with self._session_factory() as session:
            return self._to_stage(await self._stage_record(session, job_id, stage))

    async def save_stage(self, stage: AuditStage) -> None:
        async with self._session_factory() as session:
            record = await self._stage_record(session, stage.job_id, stage.stage)
            record.status = stage.status.value
            record.start_time = stage.start_time
            record.end_time = stage.end_time
            record.duration_ms = stage.duration_ms
            record.stage_metadata = stage.metadata
            await session.commit()

    async def list_stages(self, job_id: str) -> list[AuditStage]:
        async with self._session_factory() as session:
            await self._job_record(session, job_id)
            rows = await session.execute(
                select(AuditStageRecord)
                .where(AuditStageRecord.job_id == job_id)
                .order_by(AuditStageRecord.position)
            )
            return [self._to_stage(r) for r in rows.scalars().all()]

    async def find_oldest_queued(self) -> AuditJob | None:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(AuditJobRecord)
                .where(AuditJobRecord.status == JobStatus.QUEUED.value)
                .order_by(AuditJobRecord.created_at, AuditJobRecord.seq)
                .limit(1)
            )
            record = rows.scalar_one_or_none()
            return self._to_job(record) if record is not None else None

    async def find_by_status(self, *statuses: JobStatus) -> list[AuditJob]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(AuditJobRecord)
                .where(AuditJobRecord.status.in_([s.value for s in statuses]))
                .order_by(AuditJobRecord.created_at, AuditJobRecord.seq)
            )
            return [self._to_job(r) for r in rows.scalars().all()]

    async def save_result(self, result: AuditResult) -> None:
        async with self._session_factory() as session:
            await self._job_record(session, result.audit_id)
            rows = await session.execute(
                select(AuditResultRecord).where(AuditResultRecord.job_id == result.audit_id)
            )
            record = rows.scalar_one_or_none()
            if record is None:
                record = AuditResultRecord(job_id=result.audit_id)
                session.add(record)
            record.status = result.status
            record.security_score = result.summary.security_score
            record.findings_count = len(result.findings)
            record.result = result.model_dump(mode="json")
            await session.commit()

    async def get_result(self, job_id: str) -> AuditResult | None:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(AuditResultRecord).where(AuditResultRecord.job_id == job_id)
            )
            record = rows.scalar_one_or_none()
            return AuditResult.model_validate(record.result) if record is not None else None

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    async def _job_record(session: AsyncSession, job_id: str) -> AuditJobRecord:
        rows = await session.execute(select(AuditJobRecord).where(AuditJobRecord.job_id == job_id))
        record = rows.scalar_one_or_none()
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    @staticmethod
    async def _stage_record(session: AsyncSession, job_id: str, stage: StageName) -> AuditStageRecord:
        rows = await session.execute(
            select(AuditStageRecord).where(
                AuditStageRecord.job_id == job_id,
                AuditStageRecord.stage == stage.value,
            )
        )
        record = rows.scalar_one_or_none()
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    @staticmethod
    def _to_job(record: AuditJobRecord) -> AuditJob:
        return AuditJob(
            job_id=record.job_id,
            project_id=record.project_id,
            status=JobStatus(record.status),
            stage=record.stage,
            progress=record.progress,
            created_at=_aware(record.created_at),
            updated_at=_aware(record.updated_at),
            error=record.error,
        )

    @staticmethod
    def _to_stage(record: AuditStageRecord) -> AuditStage:
        return AuditStage(
            job_id=record.job_id,
            stage=StageName(record.stage),
            status=StageStatus(record.status),
            start_time=_aware(record.start_time),
            end_time=_aware(record.end_time),
            duration_ms=record.duration_ms,
            metadata=record.stage_metadata,
        )
