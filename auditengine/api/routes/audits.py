"""Audit submission, status polling and report endpoints."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from auditengine.api.errors import AuditEngineAPIError, ErrorCode
from auditengine.core.types import (
    AuditJob,
    AuditReport,
    AuditRequest,
    AuditResult,
    AuditStage,
    JobStatus,
)
from auditengine.pipeline.orchestrator import AuditOrchestrator
from auditengine.pipeline.store import JobNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────────────


class AuditAccepted(BaseModel):
    job_id: str
    status: JobStatus


class AuditStatusResponse(BaseModel):
    job_id: str
    project_id: str
    status: JobStatus
    stage: str
    progress: int
    created_at: datetime
    updated_at: datetime
    error: str | None = None
    stages: list[AuditStage]


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool
    status: JobStatus


# ── Dependencies ─────────────────────────────────────────────────────────────


def get_orchestrator(request: Request) -> AuditOrchestrator:
    return request.app.state.orchestrator


def schedule_drain(request: Request, orchestrator: AuditOrchestrator) -> None:
    """Kick the single consumer in the background; references are held until done."""
    tasks: set[asyncio.Task] = request.app.state.background_tasks
    task = asyncio.create_task(orchestrator.drain())
    tasks.add(task)
    task.add_done_callback(tasks.discard)


async def _job_or_404(orchestrator: AuditOrchestrator, job_id: str) -> AuditJob:
    try:
        return await orchestrator.get_status(job_id)
    except JobNotFoundError:
        raise AuditEngineAPIError(404, ErrorCode.NOT_FOUND, f"Audit job {job_id} not found") from None


async def _result_or_409(orchestrator: AuditOrchestrator, job_id: str) -> AuditResult:
    job = await _job_or_404(orchestrator, job_id)
    result = await orchestrator.get_result(job_id)
    if result is None:
        raise AuditEngineAPIError(
            409,
            ErrorCode.AUDIT_NOT_FINISHED,
            f"Audit {job_id} has no result yet (status: {job.status.value}, progress: {job.progress}%)",
        )
    return result


# ── Routes ───────────────────────────────────────────────────────────────────


@router.post("", response_model=AuditAccepted, status_code=202)
async def submit_audit(
    payload: AuditRequest,
    request: Request,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> AuditAccepted:
    """Queue a project for auditing; processing starts in the background."""
    job_id = await orchestrator.enqueue(payload)
    schedule_drain(request, orchestrator)
    return AuditAccepted(job_id=job_id, status=JobStatus.QUEUED)


@router.get("/{job_id}", response_model=AuditStatusResponse)
async def get_audit(
    job_id: str,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> AuditStatusResponse:
    """Status, current stage, progress and per-stage records."""
    job = await _job_or_404(orchestrator, job_id)
    stages = await orchestrator.get_stages(job_id)
    return AuditStatusResponse(**job.model_dump(), stages=stages)


@router.get("/{job_id}/report", response_model=AuditReport)
async def get_audit_report(
    job_id: str,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> AuditReport:
    """Final report in the downstream rendering format."""
    result = await _result_or_409(orchestrator, job_id)
    return result.report


@router.get("/{job_id}/result", response_model=AuditResult)
async def get_audit_result(
    job_id: str,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> AuditResult:
    return await _result_or_409(orchestrator, job_id)


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_audit(
    job_id: str,
    orchestrator: AuditOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    job = await _job_or_404(orchestrator, job_id)
    cancelled = await orchestrator.cancel(job_id)
    if not cancelled:
        raise AuditEngineAPIError(
            409, ErrorCode.CONFLICT, f"Audit {job_id} already finished with status {job.status.value}",
        )
    job = await orchestrator.get_status(job_id)
    return CancelResponse(job_id=job_id, cancelled=True, status=job.status)
