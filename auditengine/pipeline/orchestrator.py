"""Audit orchestrator: drives one job at a time through the fixed stage sequence."""

from __future__ import annotations

import asyncio
import inspect
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from auditengine.analyzer.base import AnalyzerPlugin, run_isolated
from auditengine.analyzer.external.tools import ExternalToolsAnalyzer
from auditengine.analyzer.llm_analyzer import LLMAnalyzer
from auditengine.analyzer.parser.extractor import SymbolExtractor
from auditengine.analyzer.semantic import SemanticAnalyzer
from auditengine.analyzer.static.analyzer import StaticAnalyzer
from auditengine.analyzer.static.registry import RuleRegistry
from auditengine.core.config import Settings, get_settings
from auditengine.core.types import (
    STAGE_ORDER,
    AnalyzerKind,
    AuditJob,
    AuditMetadata,
    AuditRequest,
    AuditResult,
    AuditStage,
    Finding,
    JobStatus,
    ParsedData,
    StageName,
    StageStatus,
    utcnow,
)
from auditengine.ingestion.preprocessor import Preprocessor
from auditengine.pipeline.aggregator import ResultAggregator
from auditengine.pipeline.store import JobStore

logger = logging.getLogger(__name__)

ANALYZER_STAGES: dict[StageName, AnalyzerKind] = {
    StageName.STATIC_ANALYSIS: AnalyzerKind.STATIC,
    StageName.SEMANTIC_ANALYSIS: AnalyzerKind.SEMANTIC,
    StageName.AI_ANALYSIS: AnalyzerKind.AI,
    StageName.EXTERNAL_TOOLS: AnalyzerKind.EXTERNAL,
}
FAN_OUT_STAGES = (
    StageName.SEMANTIC_ANALYSIS,
    StageName.AI_ANALYSIS,
    StageName.EXTERNAL_TOOLS,
)
_TERMINAL_STAGE = frozenset({StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED})
_IN_PROGRESS = tuple(s for s in JobStatus if not s.is_terminal and s is not JobStatus.QUEUED)


# ── Events ───────────────────────────────────────────────────────────────────


JOB_ENQUEUED = "job.enqueued"
JOB_UPDATED = "job.updated"
STAGE_UPDATED = "stage.updated"
JOB_COMPLETED = "job.completed"
JOB_FAILED = "job.failed"
JOB_CANCELLED = "job.cancelled"


@dataclass(frozen=True)
class StageEvent:
    """Progress notification delivered to subscribers."""
    type: str
    job_id: str
    job: AuditJob | None = None
    stage: AuditStage | None = None
    result: AuditResult | None = None


Observer = Callable[[StageEvent], "Awaitable[Any] | Any"]


def new_job_id() -> str:
    return f"audit_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def default_analyzers(settings: Settings) -> dict[AnalyzerKind, AnalyzerPlugin]:
    """The four standard analyzers, with the rule registry file applied if configured."""
    registry = (
        RuleRegistry.from_yaml(settings.rules_config_path)
        if settings.rules_config_path
        else RuleRegistry.default()
    )
    return {
        AnalyzerKind.STATIC: StaticAnalyzer(registry),
        AnalyzerKind.SEMANTIC: SemanticAnalyzer(),
        AnalyzerKind.AI: LLMAnalyzer(settings),
        AnalyzerKind.EXTERNAL: ExternalToolsAnalyzer(settings),
    }


@dataclass
class _JobRun:
    """Mutable state of the job currently being executed."""
    job: AuditJob
    request: AuditRequest
    stages: dict[StageName, AuditStage]
    started: float = field(default_factory=time.monotonic)
    parsed: ParsedData | None = None
    findings: dict[StageName, list[Finding]] = field(default_factory=dict)
    tools: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def job_id(self) -> str:
        return self.job.job_id

    def collected(self) -> list[Finding]:
        return [f for stage in STAGE_ORDER for f in self.findings.get(stage, [])]


class AuditOrchestrator:
    """Coordinates the audit pipeline for jobs held in a JobStore.

    Flow per job:
    1. PREPROCESSING: sanitize and classify the submitted files (fatal on error)
    2. PARSING: extract symbols into an immutable ParsedData (fatal on error)
    3. STATIC_ANALYSIS: rule-based analyzer, always executed
    4. SEMANTIC / AI / EXTERNAL: fan out concurrently, each fault-isolated
    5. AGGREGATION: merge, score and persist the AuditResult

    Exactly one job executes at a time per instance; further jobs wait in the
    store as `queued` and are picked up oldest-first by `drain()`.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        settings: Settings | None = None,
        preprocessor: Preprocessor | None = None,
        extractor: SymbolExtractor | None = None,
        analyzers: dict[AnalyzerKind, AnalyzerPlugin] | None = None,
        aggregator: ResultAggregator | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.preprocessor = preprocessor or Preprocessor()
        self.extractor = extractor or SymbolExtractor()
        self.analyzers = analyzers if analyzers is not None else default_analyzers(self.settings)
        self.aggregator = aggregator or ResultAggregator(self.settings)

        self._observers: list[Observer] = []
        self._lock = asyncio.Lock()
        self._rerun = False
        self._active: dict[str, asyncio.Task] = {}
        self._cancel_requested: dict[str, asyncio.Event] = {}

    # ── Public API ───────────────────────────────────────────────────────

    async def enqueue(self, request: AuditRequest) -> str:
        job = AuditJob(job_id=new_job_id(), project_id=request.project_id)
        await self.store.create_job(job, request)
        logger.info(
            "Enqueued audit for project %s (%d files)", request.project_id, len(request.files),
            extra={"job_id": job.job_id},
        )
        await self._emit(JOB_ENQUEUED, job.job_id, job=job)
        return job.job_id

    async def get_status(self, job_id: str) -> AuditJob:
        return await self.store.get_job(job_id)

    async def get_stages(self, job_id: str) -> list[AuditStage]:
        return await self.store.list_stages(job_id)

    async def get_result(self, job_id: str) -> AuditResult | None:
        return await self.store.get_result(job_id)

    def subscribe(self, callback: Observer) -> Callable[[], None]:
        """Register an observer; returns a callable that removes it again."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def run(self, job_id: str) -> AuditResult | None:
        """Execute one queued job, waiting for any job already in progress."""
        async with self._lock:
            return await self._run(job_id)

    async def process_next(self) -> str | None:
        """Run the oldest queued job if the orchestrator is idle.

        Returns the processed job id, or None when busy or nothing is queued.
        """
        if self._lock.locked():
            self._rerun = True
            return None
        async with self._lock:
            job = await self.store.find_oldest_queued()
            if job is None:
                return None
            await self._run(job.job_id)
            return job.job_id

    async def drain(self) -> list[str]:
        """Process queued jobs oldest-first until none remain.

        A call made while another drain is active only flags that consumer
        to look again before it stops.
        """
        if self._lock.locked():
            self._rerun = True
            return []
        processed: list[str] = []
        async with self._lock:
            while True:
                self._rerun = False
                job = await self.store.find_oldest_queued()
                if job is None:
                    if self._rerun:
                        continue
                    break
                await self._run(job.job_id)
                processed.append(job.job_id)
        return processed

    async def cancel(self, job_id: str) -> bool:
        """Cancel a queued or running job. Returns False if it already finished."""
        # Claimed before any await so a consumer picking the job up meanwhile sees it
        pending = self._cancel_requested.setdefault(job_id, asyncio.Event())
        try:
            if self._cancel_active(job_id):
                return True

            job = await self.store.get_job(job_id)
            if job.status.is_terminal:
                return False
            stages = {s.stage: s for s in await self.store.list_stages(job_id)}
            run = _JobRun(job=job, request=await self.store.get_request(job_id), stages=stages)
            if self._cancel_active(job_id):
                return True
            await self._abort_stages(run, "cancelled", STAGE_ORDER)
            await self._update_job(run, status=JobStatus.CANCELLED)
            logger.info("Cancelled job before execution", extra={"job_id": job_id})
            await self._emit(JOB_CANCELLED, job_id, job=run.job)
            return True
        finally:
            if job_id not in self._active:
                self._cancel_requested.pop(job_id, None)
            pending.set()

    def _cancel_active(self, job_id: str) -> bool:
        task = self._active.get(job_id)
        if task is None or task.done():
            return False
        logger.info("Cancelling running job", extra={"job_id": job_id})
        task.cancel()
        return True

    async def recover(self) -> list[str]:
        """Requeue jobs left mid-pipeline by a crash, resetting their stage records."""
        requeued = []
        for job in await self.store.find_by_status(*_IN_PROGRESS):
            if job.job_id in self._active:
                continue
            for stage in await self.store.list_stages(job.job_id):
                if stage.status is not StageStatus.PENDING:
                    await self.store.save_stage(AuditStage(job_id=job.job_id, stage=stage.stage))
            job = job.model_copy(update={
                "status": JobStatus.QUEUED,
                "stage": "intake",
                "progress": 0,
                "updated_at": utcnow(),
            })
            await self.store.save_job(job)
            await self._emit(JOB_UPDATED, job.job_id, job=job)
            logger.warning("Requeued interrupted job", extra={"job_id": job.job_id})
            requeued.append(job.job_id)
        return requeued

    # ── Execution ────────────────────────────────────────────────────────

    async def _run(self, job_id: str) -> AuditResult | None:
        task = asyncio.create_task(self._execute(job_id), name=f"audit:{job_id}")
        self._active[job_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            outer_cancelled = current is not None and current.cancelling() > 0
            if task.cancelled() and job_id in self._cancel_requested and not outer_cancelled:
                # Cancelled before its first step ran
                return await self._finish_cancelled(job_id, None)
            task.cancel()
            raise
        finally:
            self._active.pop(job_id, None)
            self._cancel_requested.pop(job_id, None)

    async def _execute(self, job_id: str) -> AuditResult | None:
        run: _JobRun | None = None
        try:
            job = await self.store.get_job(job_id)
            if job.status is not JobStatus.QUEUED:
                logger.warning("Job is %s, not queued; skipping", job.status.value, extra={"job_id": job_id})
                return await self.store.get_result(job_id)
            pending = self._cancel_requested.get(job_id)
            if pending is not None:
                # cancel() records the terminal status; wait so drain() does not pick the job again
                logger.info("Cancel pending; not starting", extra={"job_id": job_id})
                await pending.wait()
                return None
            stages = {s.stage: s for s in await self.store.list_stages(job_id)}
            run = _JobRun(job=job, request=await self.store.get_request(job_id), stages=stages)
            logger.info("Starting audit", extra={"job_id": job_id})
            return await self._pipeline(run)
        except asyncio.CancelledError:
            if job_id not in self._cancel_requested:
                raise
            return await self._finish_cancelled(job_id, run)

    async def _pipeline(self, run: _JobRun) -> AuditResult:
        # Fatal stages: no usable ParsedData without them
        await self._set_stage(run, StageName.PREPROCESSING, StageStatus.RUNNING)
        try:
            preprocessed = self.preprocessor.process(run.request)
        except Exception as e:
            return await self._fail(run, StageName.PREPROCESSING, e)
        await self._set_stage(run, StageName.PREPROCESSING, StageStatus.COMPLETED, {
            "files": preprocessed.metadata.file_count,
            "total_size": preprocessed.metadata.total_size,
            "complexity": preprocessed.metadata.complexity,
        })

        await self._set_stage(run, StageName.PARSING, StageStatus.RUNNING)
        try:
            run.parsed = self.extractor.parse(preprocessed)
        except Exception as e:
            return await self._fail(run, StageName.PARSING, e)
        await self._set_stage(run, StageName.PARSING, StageStatus.COMPLETED, {
            "files": len(run.parsed.ast),
            "functions": len(run.parsed.functions),
            "complexity": run.parsed.complexity,
        })

        remaining = self._remaining(run)
        try:
            if remaining is None:
                await self._analysis(run)
            else:
                await asyncio.wait_for(self._analysis(run), timeout=remaining)
        except asyncio.TimeoutError:
            run.timed_out = True
            logger.warning(
                "Job timed out after %.0fs, aggregating collected findings",
                self.settings.job_timeout_seconds, extra={"job_id": run.job_id},
            )
            await self._abort_stages(run, "timeout", tuple(ANALYZER_STAGES))

        await self._set_stage(run, StageName.AGGREGATION, StageStatus.RUNNING)
        try:
            result = self._aggregate(run, "completed")
        except Exception as e:
            return await self._fail(run, StageName.AGGREGATION, e)
        await self.store.save_result(result)
        await self._set_stage(run, StageName.AGGREGATION, StageStatus.COMPLETED, {
            "findings": result.summary.total_issues,
            "security_score": result.summary.security_score,
        })
        await self._update_job(run, status=JobStatus.COMPLETED, progress=100)
        logger.info(
            "Audit completed: %d findings, score %.0f",
            result.summary.total_issues, result.summary.security_score,
            extra={"job_id": run.job_id, "findings": result.summary.total_issues},
        )
        await self._emit(JOB_COMPLETED, run.job_id, job=run.job, result=result)
        return result

    async def _analysis(self, run: _JobRun) -> None:
        await self._analyzer_stage(run, StageName.STATIC_ANALYSIS, None)
        prior = list(run.findings.get(StageName.STATIC_ANALYSIS, []))
        await asyncio.gather(*(self._analyzer_stage(run, stage, prior) for stage in FAN_OUT_STAGES))

    async def _analyzer_stage(
        self,
        run: _JobRun,
        stage: StageName,
        prior: list[Finding] | None,
    ) -> None:
        kind = ANALYZER_STAGES[stage]
        plugin = self.analyzers.get(kind)
        if not run.request.configuration.is_enabled(kind):
            await self._set_stage(run, stage, StageStatus.SKIPPED, {"reason": "disabled by configuration"})
            return
        if plugin is None:
            await self._set_stage(run, stage, StageStatus.SKIPPED, {"reason": "no analyzer registered"})
            return

        await self._set_stage(run, stage, StageStatus.RUNNING)
        outcome = await run_isolated(plugin, run.parsed, prior, job_id=run.job_id)
        run.findings[stage] = outcome.findings
        run.tools.append(plugin.NAME)
        metadata: dict[str, Any] = {"analyzer": plugin.NAME, "findings": len(outcome.findings)}
        if outcome.error:
            metadata["error"] = outcome.error
        logger.info(
            "%s finished with %d findings", plugin.NAME, len(outcome.findings),
            extra={"job_id": run.job_id, "stage": stage.value, "analyzer": plugin.NAME,
                   "duration_ms": outcome.duration_ms, "findings": len(outcome.findings)},
        )
        await self._set_stage(run, stage, StageStatus.COMPLETED, metadata)

    def _aggregate(self, run: _JobRun, status: str) -> AuditResult:
        parsed = run.parsed
        metadata = AuditMetadata(
            analysis_time_ms=round((time.monotonic() - run.started) * 1000, 2),
            lines_of_code=sum(parsed.line_count(f) for f in parsed.ast) if parsed else 0,
            complexity=parsed.complexity if parsed else 0,
            language=run.request.resolved_language.display_name,
            tools=list(run.tools),
            stages_skipped=[
                s.stage.value for s in run.stages.values() if s.status is StageStatus.SKIPPED
            ],
            timed_out=run.timed_out,
        )
        return self.aggregator.aggregate(
            run.collected(),
            parsed,
            metadata,
            audit_id=run.job_id,
            project_id=run.request.project_id,
            project_name=run.request.project_name,
            declared_language=run.request.language,
            configuration=run.request.configuration,
            status=status,
        )

    def _remaining(self, run: _JobRun) -> float | None:
        limit = self.settings.job_timeout_seconds
        if not limit:
            return None
        return max(0.0, limit - (time.monotonic() - run.started))

    # ── Terminal paths ───────────────────────────────────────────────────

    async def _fail(self, run: _JobRun, stage: StageName, exc: Exception) -> AuditResult:
        reason = str(exc) or type(exc).__name__
        logger.error(
            "Audit failed at %s: %s", stage.value, reason,
            extra={"job_id": run.job_id, "stage": stage.value},
        )
        await self._set_stage(run, stage, StageStatus.FAILED, {"error": reason})
        await self._abort_stages(run, "job failed", STAGE_ORDER)
        result = self.aggregator.failed(
            reason,
            AuditMetadata(
                analysis_time_ms=round((time.monotonic() - run.started) * 1000, 2),
                language=run.request.resolved_language.display_name,
                tools=list(run.tools),
            ),
            audit_id=run.job_id,
            project_id=run.request.project_id,
            project_name=run.request.project_name,
            declared_language=run.request.language,
        )
        await self.store.save_result(result)
        await self._update_job(run, status=JobStatus.FAILED, error=reason)
        await self._emit(JOB_FAILED, run.job_id, job=run.job, result=result)
        return result

    async def _finish_cancelled(self, job_id: str, run: _JobRun | None) -> AuditResult | None:
        if run is None:
            job = await self.store.get_job(job_id)
            stages = {s.stage: s for s in await self.store.list_stages(job_id)}
            run = _JobRun(job=job, request=await self.store.get_request(job_id), stages=stages)
        await self._abort_stages(run, "cancelled", STAGE_ORDER)
        result = None
        if run.parsed is not None:
            result = self._aggregate(run, "cancelled")
            await self.store.save_result(result)
        await self._update_job(run, status=JobStatus.CANCELLED)
        logger.info("Audit cancelled", extra={"job_id": job_id})
        await self._emit(JOB_CANCELLED, job_id, job=run.job, result=result)
        return result

    async def _abort_stages(self, run: _JobRun, reason: str, stages: tuple[StageName, ...]) -> None:
        """Running stages become failed, pending ones skipped."""
        for name in stages:
            status = run.stages[name].status
            if status is StageStatus.RUNNING:
                await self._set_stage(run, name, StageStatus.FAILED, {"reason": reason})
            elif status is StageStatus.PENDING:
                await self._set_stage(run, name, StageStatus.SKIPPED, {"reason": reason})

    # ── Persistence & notifications ──────────────────────────────────────

    async def _set_stage(
        self,
        run: _JobRun,
        name: StageName,
        status: StageStatus,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        now = utcnow()
        current = run.stages[name]
        updates: dict[str, Any] = {"status": status}
        if status is StageStatus.RUNNING:
            updates.update(start_time=now, end_time=None, duration_ms=None)
        else:
            updates["end_time"] = now
            if current.start_time is not None:
                updates["duration_ms"] = round((now - current.start_time).total_seconds() * 1000, 2)
        if metadata is not None:
            updates["metadata"] = metadata
        stage = current.model_copy(update=updates)
        run.stages[name] = stage

        await self.store.save_stage(stage)
        logger.debug(
            "Stage %s", status.value, extra={"job_id": run.job_id, "stage": name.value},
        )
        await self._emit(STAGE_UPDATED, run.job_id, stage=stage)
        if status is StageStatus.RUNNING:
            await self._update_job(run, status=JobStatus(name.value), stage=name.value)
        else:
            await self._update_job(run, progress=self._progress(run))

    @staticmethod
    def _progress(run: _JobRun) -> int:
        done = sum(1 for s in run.stages.values() if s.status in _TERMINAL_STAGE)
        return round(done / len(STAGE_ORDER) * 100)

    async def _update_job(self, run: _JobRun, **changes: Any) -> None:
        run.job = run.job.model_copy(update={**changes, "updated_at": utcnow()})
        await self.store.save_job(run.job)
        await self._emit(JOB_UPDATED, run.job_id, job=run.job)

    async def _emit(self, type: str, job_id: str, **payload: Any) -> None:
        event = StageEvent(type=type, job_id=job_id, **payload)
        for observer in list(self._observers):
            try:
                outcome = observer(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Observer failed on %s", type, extra={"job_id": job_id})
