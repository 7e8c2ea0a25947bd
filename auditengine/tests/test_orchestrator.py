"""Tests for the audit orchestrator's stage machine, queueing and cancellation."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from auditengine.analyzer.base import AnalyzerPlugin
from auditengine.analyzer.llm_analyzer import LLMAnalyzer
from auditengine.analyzer.semantic import SemanticAnalyzer
from auditengine.analyzer.static.analyzer import StaticAnalyzer
from auditengine.analyzer.static.base_rule import BaseRule
from auditengine.analyzer.static.registry import RuleRegistry
from auditengine.analyzer.static.rules.arithmetic import IntegerOverflowRule
from auditengine.core.database import build_engine, init_models
from auditengine.core.types import (
    STAGE_ORDER,
    AnalyzerKind,
    AuditJob,
    JobStatus,
    Severity,
    StageName,
    StageStatus,
)
from auditengine.pipeline.orchestrator import (
    JOB_COMPLETED,
    JOB_ENQUEUED,
    JOB_UPDATED,
    STAGE_UPDATED,
    AuditOrchestrator,
)
from auditengine.pipeline.store import SQLAlchemyJobStore

from conftest import OVERFLOW_SOURCE, build_request, make_finding


class StubAnalyzer(AnalyzerPlugin):
    """Returns canned findings, optionally after a delay or by raising."""

    def __init__(self, kind, findings=(), delay=0.0, error=None, started=None):
        self.KIND = kind
        self.NAME = f"stub-{kind.value}"
        self.findings = list(findings)
        self.delay = delay
        self.error = error
        self.started = started
        self.prior = "unset"
        self.calls = 0

    async def analyze(self, parsed, prior_findings=None):
        self.calls += 1
        self.prior = prior_findings
        if self.started is not None:
            self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.findings)


def _stubs(overrides: dict | None = None) -> dict[AnalyzerKind, StubAnalyzer]:
    analyzers = {
        AnalyzerKind.STATIC: StubAnalyzer(AnalyzerKind.STATIC, [make_finding("static-1", Severity.HIGH)]),
        AnalyzerKind.SEMANTIC: StubAnalyzer(AnalyzerKind.SEMANTIC, [make_finding("semantic-1")]),
        AnalyzerKind.AI: StubAnalyzer(AnalyzerKind.AI, [make_finding("ai-1", Severity.LOW)]),
        AnalyzerKind.EXTERNAL: StubAnalyzer(AnalyzerKind.EXTERNAL, [make_finding("ext-1", Severity.LOW)]),
    }
    analyzers.update(overrides or {})
    return {k: v for k, v in analyzers.items() if v is not None}


def _request(**configuration):
    return build_request({"src/lib.rs": OVERFLOW_SOURCE, "Cargo.toml": "[package]\nname = \"x\"\n"},
                         **configuration)


@pytest.fixture
def orchestrator(store, settings) -> AuditOrchestrator:
    return AuditOrchestrator(store, settings=settings, analyzers=_stubs())


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}")
    await init_models(engine)
    yield SQLAlchemyJobStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


class ExplodingRule(BaseRule):
    RULE_ID = "exploding"

    def check(self, parsed):
        raise RuntimeError("rule bug")


def _stage_map(stages):
    return {s.stage: s for s in stages}


class TestPipeline:
    @pytest.mark.asyncio
    async def test_runs_all_stages_in_order(self, orchestrator):
        job_statuses: list[JobStatus] = []
        orchestrator.subscribe(lambda e: e.type == JOB_UPDATED and job_statuses.append(e.job.status))

        job_id = await orchestrator.enqueue(_request())
        result = await orchestrator.run(job_id)

        assert result.status == "completed"
        assert {f.id for f in result.findings} == {"static-1", "semantic-1", "ai-1", "ext-1"}
        assert result.findings[0].id == "static-1"

        job = await orchestrator.get_status(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.progress == 100
        stages = await orchestrator.get_stages(job_id)
        assert [s.stage for s in stages] == list(STAGE_ORDER)
        assert all(s.status is StageStatus.COMPLETED for s in stages)
        assert all(s.duration_ms is not None and s.duration_ms >= 0 for s in stages)

        distinct = list(dict.fromkeys(job_statuses))
        assert distinct[:3] == [JobStatus.PREPROCESSING, JobStatus.PARSING, JobStatus.STATIC_ANALYSIS]
        assert distinct[-2:] == [JobStatus.AGGREGATION, JobStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_stage_metadata(self, orchestrator):
        job_id = await orchestrator.enqueue(_request())
        await orchestrator.run(job_id)
        stages = _stage_map(await orchestrator.get_stages(job_id))
        assert stages[StageName.PREPROCESSING].metadata["files"] == 2
        assert stages[StageName.PARSING].metadata["functions"] == 1
        assert stages[StageName.STATIC_ANALYSIS].metadata == {"analyzer": "stub-static", "findings": 1}
        assert stages[StageName.AGGREGATION].metadata["findings"] == 4

    @pytest.mark.asyncio
    async def test_static_findings_passed_to_fan_out(self, store, settings):
        analyzers = _stubs()
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        await orchestrator.run(await orchestrator.enqueue(_request()))

        assert analyzers[AnalyzerKind.STATIC].prior is None
        for kind in (AnalyzerKind.SEMANTIC, AnalyzerKind.AI, AnalyzerKind.EXTERNAL):
            assert [f.id for f in analyzers[kind].prior] == ["static-1"]

    @pytest.mark.asyncio
    async def test_fan_out_runs_concurrently(self, store, settings):
        arrived = 0
        all_arrived = asyncio.Event()

        class Rendezvous(StubAnalyzer):
            async def analyze(self, parsed, prior_findings=None):
                nonlocal arrived
                arrived += 1
                if arrived == 3:
                    all_arrived.set()
                # Serial execution would never let all three arrive
                await asyncio.wait_for(all_arrived.wait(), timeout=2)
                return [make_finding(f"{self.KIND.value}-done")]

        analyzers = _stubs({
            kind: Rendezvous(kind)
            for kind in (AnalyzerKind.SEMANTIC, AnalyzerKind.AI, AnalyzerKind.EXTERNAL)
        })
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        result = await orchestrator.run(await orchestrator.enqueue(_request()))
        assert {f.id for f in result.findings} == {
            "static-1", "semantic-done", "ai-done", "external-done",
        }

    @pytest.mark.asyncio
    async def test_disabled_stage_skipped(self, orchestrator):
        job_id = await orchestrator.enqueue(_request(ai_analysis_enabled=False))
        result = await orchestrator.run(job_id)

        stages = _stage_map(await orchestrator.get_stages(job_id))
        assert stages[StageName.AI_ANALYSIS].status is StageStatus.SKIPPED
        assert stages[StageName.AI_ANALYSIS].metadata == {"reason": "disabled by configuration"}
        assert "ai-1" not in {f.id for f in result.findings}
        assert result.metadata.stages_skipped == ["ai_analysis"]
        assert (await orchestrator.get_status(job_id)).progress == 100

    @pytest.mark.asyncio
    async def test_enabled_analyzers_list(self, orchestrator):
        job_id = await orchestrator.enqueue(_request(enabled_analyzers=[AnalyzerKind.SEMANTIC]))
        result = await orchestrator.run(job_id)
        assert {f.id for f in result.findings} == {"static-1", "semantic-1"}

    @pytest.mark.asyncio
    async def test_missing_analyzer_skipped(self, store, settings):
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=_stubs({AnalyzerKind.EXTERNAL: None}))
        job_id = await orchestrator.enqueue(_request())
        await orchestrator.run(job_id)
        stage = _stage_map(await orchestrator.get_stages(job_id))[StageName.EXTERNAL_TOOLS]
        assert stage.status is StageStatus.SKIPPED
        assert stage.metadata == {"reason": "no analyzer registered"}

    @pytest.mark.asyncio
    async def test_analyzer_failure_isolated(self, store, settings):
        analyzers = _stubs({
            AnalyzerKind.SEMANTIC: StubAnalyzer(AnalyzerKind.SEMANTIC, error=RuntimeError("boom")),
        })
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        job_id = await orchestrator.enqueue(_request())
        result = await orchestrator.run(job_id)

        assert result.status == "completed"
        assert {f.id for f in result.findings} == {"static-1", "ai-1", "ext-1"}
        stage = _stage_map(await orchestrator.get_stages(job_id))[StageName.SEMANTIC_ANALYSIS]
        assert stage.status is StageStatus.COMPLETED
        assert stage.metadata["error"] == "RuntimeError: boom"

    @pytest.mark.asyncio
    async def test_preprocessing_failure_is_fatal(self, orchestrator):
        request = build_request({"README.md": "# vault"})
        job_id = await orchestrator.enqueue(request)
        result = await orchestrator.run(job_id)

        assert result.status == "failed"
        assert "No Rust source files" in result.summary.recommendation
        job = await orchestrator.get_status(job_id)
        assert job.status is JobStatus.FAILED
        assert "No Rust source files" in job.error
        stages = _stage_map(await orchestrator.get_stages(job_id))
        assert stages[StageName.PREPROCESSING].status is StageStatus.FAILED
        assert stages[StageName.STATIC_ANALYSIS].status is StageStatus.SKIPPED
        assert stages[StageName.AGGREGATION].metadata == {"reason": "job failed"}
        assert (await orchestrator.get_result(job_id)).status == "failed"

    @pytest.mark.asyncio
    async def test_job_timeout_keeps_collected_findings(self, store, settings):
        analyzers = _stubs({AnalyzerKind.AI: StubAnalyzer(AnalyzerKind.AI, [make_finding("ai-1")], delay=10)})
        bounded = settings.model_copy(update={"job_timeout_seconds": 0.5})
        orchestrator = AuditOrchestrator(store, settings=bounded, analyzers=analyzers)
        job_id = await orchestrator.enqueue(_request())

        result = await orchestrator.run(job_id)

        assert result.status == "completed"
        assert result.metadata.timed_out
        assert {f.id for f in result.findings} == {"static-1", "semantic-1", "ext-1"}
        stages = _stage_map(await orchestrator.get_stages(job_id))
        assert stages[StageName.AI_ANALYSIS].status is StageStatus.FAILED
        assert stages[StageName.AI_ANALYSIS].metadata == {"reason": "timeout"}
        assert stages[StageName.AGGREGATION].status is StageStatus.COMPLETED
        assert (await orchestrator.get_status(job_id)).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_on_finished_job_returns_stored_result(self, orchestrator):
        job_id = await orchestrator.enqueue(_request())
        first = await orchestrator.run(job_id)
        again = await orchestrator.run(job_id)
        assert again.audit_id == first.audit_id
        assert again.summary == first.summary

    @pytest.mark.asyncio
    async def test_real_analyzers_end_to_end(self, store, settings):
        analyzers = {
            AnalyzerKind.STATIC: StaticAnalyzer(),
            AnalyzerKind.SEMANTIC: SemanticAnalyzer(),
            AnalyzerKind.AI: LLMAnalyzer(settings),
        }
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        result = await orchestrator.run(await orchestrator.enqueue(_request()))

        overflow = [f for f in result.findings if f.metadata.get("rule_id") == "integer-overflow"]
        assert len(overflow) == 1
        assert overflow[0].location.line == 2
        assert result.summary.security_score == 85.0
        assert result.metadata.tools[0] == "static-analyzer"
        assert set(result.metadata.tools) == {"static-analyzer", "semantic-analyzer", "ai-analyzer"}
        assert result.report.report_metadata.platform == "Solana"


class TestJobLevelIsolation:
    @pytest.mark.asyncio
    async def test_raising_rule_leaves_job_completed(self, store, settings):
        registry = RuleRegistry([ExplodingRule(), IntegerOverflowRule()])
        analyzers = {
            AnalyzerKind.STATIC: StaticAnalyzer(registry),
            AnalyzerKind.SEMANTIC: SemanticAnalyzer(),
        }
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        job_id = await orchestrator.enqueue(_request())
        assert await orchestrator.drain() == [job_id]

        assert (await orchestrator.get_status(job_id)).status is JobStatus.COMPLETED
        result = await orchestrator.get_result(job_id)
        assert result.status == "completed"
        assert [f.metadata.get("rule_id") for f in result.findings] == ["integer-overflow"]
        assert result.report.summary.high == 1
        assert result.report.findings[0]["category"] == "Arithmetic Safety"
        static = _stage_map(await orchestrator.get_stages(job_id))[StageName.STATIC_ANALYSIS]
        assert static.status is StageStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_raising_ai_stage_leaves_job_completed(self, store, settings):
        analyzers = {
            AnalyzerKind.STATIC: StaticAnalyzer(),
            AnalyzerKind.SEMANTIC: SemanticAnalyzer(),
            AnalyzerKind.AI: StubAnalyzer(AnalyzerKind.AI, error=RuntimeError("provider down")),
        }
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        job_id = await orchestrator.enqueue(_request())
        assert await orchestrator.drain() == [job_id]

        assert (await orchestrator.get_status(job_id)).status is JobStatus.COMPLETED
        result = await orchestrator.get_result(job_id)
        assert result.report.summary.high == 1
        assert result.findings[0].metadata["rule_id"] == "integer-overflow"
        ai = _stage_map(await orchestrator.get_stages(job_id))[StageName.AI_ANALYSIS]
        assert ai.status is StageStatus.COMPLETED
        assert ai.metadata["error"] == "RuntimeError: provider down"
        assert ai.metadata["findings"] == 0


class TestQueue:
    @pytest.mark.asyncio
    async def test_drain_oldest_first(self, orchestrator):
        ids = [await orchestrator.enqueue(_request()) for _ in range(3)]
        assert await orchestrator.drain() == ids
        for job_id in ids:
            assert (await orchestrator.get_status(job_id)).status is JobStatus.COMPLETED
        assert await orchestrator.drain() == []

    @pytest.mark.asyncio
    async def test_process_next(self, orchestrator):
        assert await orchestrator.process_next() is None
        job_id = await orchestrator.enqueue(_request())
        assert await orchestrator.process_next() == job_id

    @pytest.mark.asyncio
    async def test_one_job_at_a_time(self, store, settings):
        started = asyncio.Event()
        analyzers = _stubs({AnalyzerKind.AI: StubAnalyzer(AnalyzerKind.AI, delay=0.3, started=started)})
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        first = await orchestrator.enqueue(_request())
        second = await orchestrator.enqueue(_request())

        drain = asyncio.create_task(orchestrator.drain())
        await started.wait()
        assert orchestrator.busy
        assert (await orchestrator.get_status(second)).status is JobStatus.QUEUED
        # A concurrent consumer defers to the active one
        assert await orchestrator.drain() == []
        assert await orchestrator.process_next() is None

        assert await drain == [first, second]
        assert not orchestrator.busy

    @pytest.mark.asyncio
    async def test_job_enqueued_mid_drain_is_picked_up(self, store, settings):
        started = asyncio.Event()
        analyzers = _stubs({AnalyzerKind.AI: StubAnalyzer(AnalyzerKind.AI, delay=0.2, started=started)})
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        first = await orchestrator.enqueue(_request())

        drain = asyncio.create_task(orchestrator.drain())
        await started.wait()
        late = await orchestrator.enqueue(_request())
        assert await drain == [first, late]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_queued(self, orchestrator):
        job_id = await orchestrator.enqueue(_request())
        assert await orchestrator.cancel(job_id)

        job = await orchestrator.get_status(job_id)
        assert job.status is JobStatus.CANCELLED
        stages = await orchestrator.get_stages(job_id)
        assert all(s.status is StageStatus.SKIPPED for s in stages)
        assert stages[0].metadata == {"reason": "cancelled"}
        assert await orchestrator.drain() == []
        assert await orchestrator.get_result(job_id) is None

    @pytest.mark.asyncio
    async def test_cancel_running(self, store, settings):
        started = asyncio.Event()
        analyzers = _stubs({AnalyzerKind.AI: StubAnalyzer(AnalyzerKind.AI, delay=10, started=started)})
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=analyzers)
        job_id = await orchestrator.enqueue(_request())

        task = asyncio.create_task(orchestrator.run(job_id))
        await started.wait()
        assert await orchestrator.cancel(job_id)
        result = await asyncio.wait_for(task, timeout=5)

        assert result.status == "cancelled"
        assert "static-1" in {f.id for f in result.findings}
        assert (await orchestrator.get_status(job_id)).status is JobStatus.CANCELLED
        stages = _stage_map(await orchestrator.get_stages(job_id))
        assert stages[StageName.AI_ANALYSIS].status is StageStatus.FAILED
        assert stages[StageName.AI_ANALYSIS].metadata == {"reason": "cancelled"}
        assert stages[StageName.AGGREGATION].status is StageStatus.SKIPPED
        assert not orchestrator.busy

    @pytest.mark.asyncio
    @pytest.mark.parametrize("yields", range(12))
    async def test_cancel_queued_while_consumer_starts(self, sql_store, settings, yields):
        orchestrator = AuditOrchestrator(sql_store, settings=settings, analyzers=_stubs())
        job_id = await orchestrator.enqueue(_request())

        drain = asyncio.create_task(orchestrator.drain())
        for _ in range(yields):
            await asyncio.sleep(0)
        cancelled = await orchestrator.cancel(job_id)
        await asyncio.wait_for(drain, timeout=5)

        job = await orchestrator.get_status(job_id)
        stages = await orchestrator.get_stages(job_id)
        assert all(s.status is not StageStatus.RUNNING for s in stages)
        if cancelled:
            assert job.status is JobStatus.CANCELLED
        else:
            assert job.status is JobStatus.COMPLETED
        assert not orchestrator.busy

    @pytest.mark.asyncio
    async def test_cancel_before_consumer_task_starts(self, store, settings):
        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=_stubs())
        job_id = await orchestrator.enqueue(_request())

        run = asyncio.create_task(orchestrator.run(job_id))
        await asyncio.sleep(0)
        assert await orchestrator.cancel(job_id)
        assert await asyncio.wait_for(run, timeout=5) is None

        assert (await orchestrator.get_status(job_id)).status is JobStatus.CANCELLED
        assert {s.status for s in await orchestrator.get_stages(job_id)} == {StageStatus.SKIPPED}
        assert await orchestrator.get_result(job_id) is None

    @pytest.mark.asyncio
    async def test_cancel_finished_job(self, orchestrator):
        job_id = await orchestrator.enqueue(_request())
        await orchestrator.run(job_id)
        assert not await orchestrator.cancel(job_id)
        assert (await orchestrator.get_status(job_id)).status is JobStatus.COMPLETED


class TestEventsAndRecovery:
    @pytest.mark.asyncio
    async def test_events(self, orchestrator):
        events = []

        async def async_observer(event):
            events.append(event)

        def broken_observer(event):
            raise RuntimeError("observer bug")

        orchestrator.subscribe(broken_observer)
        orchestrator.subscribe(async_observer)
        job_id = await orchestrator.enqueue(_request())
        await orchestrator.run(job_id)

        assert events[0].type == JOB_ENQUEUED
        assert events[-1].type == JOB_COMPLETED
        assert events[-1].result.audit_id == job_id
        stage_events = [e for e in events if e.type == STAGE_UPDATED]
        # running + completed for each of the seven stages
        assert len(stage_events) == 14
        assert (await orchestrator.get_status(job_id)).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unsubscribe(self, orchestrator):
        events = []
        unsubscribe = orchestrator.subscribe(events.append)
        unsubscribe()
        unsubscribe()
        await orchestrator.enqueue(_request())
        assert events == []

    @pytest.mark.asyncio
    async def test_recover_interrupted_job(self, store, settings):
        job = AuditJob(job_id="audit_crashed", project_id="proj-1")
        await store.create_job(job, _request())
        await store.save_job(job.model_copy(update={
            "status": JobStatus.STATIC_ANALYSIS, "stage": "static_analysis", "progress": 29,
        }))
        stage = await store.get_stage("audit_crashed", StageName.PREPROCESSING)
        await store.save_stage(stage.model_copy(update={"status": StageStatus.COMPLETED}))

        orchestrator = AuditOrchestrator(store, settings=settings, analyzers=_stubs())
        assert await orchestrator.recover() == ["audit_crashed"]

        recovered = await orchestrator.get_status("audit_crashed")
        assert (recovered.status, recovered.stage, recovered.progress) == (JobStatus.QUEUED, "intake", 0)
        assert all(s.status is StageStatus.PENDING for s in await orchestrator.get_stages("audit_crashed"))

        assert await orchestrator.drain() == ["audit_crashed"]
        assert (await orchestrator.get_status("audit_crashed")).status is JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_recover_ignores_queued_and_finished(self, orchestrator):
        queued = await orchestrator.enqueue(_request())
        done = await orchestrator.enqueue(_request())
        await orchestrator.cancel(done)
        assert await orchestrator.recover() == []
        assert (await orchestrator.get_status(queued)).status is JobStatus.QUEUED
