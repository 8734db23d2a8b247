import pytest
from sqlalchemy import func, select

from conftest import FakeGateway, no_sleep, syllabus_payload, unit_payload
from examprep.budget import TokenBudgetEstimator
from examprep.models import CheckpointRecord
from examprep.orchestrator import (
    FATAL_PROVIDER_ERRORS,
    ExtractionError,
    ImageSource,
    PipelineOrchestrator,
    TopicSource,
    UnitGenerationError,
    chunk_text,
    hit_ratio,
    processing_status,
)
from examprep.providers import (
    MalformedResponseError,
    ProviderConfigError,
    ProviderError,
    ProviderQuotaError,
    ProviderUpstreamError,
    SearchResult,
)
from examprep.retry import RetryPolicy, linear_backoff
from examprep.schemas import (
    AnalysisMetadata,
    EventStatus,
    PipelineStage,
    ProcessingStatus,
    UnitAnalysis,
)


def _orchestrator(gateway, store, **kwargs):
    policy = RetryPolicy(
        max_attempts=3,
        backoff=linear_backoff(1.0),
        retry_on=(ProviderError, UnitGenerationError),
        give_up_on=FATAL_PROVIDER_ERRORS,
        sleep=no_sleep,
    )
    return PipelineOrchestrator(gateway, checkpoints=store, retry_policy=policy, **kwargs)


def _image(png_bytes):
    return ImageSource(data=png_bytes, mime_type="image/png")


def _checkpoint_count(session_factory):
    with session_factory() as db:
        return db.scalar(select(func.count()).select_from(CheckpointRecord))


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "total,generated,status",
    [
        (5, 5, ProcessingStatus.COMPLETE),
        (5, 4, ProcessingStatus.PARTIAL),
        (5, 0, ProcessingStatus.FAILED),
        (0, 0, ProcessingStatus.COMPLETE),
        (6, 5, ProcessingStatus.PARTIAL),
    ],
)
def test_processing_status(total, generated, status):
    assert processing_status(total, generated) == status


def test_chunk_text_prefers_line_breaks():
    text = "line one\nline two\nline three"
    chunks = chunk_text(text, chunk_size=12)
    assert "".join(chunks) == text
    assert all(len(c) <= 12 for c in chunks)
    assert chunks[0] == "line one"


def test_chunk_text_empty():
    assert chunk_text("") == []
    assert chunk_text("   \n ") == []


def test_hit_ratio_weights_frequencies():
    unit = UnitAnalysis.model_validate(
        {
            **unit_payload(1),
            "unit_number": 1,
            "importantTopics": [
                {"topic": "a", "frequency": "High"},
                {"topic": "b", "frequency": "Low"},
            ],
        }
    )
    ratio, description = hit_ratio(unit)
    assert ratio == "65%"
    assert description.startswith("1 of 2")


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_all_units_succeed(store, png_bytes):
    gateway = FakeGateway()
    events = []
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes), on_event=events.append)

    meta = result.metadata
    assert meta.processing_status == ProcessingStatus.COMPLETE
    assert meta.subject_code == "CS501PC"
    assert meta.regulation == "R22"
    assert meta.total_units == 3
    assert meta.fallback_units == []
    assert [u.unit_number for u in result.unit_predictions] == [1, 2, 3]
    assert [row.hit_ratio for row in result.hit_ratio_table] == ["100%", "100%", "100%"]
    assert result.citations == ["https://example.edu/papers/2023"]
    assert gateway.calls == ["vision", "search", "fusion", "unit:1", "unit:2", "unit:3"]

    state = store.load(meta.checkpoint_id)
    assert sorted(state.completed_units) == [1, 2, 3]

    ranks = [e.stage.rank for e in events]
    assert ranks == sorted(ranks)
    assert events[0].stage == PipelineStage.VISION and events[0].status == EventStatus.START
    assert events[-1].stage == PipelineStage.BRAIN and events[-1].status == EventStatus.COMPLETE


@pytest.mark.asyncio
async def test_unit_failure_falls_back_and_marks_partial(store, png_bytes):
    def handler(n, attempt):
        if n == 2:
            return ProviderUpstreamError("generation timed out")
        return unit_payload(n)

    gateway = FakeGateway(unit_handler=handler)
    events = []
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes), on_event=events.append)

    assert gateway.unit_attempts[2] == 3
    assert result.metadata.processing_status == ProcessingStatus.PARTIAL
    assert result.metadata.fallback_units == [2]
    unit2 = result.unit_predictions[1]
    assert unit2.is_fallback
    assert unit2.part_a and unit2.part_b
    assert result.hit_ratio_table[1].hit_ratio == "N/A"
    assert any(e.status == EventStatus.WARNING and "Unit 2" in e.details for e in events)
    assert sorted(store.load(result.metadata.checkpoint_id).completed_units) == [1, 2, 3]


@pytest.mark.asyncio
async def test_all_units_failing_is_failed(store, png_bytes):
    gateway = FakeGateway(unit_handler=lambda n, attempt: ProviderUpstreamError("down"))
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert result.metadata.processing_status == ProcessingStatus.FAILED
    assert result.metadata.fallback_units == [1, 2, 3]
    assert "Cover the core definitions" in result.study_plan.strategy


@pytest.mark.asyncio
async def test_corrupt_unit_output_is_retried(store, png_bytes):
    def handler(n, attempt):
        if n == 1 and attempt == 1:
            payload = unit_payload(n)
            payload["partA"][0]["answer"] = "答案"
            return payload
        return unit_payload(n)

    gateway = FakeGateway(unit_handler=handler)
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert gateway.unit_attempts[1] == 2
    assert result.metadata.processing_status == ProcessingStatus.COMPLETE


@pytest.mark.asyncio
async def test_unit_missing_parts_is_retried_then_fallback(store, png_bytes):
    gateway = FakeGateway(unit_handler=lambda n, attempt: {"partA": [{"question": "q"}]} if n == 3 else unit_payload(n))
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert gateway.unit_attempts[3] == 3
    assert result.metadata.fallback_units == [3]


@pytest.mark.asyncio
async def test_vision_auth_failure_is_fatal(store, session_factory, png_bytes):
    gateway = FakeGateway(vision_error=ProviderConfigError("401 Unauthorized", status_code=401))
    with pytest.raises(ProviderConfigError):
        await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert gateway.calls == ["vision"]
    assert _checkpoint_count(session_factory) == 0


@pytest.mark.asyncio
async def test_missing_keys_fail_before_any_call(store, png_bytes):
    gateway = FakeGateway(config_error=ProviderConfigError("API keys not configured: Missing OPENROUTER_API_KEY"))
    with pytest.raises(ProviderConfigError):
        await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_unparseable_vision_output_is_extraction_error(store, png_bytes):
    gateway = FakeGateway(vision_error=MalformedResponseError("vision did not return valid JSON"))
    with pytest.raises(ExtractionError):
        await _orchestrator(gateway, store).analyze(_image(png_bytes))


@pytest.mark.asyncio
async def test_syllabus_without_units_is_extraction_error(store, png_bytes):
    gateway = FakeGateway(syllabus=syllabus_payload(units=0))
    with pytest.raises(ExtractionError):
        await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert "search" not in gateway.calls


@pytest.mark.asyncio
async def test_search_failure_degrades_to_empty_context(store, png_bytes):
    gateway = FakeGateway(search_error=ProviderUpstreamError("search HTTP 500", status_code=500))
    events = []
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes), on_event=events.append)

    assert result.metadata.processing_status == ProcessingStatus.COMPLETE
    assert "Search context length: 0 chars" in result.methodology
    assert result.citations == []
    assert "fusion" not in gateway.calls
    assert [c for c in gateway.calls if c.startswith("unit:")] == ["unit:1", "unit:2", "unit:3"]
    assert any(e.stage == PipelineStage.SEARCH and e.status == EventStatus.WARNING for e in events)


@pytest.mark.asyncio
async def test_incomplete_extraction_is_flagged(store, png_bytes):
    gateway = FakeGateway(syllabus=syllabus_payload(units=4, totalUnits=5))
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert result.metadata.total_units == 5
    assert result.metadata.extraction_complete is False
    assert result.metadata.processing_status == ProcessingStatus.PARTIAL


@pytest.mark.asyncio
async def test_missing_regulation_defaults_to_r18(store, png_bytes):
    gateway = FakeGateway(syllabus=syllabus_payload(regulation="R99"))
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert result.metadata.regulation == "R18"


@pytest.mark.asyncio
async def test_resume_skips_completed_units(store, png_bytes):
    first = FakeGateway(unit_handler=lambda n, attempt: ProviderUpstreamError("down") if n == 2 else unit_payload(n))
    earlier = await _orchestrator(first, store).analyze(_image(png_bytes))
    checkpoint_id = earlier.metadata.checkpoint_id
    assert earlier.metadata.fallback_units == [2]

    second = FakeGateway()
    result = await _orchestrator(second, store).analyze(_image(png_bytes), resume_from=checkpoint_id)

    assert [c for c in second.calls if c.startswith("unit:")] == ["unit:2"]
    assert result.metadata.checkpoint_id == checkpoint_id
    assert result.metadata.processing_status == ProcessingStatus.COMPLETE


@pytest.mark.asyncio
async def test_resume_from_foreign_checkpoint_starts_fresh(store, png_bytes):
    other = store.initialize("MA101", 3)
    gateway = FakeGateway()
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes), resume_from=other)
    assert result.metadata.checkpoint_id != other
    assert [c for c in gateway.calls if c.startswith("unit:")] == ["unit:1", "unit:2", "unit:3"]


@pytest.mark.asyncio
async def test_config_error_during_units_is_not_retried(store, png_bytes):
    gateway = FakeGateway(unit_handler=lambda n, attempt: ProviderConfigError("401"))
    with pytest.raises(ProviderConfigError):
        await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert gateway.unit_attempts == {1: 1}


@pytest.mark.asyncio
async def test_quota_error_during_units_is_not_retried(store, png_bytes):
    gateway = FakeGateway(unit_handler=lambda n, attempt: ProviderQuotaError("insufficient credits", status_code=402))
    with pytest.raises(ProviderQuotaError):
        await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert gateway.unit_attempts == {1: 1}


@pytest.mark.asyncio
async def test_default_policy_gives_up_on_quota(store, png_bytes):
    gateway = FakeGateway(unit_handler=lambda n, attempt: ProviderQuotaError("insufficient credits", status_code=402))
    with pytest.raises(ProviderQuotaError):
        await PipelineOrchestrator(gateway, checkpoints=store).analyze(_image(png_bytes))
    assert gateway.unit_attempts == {1: 1}


@pytest.mark.asyncio
async def test_zero_declared_total_counts_extracted_units(store, png_bytes):
    gateway = FakeGateway(syllabus=syllabus_payload(units=3, totalUnits=0))
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes))
    meta = result.metadata
    assert meta.total_units == 3
    assert meta.extraction_complete is True
    assert meta.processing_status == ProcessingStatus.COMPLETE
    assert store.load(meta.checkpoint_id).completed_units == [1, 2, 3]


@pytest.mark.asyncio
async def test_chunked_strategy_merges_sections(store, png_bytes):
    gateway = FakeGateway()
    orchestrator = _orchestrator(gateway, store, budget=TokenBudgetEstimator(max_tokens_per_request=1))
    result = await orchestrator.analyze(_image(png_bytes))
    assert gateway.calls.count("unit:1") == 2
    assert result.metadata.processing_status == ProcessingStatus.COMPLETE


@pytest.mark.asyncio
async def test_topic_source_uses_outline(store):
    gateway = FakeGateway(outline=syllabus_payload(units=2, subjectName="", subjectCode=""))
    metadata = AnalysisMetadata(panic_mode=True)
    result = await _orchestrator(gateway, store).analyze(TopicSource(topic="Machine Learning"), metadata)
    assert gateway.calls[0] == "outline"
    assert "vision" not in gateway.calls
    assert result.metadata.subject_name == "Machine Learning"
    assert result.study_plan.strategy.startswith("PANIC MODE")


@pytest.mark.asyncio
async def test_final_check_only_warns(store, png_bytes):
    gateway = FakeGateway(syllabus=syllabus_payload(subjectName="数据库系统"))
    events = []
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes), on_event=events.append)
    assert result.metadata.subject_name == "数据库系统"
    assert events[-1].status == EventStatus.WARNING


@pytest.mark.asyncio
async def test_async_event_callback_is_awaited(store, png_bytes):
    seen = []

    async def on_event(event):
        seen.append(event.stage)

    await _orchestrator(FakeGateway(), store).analyze(_image(png_bytes), on_event=on_event)
    assert seen[0] == PipelineStage.VISION
    assert PipelineStage.BRAIN in seen


@pytest.mark.asyncio
async def test_fusion_failure_uses_raw_context(store, png_bytes):
    class FailingFusion(FakeGateway):
        async def generate_text(self, system, user, *, max_tokens=None):
            self.calls.append("fusion")
            raise ProviderUpstreamError("fusion down")

    gateway = FailingFusion(search_result=SearchResult(text="Raw | 2024 | 1 time", citations=[]))
    result = await _orchestrator(gateway, store).analyze(_image(png_bytes))
    assert gateway.calls.count("fusion") == 2
    assert "Search context length: 19 chars" in result.methodology
