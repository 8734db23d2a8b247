"""
Syllabus Analysis Orchestrator

Drives one analysis run end to end:

    vision (or topic outline) -> search -> fusion -> per-unit generation -> assemble -> validate

Failure policy per step:
- vision / outline: fatal, the error propagates to the caller
- search and fusion: degrade to whatever context is available (possibly empty)
- per-unit generation: bounded retry, then a templated fallback unit; credential
  and quota errors are fatal
- final validation: warn only, the assembled result is always returned

Progress is reported through an explicit event callback (one PipelineEvent per
step transition) rather than by capturing log output.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from .adapters import AdapterRegistry, default_registry
from .budget import TokenBudgetEstimator
from .checkpoints import CheckpointStore
from .prompts import (
    FUSION_SYSTEM,
    UNIT_SECTIONS,
    build_fusion_prompt,
    build_outline_prompt,
    build_search_prompt,
    build_unit_prompt,
    build_vision_instruction,
)
from .providers import (
    MalformedResponseError,
    ProviderConfigError,
    ProviderError,
    ProviderGateway,
    ProviderQuotaError,
    SearchResult,
)
from .retry import RetryPolicy, linear_backoff
from .schemas import (
    AggregateStudyPlan,
    AnalysisMetadata,
    AnalysisResult,
    DayPlan,
    EventStatus,
    Frequency,
    HitRatioRow,
    PipelineEvent,
    PipelineStage,
    ProcessingStatus,
    ResultMetadata,
    Strategy,
    SyllabusDocument,
    UnitAnalysis,
    UnitRecord,
)
from .settings import Settings, settings as default_settings
from .validator import OutputValidator

logger = logging.getLogger(__name__)

EventCallback = Callable[[PipelineEvent], Union[None, Awaitable[None]]]

# Hit-ratio weight of each frequency tag
FREQUENCY_WEIGHTS: Dict[Frequency, float] = {
    Frequency.HIGH: 1.0,
    Frequency.MEDIUM: 0.6,
    Frequency.LOW: 0.3,
}

FUSION_ATTEMPTS = 2

# Unit generation stops at once on these instead of retrying or falling back
FATAL_PROVIDER_ERRORS = (ProviderConfigError, ProviderQuotaError)


# ============================================================================
# INPUTS AND ERRORS
# ============================================================================

@dataclass(frozen=True)
class ImageSource:
    data: bytes
    mime_type: str
    filename: Optional[str] = None


@dataclass(frozen=True)
class TopicSource:
    topic: str


Source = Union[ImageSource, TopicSource]


class ExtractionError(Exception):
    """The source could not be turned into a syllabus with at least one unit."""

    category = "extraction"


class UnitGenerationError(Exception):
    """Generated unit output was corrupt or did not match the unit schema."""


# ============================================================================
# HELPERS
# ============================================================================

def chunk_text(text: str, chunk_size: int = 12000) -> List[str]:
    """
    Split text into segments of at most `chunk_size` characters.

    Segments end on the last newline inside the window when there is one, so
    search results are not cut mid-line.
    """
    chunks: List[str] = []
    current = 0
    while current < len(text):
        end = min(current + chunk_size, len(text))
        if end < len(text):
            last_newline = text.rfind("\n", current, end)
            if last_newline > current:
                end = last_newline
        chunks.append(text[current:end])
        current = end
    return [c for c in chunks if c.strip()]


def processing_status(total_units: int, generated_units: int) -> ProcessingStatus:
    """
    Classify a run from declared vs. generated unit counts.

    Fallback units are not counted as generated.
    """
    # Deliberate extension: a run where every unit fell back is FAILED rather
    # than PARTIAL.
    if generated_units == total_units:
        return ProcessingStatus.COMPLETE
    if generated_units == 0 and total_units > 0:
        return ProcessingStatus.FAILED
    return ProcessingStatus.PARTIAL


def hit_ratio(unit: UnitAnalysis) -> Tuple[str, str]:
    if unit.is_fallback:
        return "N/A", "Fallback content; no frequency data for this unit"
    if not unit.important_topics:
        return "N/A", "No topic frequency data returned for this unit"
    score = sum(FREQUENCY_WEIGHTS[k.frequency] for k in unit.important_topics) / len(unit.important_topics)
    high = sum(1 for k in unit.important_topics if k.frequency == Frequency.HIGH)
    return (
        f"{round(score * 100)}%",
        f"{high} of {len(unit.important_topics)} key topics recur frequently in previous papers",
    )


def _hit_score(unit: UnitAnalysis) -> float:
    if unit.is_fallback or not unit.important_topics:
        return 0.0
    return sum(FREQUENCY_WEIGHTS[k.frequency] for k in unit.important_topics) / len(unit.important_topics)


class _EventChannel:
    """Forwards pipeline events to the caller, never moving back to an earlier stage."""

    def __init__(self, callback: Optional[EventCallback]) -> None:
        self._callback = callback
        self._stage: Optional[PipelineStage] = None

    async def emit(self, stage: PipelineStage, status: EventStatus, details: str = "") -> None:
        if self._stage is not None and stage.rank < self._stage.rank:
            stage = self._stage
        self._stage = stage
        logger.debug("pipeline_event %s/%s %s", stage.value, status.value, details)
        if self._callback is None:
            return
        outcome = self._callback(PipelineEvent(stage=stage, status=status, details=details))
        if inspect.isawaitable(outcome):
            await outcome


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class PipelineOrchestrator:
    """
    Runs the multi-stage analysis for one source at a time.

    Units are generated strictly one after another: budget, retry and
    checkpoint bookkeeping stay simple and provider rate limits are respected.
    """

    def __init__(
        self,
        gateway: ProviderGateway,
        *,
        checkpoints: Optional[CheckpointStore] = None,
        validator: Optional[OutputValidator] = None,
        budget: Optional[TokenBudgetEstimator] = None,
        adapters: Optional[AdapterRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.config = config or default_settings
        self.gateway = gateway
        self.checkpoints = checkpoints or CheckpointStore()
        self.validator = validator or OutputValidator()
        self.budget = budget or TokenBudgetEstimator()
        self.adapters = adapters or default_registry()
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.config.unit_max_attempts,
            backoff=linear_backoff(self.config.unit_backoff_seconds),
            retry_on=(ProviderError, UnitGenerationError),
            give_up_on=FATAL_PROVIDER_ERRORS,
        )

    async def analyze(
        self,
        source: Source,
        metadata: Optional[AnalysisMetadata] = None,
        on_event: Optional[EventCallback] = None,
        resume_from: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Analyze a syllabus image or topic and return the assembled report.

        Args:
            source: ImageSource for an uploaded syllabus, TopicSource for a plain topic
            metadata: Department, study goal and panic-mode flags
            on_event: Optional sync or async callback receiving PipelineEvents
            resume_from: Checkpoint id of an earlier run; its completed units are reused

        Raises:
            ProviderError: Missing credentials or a failed vision/outline call
            ExtractionError: No usable syllabus structure could be extracted
        """
        metadata = metadata or AnalysisMetadata()
        events = _EventChannel(on_event)

        self.gateway.ensure_configured()

        document = await self._extract(source, metadata, events)
        search = await self._search(document, metadata, events)
        context = await self._fuse(search.text, events)

        checkpoint_id, restored = self._open_checkpoint(document, resume_from)
        units = await self._generate_units(document, context, metadata, checkpoint_id, restored, events)

        result = self.assemble(document, units, search, checkpoint_id=checkpoint_id, metadata=metadata)

        await events.emit(PipelineStage.BRAIN, EventStatus.VALIDATING, "Final integrity check...")
        if self.validator.validate(result):
            await events.emit(PipelineStage.BRAIN, EventStatus.COMPLETE, "Pipeline checks passed")
        else:
            # Never discard computed work: the check only warns
            logger.warning("Output corruption detected in final assembly; returning best-effort result")
            await events.emit(PipelineStage.BRAIN, EventStatus.WARNING, "Integrity check flagged the report; returning best effort")
        return result

    # ------------------------------------------------------------------
    # Step 1: syllabus structure
    # ------------------------------------------------------------------

    async def _extract(self, source: Source, metadata: AnalysisMetadata, events: _EventChannel) -> SyllabusDocument:
        await events.emit(PipelineStage.VISION, EventStatus.START, "Reading syllabus structure...")
        try:
            if isinstance(source, ImageSource):
                raw = await self.gateway.extract_syllabus(source.data, source.mime_type, build_vision_instruction(metadata))
            else:
                system, user = build_outline_prompt(source.topic, metadata)
                raw = await self.gateway.generate_json(system, user)
        except MalformedResponseError as e:
            raise ExtractionError("Failed to parse syllabus structure") from e

        try:
            document = SyllabusDocument.model_validate(raw)
        except ValidationError as e:
            raise ExtractionError(f"Syllabus structure is invalid: {e.error_count()} problem(s)") from e
        if not document.units:
            raise ExtractionError("Could not extract units from syllabus image")

        if not document.subject_name:
            fallback_name = metadata.subject_hint or (source.topic if isinstance(source, TopicSource) else None)
            document = document.model_copy(update={"subject_name": fallback_name or f"{metadata.department} Subject"})
        if not document.extraction_complete:
            logger.warning(
                "Syllabus declares %s units but %s were extracted",
                document.total_units,
                len(document.units),
            )

        logger.info("Detected %s units for %s", len(document.units), document.display_name())
        await events.emit(PipelineStage.VISION, EventStatus.COMPLETE, "Syllabus extracted")
        return document

    # ------------------------------------------------------------------
    # Step 2-3: search context
    # ------------------------------------------------------------------

    async def _search(self, document: SyllabusDocument, metadata: AnalysisMetadata, events: _EventChannel) -> SearchResult:
        await events.emit(PipelineStage.SEARCH, EventStatus.START, "Searching previous question papers...")
        try:
            result = await self.gateway.search(build_search_prompt(document.display_name(), metadata.department))
        except ProviderError as e:
            logger.warning("Search failed, continuing without context: %s", e)
            await events.emit(PipelineStage.SEARCH, EventStatus.WARNING, "Web search unavailable")
            return SearchResult()
        await events.emit(PipelineStage.SEARCH, EventStatus.COMPLETE, f"Found {len(result.citations)} papers")
        return result

    async def _fuse(self, search_text: str, events: _EventChannel) -> str:
        await events.emit(PipelineStage.FUSION, EventStatus.START, "Architecting data for analysis")
        segments = chunk_text(search_text, self.config.fusion_chunk_chars)
        if not segments:
            await events.emit(PipelineStage.FUSION, EventStatus.COMPLETE, "No search context to optimize")
            return ""

        await events.emit(PipelineStage.FUSION, EventStatus.PROCESSING, f"Deep-scanning {len(segments)} data segments...")
        policy = RetryPolicy(
            max_attempts=FUSION_ATTEMPTS,
            backoff=lambda _attempt: 0.0,
            retry_on=(ProviderError,),
            sleep=self.retry_policy.sleep,
        )
        fused: List[str] = []
        for i, segment in enumerate(segments, start=1):
            await events.emit(
                PipelineStage.FUSION,
                EventStatus.PROCESSING,
                f"Analyzing Segment {i}/{len(segments)}: Extracting patterns...",
            )
            prompt = build_fusion_prompt(segment, i, len(segments))
            try:
                extracted = await policy.run(
                    lambda _attempt: self.gateway.generate_text(FUSION_SYSTEM, prompt),
                    label=f"Fusion segment {i}",
                )
            except ProviderError:
                continue
            if extracted.strip():
                fused.append(f"--- SEGMENT {i} ---\n{extracted.strip()}")

        if not fused:
            logger.warning("Fusion produced nothing; using raw search context")
            await events.emit(PipelineStage.FUSION, EventStatus.WARNING, "Using raw search context")
            return search_text
        await events.emit(PipelineStage.FUSION, EventStatus.COMPLETE, "Context optimized")
        return "\n".join(fused)

    # ------------------------------------------------------------------
    # Step 4: per-unit generation
    # ------------------------------------------------------------------

    def _open_checkpoint(self, document: SyllabusDocument, resume_from: Optional[str]) -> Tuple[str, Dict[int, UnitAnalysis]]:
        subject = document.subject_code or document.subject_name or "UNKNOWN_SUBJECT"
        if resume_from:
            state = self.checkpoints.load(resume_from)
            if state is not None and state.subject == subject and state.total_units == document.total_units:
                # Fallback units are generated again on resume
                restored = {
                    n: r for n, r in state.results.items() if n in state.completed_units and not r.is_fallback
                }
                logger.info("Resuming %s with %s completed units", resume_from, len(restored))
                return resume_from, restored
            logger.warning("Checkpoint %s is missing or belongs to another syllabus; starting fresh", resume_from)
        return self.checkpoints.initialize(subject, document.total_units or 0), {}

    async def _generate_units(
        self,
        document: SyllabusDocument,
        context: str,
        metadata: AnalysisMetadata,
        checkpoint_id: str,
        restored: Dict[int, UnitAnalysis],
        events: _EventChannel,
    ) -> List[UnitAnalysis]:
        adapter = self.adapters.for_subject(document.subject_name)
        await events.emit(PipelineStage.BRAIN, EventStatus.START, f"Generating analysis for {len(document.units)} units...")
        results: List[UnitAnalysis] = []
        for unit in document.units:
            if unit.unit_number in restored:
                await events.emit(PipelineStage.BRAIN, EventStatus.PROCESSING, f"Unit {unit.unit_number} restored from checkpoint")
                results.append(restored[unit.unit_number])
                continue

            await events.emit(PipelineStage.BRAIN, EventStatus.PROCESSING, f"Analyzing Unit {unit.unit_number}: {unit.title}...")
            try:
                analysis = await self.retry_policy.run(
                    lambda _attempt, unit=unit: self._generate_unit(unit, document, context, metadata),
                    label=f"Unit {unit.unit_number}",
                )
            except FATAL_PROVIDER_ERRORS:
                raise
            except (ProviderError, UnitGenerationError) as e:
                logger.error("Unit %s failed, using fallback template: %s", unit.unit_number, e)
                await events.emit(PipelineStage.BRAIN, EventStatus.WARNING, f"Unit {unit.unit_number}: using fallback content")
                analysis = adapter.get_fallback_unit(unit)

            self.checkpoints.record_unit(checkpoint_id, unit.unit_number, analysis)
            results.append(analysis)
        return results

    async def _generate_unit(
        self,
        unit: UnitRecord,
        document: SyllabusDocument,
        context: str,
        metadata: AnalysisMetadata,
    ) -> UnitAnalysis:
        budget = self.budget.estimate(unit, document)
        candidate: Dict[str, Any] = {}
        if budget.strategy == Strategy.CHUNKED:
            for section in UNIT_SECTIONS:
                system, user = build_unit_prompt(unit, document, context, metadata, section=section)
                candidate.update(await self.gateway.generate_json(system, user, max_tokens=budget.max_output_tokens))
        else:
            system, user = build_unit_prompt(unit, document, context, metadata)
            candidate = await self.gateway.generate_json(system, user, max_tokens=budget.max_output_tokens)

        if not self.validator.validate_unit(candidate):
            raise UnitGenerationError(f"Corruption detected in unit {unit.unit_number} output")
        try:
            return UnitAnalysis.model_validate(
                {
                    **candidate,
                    "unit_number": unit.unit_number,
                    "title": unit.title,
                    "topics": list(unit.topics),
                    "is_fallback": False,
                }
            )
        except ValidationError as e:
            raise UnitGenerationError(f"Unit {unit.unit_number} output does not match the unit schema") from e

    # ------------------------------------------------------------------
    # Step 5: assembly
    # ------------------------------------------------------------------

    def assemble(
        self,
        document: SyllabusDocument,
        units: List[UnitAnalysis],
        search: SearchResult,
        *,
        checkpoint_id: Optional[str] = None,
        metadata: Optional[AnalysisMetadata] = None,
    ) -> AnalysisResult:
        units = sorted(units, key=lambda u: u.unit_number)
        generated = [u for u in units if not u.is_fallback]
        total_units = document.total_units if document.total_units is not None else len(units)
        regulation = document.regulation.value if document.regulation else "R18"

        hit_rows = []
        for u in units:
            ratio, description = hit_ratio(u)
            hit_rows.append(HitRatioRow(unit=u.unit_number, hit_ratio=ratio, description=description))

        return AnalysisResult(
            metadata=ResultMetadata(
                subject_code=document.subject_code or "Unknown",
                subject_name=document.subject_name or "Unknown",
                regulation=regulation,
                semester=document.semester,
                total_units=total_units,
                processing_status=processing_status(total_units, len(generated)),
                extraction_complete=document.extraction_complete,
                fallback_units=[u.unit_number for u in units if u.is_fallback],
                checkpoint_id=checkpoint_id,
                timestamp=datetime.now(timezone.utc).isoformat(),
            ),
            methodology=self._methodology(document, regulation, search),
            hit_ratio_table=hit_rows,
            unit_predictions=units,
            study_plan=self._study_plan(units, metadata or AnalysisMetadata()),
            citations=list(search.citations),
        )

    def _methodology(self, document: SyllabusDocument, regulation: str, search: SearchResult) -> str:
        text = (
            f"Analysis based on {regulation} regulation for {document.display_name()}. "
            "Previous question papers were used to identify recurring patterns and high-priority topics. "
            f"Search context length: {len(search.text)} chars from {len(search.citations)} sources."
        )
        if not search.text:
            text += " Web search was unavailable, so predictions rely on the syllabus alone."
        return text

    def _study_plan(self, units: List[UnitAnalysis], metadata: AnalysisMetadata) -> AggregateStudyPlan:
        ranked = sorted((u for u in units if not u.is_fallback), key=_hit_score, reverse=True)[:3]
        if ranked:
            strategy = "Focus on high-weightage units first (Units {})".format(", ".join(str(u.unit_number) for u in ranked))
        else:
            strategy = "Cover the core definitions of every unit first, then practise long answers"
        if metadata.panic_mode:
            strategy = "PANIC MODE: " + strategy + ". Skip low-frequency topics entirely."
        schedule = [
            DayPlan(
                day=f"Day {i}",
                focus=f"Unit {u.unit_number}: {u.title or 'Core Topics'}",
                tasks=["Review Part A concepts", "Practice Part B problems"]
                + [f"Revise {t}" for t in u.study_plan.focus_topics[:2]],
            )
            for i, u in enumerate(units, start=1)
        ]
        return AggregateStudyPlan(strategy=strategy, daily_schedule=schedule)
