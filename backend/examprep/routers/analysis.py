from __future__ import annotations
import asyncio
import logging
from typing import Any, AsyncIterator, Callable, List, Optional, Tuple, Union

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from ..checkpoints import CheckpointStore
from ..orchestrator import ExtractionError, ImageSource, PipelineOrchestrator, Source, TopicSource
from ..providers import USER_MESSAGES, ProviderError, ProviderGateway, validate_image
from ..report import stream_report
from ..schemas import AnalysisMetadata, AnalysisResult, EventStatus, PipelineEvent, PipelineStage, StudyGoal
from ..settings import settings
from ..streaming import SSE_DONE, sse_frame

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analysis", tags=["analysis"])

STATUS_BY_CATEGORY = {
	"input": 400,
	"extraction": 422,
	"configuration": 500,
	"rate_limit": 429,
	"quota": 402,
	"upstream": 502,
}

_RUN_FINISHED = object()

PipelineFailure = (ProviderError, ExtractionError)


class TopicRequest(BaseModel):
	topic: str
	department: str = "B.Tech"
	subject_hint: Optional[str] = None
	study_goal: StudyGoal = StudyGoal.HIGH_MARKS
	panic_mode: bool = False
	resume_from: Optional[str] = None


def get_orchestrator_factory() -> Callable[[], PipelineOrchestrator]:
	# A fresh gateway per run; the stream closes it once the response is finished
	return lambda: PipelineOrchestrator(ProviderGateway(), checkpoints=CheckpointStore())


def error_response(exc: Union[ProviderError, ExtractionError]) -> JSONResponse:
	category = getattr(exc, "category", "upstream")
	return JSONResponse(
		status_code=STATUS_BY_CATEGORY.get(category, 500),
		content={"error": str(exc), "category": category, "message": USER_MESSAGES.get(category, str(exc))},
	)


async def _read_upload(file: UploadFile) -> ImageSource:
	# Read one byte past the ceiling so oversized uploads are detectable without buffering them whole
	data = await file.read(settings.max_image_bytes + 1)
	validate_image(data, file.content_type, max_bytes=settings.max_image_bytes)
	return ImageSource(data=data, mime_type=file.content_type or "", filename=file.filename)


async def _start_run(
	orchestrator: PipelineOrchestrator,
	source: Source,
	metadata: AnalysisMetadata,
	resume_from: Optional[str],
) -> Tuple["asyncio.Task[AnalysisResult]", "asyncio.Queue[Any]", List[PipelineEvent]]:
	"""Start the run and wait until the syllabus is extracted.

	Fatal extraction errors surface here, before any stream bytes are sent, so
	the caller can answer with a plain JSON error.
	"""
	queue: "asyncio.Queue[Any]" = asyncio.Queue()
	task = asyncio.create_task(
		orchestrator.analyze(source, metadata, on_event=queue.put_nowait, resume_from=resume_from)
	)
	task.add_done_callback(lambda _t: queue.put_nowait(_RUN_FINISHED))
	buffered: List[PipelineEvent] = []
	while True:
		item = await queue.get()
		if item is _RUN_FINISHED:
			# Raises the fatal error; a finished run without extraction cannot happen
			task.result()
			queue.put_nowait(_RUN_FINISHED)
			break
		buffered.append(item)
		if item.stage == PipelineStage.VISION and item.status == EventStatus.COMPLETE:
			break
	return task, queue, buffered


async def _event_stream(
	orchestrator: PipelineOrchestrator,
	task: "asyncio.Task[AnalysisResult]",
	queue: "asyncio.Queue[Any]",
	buffered: List[PipelineEvent],
) -> AsyncIterator[str]:
	try:
		for event in buffered:
			yield sse_frame(event)
		while True:
			item = await queue.get()
			if item is _RUN_FINISHED:
				break
			yield sse_frame(item)

		try:
			result = task.result()
		except PipelineFailure as e:
			logger.error("Analysis run failed mid-stream: %s", e)
			yield sse_frame(PipelineEvent(stage=PipelineStage.BRAIN, status=EventStatus.ERROR, details=USER_MESSAGES.get(e.category, str(e))))
			yield SSE_DONE
			return

		yield sse_frame(PipelineEvent(stage=PipelineStage.PRESENTATION, status=EventStatus.START, details="Generating final report..."))
		try:
			async for piece in stream_report(orchestrator.gateway, result, use_model=settings.stream_report):
				yield sse_frame({"stage": "analysis", "content": piece})
		except ProviderError as e:
			logger.error("Final report stream interrupted: %s", e)
			yield sse_frame(PipelineEvent(stage=PipelineStage.PRESENTATION, status=EventStatus.ERROR, details="Stream interrupted"))
		yield sse_frame({"type": "result", "result": result.model_dump(mode="json")})
		yield sse_frame(PipelineEvent(stage=PipelineStage.PRESENTATION, status=EventStatus.COMPLETE, details="Report ready"))
		yield SSE_DONE
	finally:
		if not task.done():
			task.cancel()
		await orchestrator.gateway.aclose()


async def _stream_analysis(
	orchestrator: PipelineOrchestrator,
	source: Source,
	metadata: AnalysisMetadata,
	resume_from: Optional[str],
):
	try:
		task, queue, buffered = await _start_run(orchestrator, source, metadata, resume_from)
	except PipelineFailure as e:
		logger.warning("Analysis rejected: %s", e)
		await orchestrator.gateway.aclose()
		return error_response(e)
	return StreamingResponse(
		_event_stream(orchestrator, task, queue, buffered),
		media_type="text/event-stream",
		headers={
			"Cache-Control": "no-cache",
			"Connection": "keep-alive",
			"X-Accel-Buffering": "no",
		},
	)


@router.post("/syllabus")
async def analyze_syllabus(
	file: UploadFile = File(...),
	department: str = Form("B.Tech"),
	subject: Optional[str] = Form(None),
	study_goal: StudyGoal = Form(StudyGoal.HIGH_MARKS),
	panic_mode: bool = Form(False),
	resume_from: Optional[str] = Form(None),
	orchestrator_factory: Callable[[], PipelineOrchestrator] = Depends(get_orchestrator_factory),
):
	try:
		source = await _read_upload(file)
	except ProviderError as e:
		return error_response(e)
	metadata = AnalysisMetadata(subject_hint=subject, department=department, study_goal=study_goal, panic_mode=panic_mode)
	return await _stream_analysis(orchestrator_factory(), source, metadata, resume_from)


@router.post("/topic")
async def analyze_topic(
	req: TopicRequest,
	orchestrator_factory: Callable[[], PipelineOrchestrator] = Depends(get_orchestrator_factory),
):
	topic = (req.topic or "").strip()
	if not topic:
		return JSONResponse(status_code=400, content={"error": "topic is required", "category": "input", "message": "Please enter a topic to analyze."})
	metadata = AnalysisMetadata(
		subject_hint=req.subject_hint or topic,
		department=req.department,
		study_goal=req.study_goal,
		panic_mode=req.panic_mode,
	)
	return await _stream_analysis(orchestrator_factory(), TopicSource(topic=topic), metadata, req.resume_from)


@router.post("/syllabus/json", response_model=AnalysisResult)
async def analyze_syllabus_json(
	file: UploadFile = File(...),
	department: str = Form("B.Tech"),
	subject: Optional[str] = Form(None),
	study_goal: StudyGoal = Form(StudyGoal.HIGH_MARKS),
	panic_mode: bool = Form(False),
	resume_from: Optional[str] = Form(None),
	orchestrator_factory: Callable[[], PipelineOrchestrator] = Depends(get_orchestrator_factory),
):
	orchestrator = orchestrator_factory()
	try:
		source = await _read_upload(file)
		metadata = AnalysisMetadata(subject_hint=subject, department=department, study_goal=study_goal, panic_mode=panic_mode)
		return await orchestrator.analyze(source, metadata, resume_from=resume_from)
	except PipelineFailure as e:
		return error_response(e)
	finally:
		await orchestrator.gateway.aclose()
