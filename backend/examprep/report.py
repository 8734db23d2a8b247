from __future__ import annotations
import logging
from typing import AsyncIterator, List

from .prompts import build_report_messages
from .providers import ProviderError, ProviderGateway
from .schemas import AnalysisResult, Question
from .streaming import SSEDecoder, delta_content

logger = logging.getLogger(__name__)


def _question_lines(questions: List[Question]) -> List[str]:
	lines = []
	for i, q in enumerate(questions, start=1):
		lines.append(f"{i}. {q.question} ({q.marks} marks, {q.bt_level}{', ' + q.co if q.co else ''})")
		if q.answer:
			lines.append(f"   - {q.answer}")
	return lines


def render_markdown(result: AnalysisResult) -> str:
	"""Deterministic markdown rendering of an assembled analysis."""
	meta = result.metadata
	lines = [
		f"# {meta.subject_name} ({meta.subject_code})",
		"",
		f"Regulation: {meta.regulation} | Semester: {meta.semester} | Status: {meta.processing_status.value}",
		"",
		"## 📊 METHODOLOGY",
		"",
		result.methodology,
		"",
		"## 🎯 YEAR-WISE HIT RATIO",
		"",
		"| Unit | Hit Ratio | Notes |",
		"|---|---|---|",
	]
	lines += [f"| {row.unit} | {row.hit_ratio} | {row.description} |" for row in result.hit_ratio_table]
	lines += ["", "## 🔥 HIGH PROBABILITY QUESTIONS", ""]
	for unit in result.unit_predictions:
		lines.append(f"### Unit {unit.unit_number}: {unit.title or 'Core Topics'}")
		if unit.is_fallback:
			lines.append("_Generated from the syllabus topics only; AI analysis was unavailable for this unit._")
		lines += ["", "**Part A (short answers)**", ""]
		lines += _question_lines(unit.part_a)
		lines += ["", "**Part B (long answers)**", ""]
		lines += _question_lines(unit.part_b)
		if unit.important_topics:
			topics = ", ".join(f"{k.topic} ({k.frequency.value})" for k in unit.important_topics)
			lines += ["", f"Key topics: {topics}"]
		lines.append("")
	lines += ["## 📝 SUGGESTED APPROACH", "", result.study_plan.strategy, ""]
	for day in result.study_plan.daily_schedule:
		lines.append(f"- **{day.day}**: {day.focus} ({'; '.join(day.tasks)})")
	if meta.fallback_units:
		units = ", ".join(str(n) for n in meta.fallback_units)
		lines += ["", f"⚡ Units {units} use fallback content. Re-run the analysis later for full predictions."]
	return "\n".join(lines) + "\n"


def _paragraphs(text: str) -> List[str]:
	return [p + "\n\n" for p in text.split("\n\n") if p]


async def stream_report(gateway: ProviderGateway, result: AnalysisResult, *, use_model: bool = True) -> AsyncIterator[str]:
	"""
	Yield the final report as text pieces.

	The generation model writes the report when `use_model` is set. If its
	stream fails before producing anything, the local markdown rendering is
	streamed instead; a failure after partial output is re-raised.
	"""
	produced = False
	if use_model:
		decoder = SSEDecoder()
		messages = build_report_messages(result.model_dump_json())
		try:
			async for chunk in gateway.stream_generation(messages):
				for event in decoder.feed(chunk):
					content = delta_content(event)
					if content:
						produced = True
						yield content
			for event in decoder.flush():
				content = delta_content(event)
				if content:
					produced = True
					yield content
		except ProviderError as e:
			if produced:
				raise
			logger.warning("Report stream unavailable, rendering locally: %s", e)
	if not produced:
		for piece in _paragraphs(render_markdown(result)):
			yield piece
