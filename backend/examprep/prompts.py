from __future__ import annotations
import json
from typing import List, Optional

from .schemas import AnalysisMetadata, StudyGoal, SyllabusDocument, UnitRecord


def build_vision_instruction(metadata: AnalysisMetadata) -> str:
	hint = f'The subject is probably "{metadata.subject_hint}".\n' if metadata.subject_hint else ""
	return (
		'You are the "Syllabus Architect". Extract the syllabus structure from this image into strict JSON.\n'
		"Detect ALL units/modules present (whether 4, 5, or 6).\n"
		f"{hint}\n"
		"Output JSON schema:\n"
		"{\n"
		'  "subject_code": string,\n'
		'  "subject_name": string,\n'
		'  "regulation": "R16" | "R18" | "R22" | "R23" | null,\n'
		'  "semester": number | null,\n'
		'  "total_units": number,  // units the syllabus declares\n'
		'  "units": [{"unit_number": number, "title": string, "topics": [string], "keywords": [string]}]\n'
		"}\n"
		"- Capture EVERY unit found in the image.\n"
		"- topics must list ALL extracted topics of that unit."
	)


def build_outline_prompt(topic: str, metadata: AnalysisMetadata) -> tuple[str, str]:
	system = (
		'You are the "Syllabus Architect". Output JSON only, using the schema '
		'{"subject_code": string, "subject_name": string, "regulation": null, "semester": number, '
		'"total_units": number, "units": [{"unit_number": number, "title": string, "topics": [string], "keywords": [string]}]}.'
	)
	user = (
		f"Design a university course outline for: {topic}\n"
		f"Department: {metadata.department}\n"
		"Split it into 5 units of 5-8 topics each, ordered from fundamentals to advanced material."
	)
	return system, user


def build_search_prompt(subject_name: str, department: str) -> str:
	return (
		f'Find JNTUH previous year question papers for "{subject_name}" ({department}):\n\n'
		"1. Search questions from the last six years\n"
		"2. For EACH question/topic, note which years it appeared\n"
		"3. Find frequency: how many times each topic appeared across years\n"
		"4. Find R22 and R18 regulation papers\n"
		"5. Part A vs Part B patterns\n\n"
		"Format:\n"
		"TOPIC/QUESTION | YEARS APPEARED | FREQUENCY\n"
		'Example: "Normalization" | 2024, 2023, 2022 | 3 times\n\n'
		"Include actual questions with year data."
	)


FUSION_SYSTEM = (
	'You are the "Fusion Engine". Extract unique exam questions, frequency patterns and unit-wise '
	"distribution from the provided text. Output a COMPACT summary."
)


def build_fusion_prompt(segment: str, index: int, total: int) -> str:
	return f"Analyze this partial search result (segment {index} of {total}):\n{segment}"


_UNIT_SCHEMA = (
	'{"part_a": [{"question": string, "answer": string, "marks": 2, "bt_level": "L1".."L6", "co": string}], '
	'"part_b": [{"question": string, "answer": string, "marks": 10, "bt_level": "L1".."L6", "co": string}], '
	'"important_topics": [{"topic": string, "frequency": "High" | "Medium" | "Low"}], '
	'"study_plan": {"priority": "High" | "Medium" | "Low", "estimated_time": string, "focus_topics": [string]}}'
)

_SECTION_SCHEMAS = {
	"questions": (
		'{"part_a": [{"question": string, "answer": string, "marks": 2, "bt_level": string, "co": string}], '
		'"part_b": [{"question": string, "answer": string, "marks": 10, "bt_level": string, "co": string}]}'
	),
	"plan": (
		'{"important_topics": [{"topic": string, "frequency": "High" | "Medium" | "Low"}], '
		'"study_plan": {"priority": string, "estimated_time": string, "focus_topics": [string]}}'
	),
}

UNIT_SECTIONS: List[str] = list(_SECTION_SCHEMAS)


def _goal_line(metadata: AnalysisMetadata) -> str:
	if metadata.study_goal == StudyGoal.PASS:
		return "STUDY GOAL: JUST PASS - only high-frequency questions (appeared 3+ times)."
	return "STUDY GOAL: HIGH MARKS (80%+) - cover ALL topics, including derivations and numericals."


def _unit_topics(unit: UnitRecord, metadata: AnalysisMetadata) -> List[str]:
	# Panic mode trims the request to the unit's leading (highest-priority) topics
	return unit.topics[:3] if metadata.panic_mode else list(unit.topics)


def build_unit_prompt(
	unit: UnitRecord,
	document: SyllabusDocument,
	context: str,
	metadata: AnalysisMetadata,
	*,
	section: Optional[str] = None,
) -> tuple[str, str]:
	schema = _SECTION_SCHEMAS[section] if section else _UNIT_SCHEMA
	system = (
		"You are an exam paper analyst. Output JSON only, in English, following exactly this schema: "
		f"{schema}"
	)
	outline = json.dumps(
		[{"unit_number": u.unit_number, "title": u.title} for u in document.units],
		ensure_ascii=False,
	)
	user = (
		f"Subject: {document.display_name()} ({document.regulation.value if document.regulation else 'regulation unknown'})\n"
		f"Course outline: {outline}\n"
		f"Analyze Unit {unit.unit_number} ({unit.title}).\n"
		f"Topics: {'; '.join(_unit_topics(unit, metadata))}\n"
		f"{_goal_line(metadata)}\n"
		"Predict at least 2 short-answer questions (Part A, 2 marks) and 1 essay question (Part B, 10 marks), "
		"tag each with its Bloom's taxonomy level, and rank the unit's topics by exam frequency.\n\n"
		f"Previous paper knowledge base:\n{context[:20000] or 'No previous paper data available.'}"
	)
	return system, user


def build_report_messages(result_json: str) -> list[dict]:
	prompt = (
		'You are the "Exam Prep Finalizer". Convert the following VALIDATED JSON analysis into the final '
		"Markdown report with the sections METHODOLOGY, YEAR-WISE HIT RATIO, HIGH PROBABILITY QUESTIONS "
		"and SUGGESTED APPROACH.\n\n"
		f"VALIDATED DATA:\n{result_json}\n\n"
		"Keep the tone professional, encouraging, and clear."
	)
	return [{"role": "user", "content": prompt}]
