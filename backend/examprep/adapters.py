from __future__ import annotations
from typing import Dict, List, Optional, Protocol

from .schemas import KeywordImportance, Question, UnitAnalysis, UnitRecord, UnitStudyPlan

FALLBACK_PREFIX = "[AI Fallback]"

# Subject-name keywords that select the quantitative adapter
_QUANTITATIVE_HINTS = (
	"math",
	"calculus",
	"algebra",
	"statistic",
	"probability",
	"numerical",
	"mechanics",
	"thermodynamics",
	"circuit",
	"signals",
	"physics",
	"transforms",
)


class SubjectAdapter(Protocol):
	def get_fallback_unit(self, unit: UnitRecord) -> UnitAnalysis: ...


class GenericAdapter:
	"""Templated Q&A built mechanically from the unit's first topics."""

	short_answer_count = 5
	long_answer_count = 3

	def short_question(self, topic: str) -> Question:
		return Question(
			question=f"Explain the concept of {topic} with a suitable example.",
			answer=f"{FALLBACK_PREFIX} {topic} is a fundamental concept in this unit. Refer to standard textbooks for a detailed definition.",
			marks=2,
			bt_level="L2",
		)

	def long_question(self, topic: str) -> Question:
		return Question(
			question=f"Discuss in detail about {topic} and its applications.",
			answer=f"{FALLBACK_PREFIX} Detailed discussion on {topic} requires understanding its core principles and applications in the field.",
			marks=10,
			bt_level="L3",
		)

	def get_fallback_unit(self, unit: UnitRecord) -> UnitAnalysis:
		co = f"CO{unit.unit_number}"
		part_a = [q.model_copy(update={"co": co}) for q in map(self.short_question, unit.topics[: self.short_answer_count])]
		part_b = [q.model_copy(update={"co": co}) for q in map(self.long_question, unit.topics[: self.long_answer_count])]
		return UnitAnalysis(
			unit_number=unit.unit_number,
			title=unit.title,
			topics=list(unit.topics),
			part_a=part_a,
			part_b=part_b,
			important_topics=[KeywordImportance(topic=t) for t in unit.topics[: self.long_answer_count]],
			study_plan=UnitStudyPlan(
				priority="High",
				estimated_time="2 hours",
				focus_topics=unit.topics[:3],
			),
			is_fallback=True,
		)


class QuantitativeAdapter(GenericAdapter):
	"""Problem-oriented templates for numerical subjects."""

	def short_question(self, topic: str) -> Question:
		return Question(
			question=f"Define {topic} and state the governing formula.",
			answer=f"{FALLBACK_PREFIX} State the definition of {topic}, write its standard formula and name each symbol.",
			marks=2,
			bt_level="L1",
		)

	def long_question(self, topic: str) -> Question:
		return Question(
			question=f"Derive the key result for {topic} and solve a numerical problem based on it.",
			answer=f"{FALLBACK_PREFIX} Work through the derivation of {topic} step by step, then practise a textbook numerical problem.",
			marks=10,
			bt_level="L3",
		)


def classify_subject(subject_name: Optional[str]) -> str:
	name = (subject_name or "").lower()
	if any(hint in name for hint in _QUANTITATIVE_HINTS):
		return "quantitative"
	return "generic"


class AdapterRegistry:
	def __init__(self, default: Optional[SubjectAdapter] = None) -> None:
		self._default: SubjectAdapter = default or GenericAdapter()
		self._adapters: Dict[str, SubjectAdapter] = {}

	def register(self, classification: str, adapter: SubjectAdapter) -> None:
		self._adapters[classification] = adapter

	def classifications(self) -> List[str]:
		return sorted(self._adapters)

	def for_subject(self, subject_name: Optional[str]) -> SubjectAdapter:
		return self._adapters.get(classify_subject(subject_name), self._default)


def default_registry() -> AdapterRegistry:
	registry = AdapterRegistry()
	registry.register("quantitative", QuantitativeAdapter())
	return registry
