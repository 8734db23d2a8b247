"""
Domain models for the syllabus analysis pipeline.

Provider output is loosely shaped (camelCase keys, topics as one text block,
free-form frequency tags), so the inbound models accept several spellings and
normalise them. Everything the pipeline produces is serialised with the
snake_case field names defined here.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


_LIST_SPLIT = re.compile(r"[,;\n•]+")


def _split_text_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip(" -\t\r") for part in _LIST_SPLIT.split(value) if part.strip(" -\t\r")]
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return value


# ============================================================================
# ENUMERATIONS
# ============================================================================

class Regulation(str, Enum):
    R16 = "R16"
    R18 = "R18"
    R22 = "R22"
    R23 = "R23"


class StudyGoal(str, Enum):
    PASS = "pass"
    HIGH_MARKS = "high_marks"


class ProcessingStatus(str, Enum):
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class Strategy(str, Enum):
    SINGLE = "single"
    CHUNKED = "chunked"


class Frequency(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class PipelineStage(str, Enum):
    """Coarse pipeline phases, declared in run order."""

    VISION = "vision"
    SEARCH = "search"
    FUSION = "fusion"
    BRAIN = "brain"
    PRESENTATION = "presentation"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER: List[PipelineStage] = list(PipelineStage)


class EventStatus(str, Enum):
    START = "start"
    PROCESSING = "processing"
    VALIDATING = "validating"
    COMPLETE = "complete"
    WARNING = "warning"
    ERROR = "error"


# ============================================================================
# SYLLABUS (vision output)
# ============================================================================

class UnitRecord(BaseModel):
    """One syllabus unit as extracted from the source. Read-only once built."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    unit_number: int = Field(ge=1, validation_alias=AliasChoices("unit_number", "unitNumber", "unit"))
    title: str = ""
    topics: List[str] = Field(min_length=1)
    keywords: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _default_topics_to_title(cls, data: Any) -> Any:
        if isinstance(data, dict) and not _split_text_list(data.get("topics")) and data.get("title"):
            data = {**data, "topics": [str(data["title"])]}
        return data

    @field_validator("title", mode="before")
    @classmethod
    def _clean_title(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("topics", "keywords", mode="before")
    @classmethod
    def _split_lists(cls, value: Any) -> Any:
        return _split_text_list(value)


class SyllabusDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subject_code: str = Field(default="", validation_alias=AliasChoices("subject_code", "subjectCode"))
    subject_name: str = Field(default="", validation_alias=AliasChoices("subject_name", "subjectName"))
    regulation: Optional[Regulation] = None
    semester: int = Field(default=1, ge=1)
    units: List[UnitRecord] = Field(default_factory=list)
    total_units: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("total_units", "totalUnits"))

    @field_validator("subject_code", "subject_name", mode="before")
    @classmethod
    def _clean_text(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("regulation", mode="before")
    @classmethod
    def _normalise_regulation(cls, value: Any) -> Optional[str]:
        # Unknown regulation tags are treated as absent, not as an error
        if value is None:
            return None
        tag = str(value).strip().upper()
        return tag if tag in Regulation.__members__ else None

    @field_validator("semester", mode="before")
    @classmethod
    def _normalise_semester(cls, value: Any) -> int:
        try:
            return max(1, int(value))
        except (TypeError, ValueError):
            return 1

    @model_validator(mode="after")
    def _check_units(self) -> "SyllabusDocument":
        numbers = [u.unit_number for u in self.units]
        if len(numbers) != len(set(numbers)):
            raise ValueError("unit numbers must be unique within a syllabus")
        # A declared total of 0 means the model did not report one
        if not self.total_units:
            self.total_units = len(self.units)
        return self

    @property
    def extraction_complete(self) -> bool:
        """False when the declared unit count disagrees with the units actually extracted."""
        return self.total_units == len(self.units)

    def display_name(self) -> str:
        return self.subject_name or self.subject_code or "Unknown"


# ============================================================================
# GENERATED UNIT CONTENT
# ============================================================================

class Question(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    question: str = Field(min_length=1)
    answer: str = ""
    marks: int = 2
    bt_level: str = Field(default="L2", validation_alias=AliasChoices("bt_level", "btLevel", "bloom_level"))
    co: str = ""

    @field_validator("answer", "co", "bt_level", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return "" if value is None else str(value).strip()


class KeywordImportance(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    topic: str = Field(min_length=1)
    frequency: Frequency = Frequency.MEDIUM

    @model_validator(mode="before")
    @classmethod
    def _from_plain_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"topic": data}
        return data

    @field_validator("frequency", mode="before")
    @classmethod
    def _normalise_frequency(cls, value: Any) -> str:
        tag = str(value or "").strip().lower()
        if tag.startswith("h") or tag == "rising":
            return Frequency.HIGH.value
        if tag.startswith("l") or tag == "falling":
            return Frequency.LOW.value
        return Frequency.MEDIUM.value


class UnitStudyPlan(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    priority: str = "Medium"
    estimated_time: str = ""
    focus_topics: List[str] = Field(default_factory=list)

    @field_validator("focus_topics", mode="before")
    @classmethod
    def _split_topics(cls, value: Any) -> Any:
        return _split_text_list(value)


class UnitAnalysis(BaseModel):
    """Study content for one unit: either fully generated or a fallback template."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    unit_number: int = Field(ge=1)
    title: str = ""
    topics: List[str] = Field(default_factory=list)
    part_a: List[Question] = Field(min_length=1, validation_alias=AliasChoices("part_a", "partA"))
    part_b: List[Question] = Field(min_length=1, validation_alias=AliasChoices("part_b", "partB"))
    important_topics: List[KeywordImportance] = Field(
        default_factory=list,
        validation_alias=AliasChoices("important_topics", "importantTopics", "keywords"),
    )
    study_plan: UnitStudyPlan = Field(default_factory=UnitStudyPlan, validation_alias=AliasChoices("study_plan", "studyPlan"))
    is_fallback: bool = False


class ProcessingBudget(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: Strategy
    max_output_tokens: int
    estimated_cost: float


# ============================================================================
# CHECKPOINTS
# ============================================================================

class CheckpointState(BaseModel):
    id: str
    subject: str
    total_units: int
    completed_units: List[int] = Field(default_factory=list)
    results: Dict[int, UnitAnalysis] = Field(default_factory=dict)
    timestamp: str


# ============================================================================
# PIPELINE INPUT / OUTPUT
# ============================================================================

class AnalysisMetadata(BaseModel):
    subject_hint: Optional[str] = None
    department: str = "B.Tech"
    study_goal: StudyGoal = StudyGoal.HIGH_MARKS
    panic_mode: bool = False


class ResultMetadata(BaseModel):
    subject_code: str
    subject_name: str
    regulation: str
    semester: int
    total_units: int
    exam_pattern: str = "JNTUH_STANDARD"
    processing_status: ProcessingStatus
    extraction_complete: bool = True
    fallback_units: List[int] = Field(default_factory=list)
    checkpoint_id: Optional[str] = None
    timestamp: str


class HitRatioRow(BaseModel):
    unit: int
    hit_ratio: str
    description: str


class DayPlan(BaseModel):
    day: str
    focus: str
    tasks: List[str] = Field(default_factory=list)


class AggregateStudyPlan(BaseModel):
    strategy: str
    daily_schedule: List[DayPlan] = Field(default_factory=list)


class AnalysisResult(BaseModel):
    metadata: ResultMetadata
    methodology: str
    hit_ratio_table: List[HitRatioRow] = Field(default_factory=list)
    unit_predictions: List[UnitAnalysis] = Field(default_factory=list)
    study_plan: AggregateStudyPlan
    citations: List[str] = Field(default_factory=list)


class PipelineEvent(BaseModel):
    """Coarse progress marker, serialised as one `pipeline_event` stream frame."""

    type: Literal["pipeline_event"] = "pipeline_event"
    stage: PipelineStage
    status: EventStatus
    details: str = ""
