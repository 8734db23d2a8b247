import io
import re

import pytest
from PIL import Image
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from examprep.checkpoints import CheckpointStore
from examprep.db import init_db, make_engine
from examprep.providers import SearchResult

UNIT_IN_PROMPT = re.compile(r"Analyze Unit (\d+)")


def syllabus_payload(units=3, **overrides):
    payload = {
        "subjectCode": "CS501PC",
        "subjectName": "Database Management Systems",
        "regulation": "R22",
        "semester": 5,
        "units": [
            {
                "unitNumber": n,
                "title": f"Unit {n} title",
                "topics": [f"Topic {n}.{i}" for i in range(1, 5)],
            }
            for n in range(1, units + 1)
        ],
    }
    payload.update(overrides)
    return payload


def unit_payload(n, frequency="High"):
    return {
        "partA": [
            {"question": f"Define concept {n}.1", "answer": "A short answer.", "marks": 2, "btLevel": "L1", "co": f"CO{n}"},
            {"question": f"List the uses of concept {n}.2", "answer": "Another answer.", "marks": 2, "btLevel": "L2"},
        ],
        "partB": [
            {"question": f"Explain concept {n} in detail", "answer": "A long answer.", "marks": 10, "btLevel": "L3"},
        ],
        "importantTopics": [{"topic": f"Topic {n}.1", "frequency": frequency}],
        "studyPlan": {"priority": "High", "estimatedTime": "3 hours", "focus_topics": [f"Topic {n}.1"]},
    }


class FakeGateway:
    """Scripted stand-in for ProviderGateway; records which calls were made."""

    def __init__(
        self,
        *,
        syllabus=None,
        outline=None,
        vision_error=None,
        config_error=None,
        search_result=None,
        search_error=None,
        fusion_text="Normalization | 2024, 2023 | 2 times",
        unit_handler=None,
        report_chunks=(),
    ):
        self.syllabus = syllabus if syllabus is not None else syllabus_payload()
        self.outline = outline
        self.vision_error = vision_error
        self.config_error = config_error
        self.search_result = search_result if search_result is not None else SearchResult(
            text="Normalization | 2024, 2023 | 2 times\nTransactions | 2022 | 1 time",
            citations=["https://example.edu/papers/2023"],
        )
        self.search_error = search_error
        self.fusion_text = fusion_text
        self.unit_handler = unit_handler or (lambda n, attempt: unit_payload(n))
        self.report_chunks = list(report_chunks)
        self.calls = []
        self.unit_attempts = {}
        self.closed = False

    def configured(self):
        return {"vision": True, "search": True, "generation": True}

    def ensure_configured(self):
        if self.config_error is not None:
            raise self.config_error

    async def aclose(self):
        self.closed = True

    async def extract_syllabus(self, image, mime_type, instruction):
        self.calls.append("vision")
        if self.vision_error is not None:
            raise self.vision_error
        return self.syllabus

    async def search(self, prompt):
        self.calls.append("search")
        if self.search_error is not None:
            raise self.search_error
        return self.search_result

    async def generate_text(self, system, user, *, max_tokens=None):
        self.calls.append("fusion")
        return self.fusion_text

    async def generate_json(self, system, user, *, max_tokens=None):
        match = UNIT_IN_PROMPT.search(user)
        if match is None:
            self.calls.append("outline")
            if self.vision_error is not None:
                raise self.vision_error
            return self.outline if self.outline is not None else self.syllabus
        n = int(match.group(1))
        self.calls.append(f"unit:{n}")
        attempt = self.unit_attempts.get(n, 0) + 1
        self.unit_attempts[n] = attempt
        outcome = self.unit_handler(n, attempt)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def stream_generation(self, messages, *, max_tokens=None):
        self.calls.append("report")
        for chunk in self.report_chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk


async def no_sleep(_delay):
    return None


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return CheckpointStore(session_factory)


@pytest.fixture
def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color=(255, 255, 255)).save(buf, format="PNG")
    return buf.getvalue()
