import json

import httpx
import pytest

from examprep.client import AnalysisClient, AnalysisRequestError
from examprep.schemas import EventStatus, PipelineEvent, PipelineStage, StudyGoal
from examprep.streaming import SSE_DONE, EmptyAnalysisError, StreamingStageController, sse_frame


def _body():
    frames = [
        sse_frame(PipelineEvent(stage=PipelineStage.VISION, status=EventStatus.COMPLETE, details="Syllabus extracted")),
        sse_frame({"stage": "analysis", "content": "## 📊 METHODOLOGY\n"}),
        sse_frame({"stage": "analysis", "content": "Based on R22."}),
        sse_frame({"type": "result", "result": {"metadata": {"processing_status": "PARTIAL"}}}),
        SSE_DONE,
    ]
    return "".join(frames).encode()


def _client(handler):
    return AnalysisClient("http://api.test/", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.mark.asyncio
async def test_analyze_image_streams_report(png_bytes):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(200, content=_body(), headers={"content-type": "text/event-stream"})

    stages = []
    controller = StreamingStageController(on_stage=stages.append)
    outcome = await _client(handler).analyze_image(
        png_bytes,
        "image/png",
        subject="DBMS",
        study_goal=StudyGoal.PASS,
        controller=controller,
    )

    assert seen["url"] == "http://api.test/analysis/syllabus"
    assert b'name="study_goal"' in seen["body"]
    assert b"pass" in seen["body"]
    assert outcome.text == "## 📊 METHODOLOGY\nBased on R22."
    assert outcome.result["metadata"]["processing_status"] == "PARTIAL"
    assert stages[0] == PipelineStage.SEARCH
    assert controller.stage == PipelineStage.PRESENTATION


@pytest.mark.asyncio
async def test_analyze_topic_posts_json():
    seen = {}

    def handler(request):
        seen["json"] = json.loads(request.content)
        return httpx.Response(200, content=_body())

    outcome = await _client(handler).analyze_topic("Compiler Design", panic_mode=True)
    assert seen["json"] == {
        "topic": "Compiler Design",
        "department": "B.Tech",
        "study_goal": "high_marks",
        "panic_mode": True,
    }
    assert outcome.text.endswith("Based on R22.")


@pytest.mark.parametrize(
    "status,body,category",
    [
        (500, {"error": "API keys not configured: Missing OPENROUTER_API_KEY", "category": "configuration"}, "configuration"),
        (422, {"error": "Could not extract units", "category": "extraction"}, "extraction"),
        (429, {"error": "vision HTTP 429", "category": "rate_limit"}, "rate_limit"),
        (500, {"error": "API keys not configured: Missing PERPLEXITY_API_KEY"}, "configuration"),
        (400, {"error": "Image is required"}, "input"),
        (500, {"error": "Vision API error: 400"}, "extraction"),
        (503, None, "upstream"),
    ],
)
@pytest.mark.asyncio
async def test_request_errors_are_categorised(status, body, category):
    def handler(request):
        if body is None:
            return httpx.Response(status, text="<html>Service Unavailable</html>")
        return httpx.Response(status, json=body)

    with pytest.raises(AnalysisRequestError) as excinfo:
        await _client(handler).analyze_topic("Networks")
    assert excinfo.value.category == category
    assert excinfo.value.status_code == status
    assert excinfo.value.user_message


@pytest.mark.asyncio
async def test_empty_stream_is_an_error():
    def handler(request):
        return httpx.Response(200, content=SSE_DONE.encode())

    with pytest.raises(EmptyAnalysisError):
        await _client(handler).analyze_topic("Networks")
