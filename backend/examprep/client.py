from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .providers import USER_MESSAGES
from .schemas import StudyGoal
from .streaming import StreamingStageController

logger = logging.getLogger(__name__)

_CATEGORY_BY_STATUS = {
	400: "input",
	402: "quota",
	422: "extraction",
	429: "rate_limit",
	500: "configuration",
}


class AnalysisRequestError(Exception):
	"""The service refused the analysis before streaming anything."""

	def __init__(self, message: str, *, category: str, status_code: int) -> None:
		super().__init__(message)
		self.category = category
		self.status_code = status_code

	@property
	def user_message(self) -> str:
		return USER_MESSAGES.get(self.category, str(self))


@dataclass
class AnalysisOutcome:
	text: str
	result: Optional[Dict[str, Any]] = None


def _request_error(response: httpx.Response) -> AnalysisRequestError:
	try:
		body = response.json()
	except ValueError:
		body = {}
	if not isinstance(body, dict):
		body = {}
	message = str(body.get("error") or f"API error: {response.status_code}")
	category = body.get("category")
	if not category:
		if "API keys not configured" in message:
			category = "configuration"
		elif "Image is required" in message:
			category = "input"
		elif "Vision API error" in message:
			category = "extraction"
		else:
			category = _CATEGORY_BY_STATUS.get(response.status_code, "upstream")
	return AnalysisRequestError(message, category=category, status_code=response.status_code)


class AnalysisClient:
	"""Calls the analysis endpoints and drives a StreamingStageController with the response."""

	def __init__(self, base_url: str, *, client: Optional[httpx.AsyncClient] = None) -> None:
		self.base_url = base_url.rstrip("/")
		self._owns_client = client is None
		# Generation can pause for minutes between frames; only connecting is bounded
		self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))

	async def aclose(self) -> None:
		if self._owns_client:
			await self._client.aclose()

	async def analyze_image(
		self,
		image: bytes,
		mime_type: str,
		*,
		department: str = "B.Tech",
		subject: Optional[str] = None,
		study_goal: StudyGoal = StudyGoal.HIGH_MARKS,
		panic_mode: bool = False,
		filename: str = "syllabus.jpg",
		controller: Optional[StreamingStageController] = None,
	) -> AnalysisOutcome:
		data: Dict[str, str] = {
			"department": department,
			"study_goal": study_goal.value,
			"panic_mode": "true" if panic_mode else "false",
		}
		if subject:
			data["subject"] = subject
		return await self._stream(
			f"{self.base_url}/analysis/syllabus",
			controller or StreamingStageController(),
			files={"file": (filename, image, mime_type)},
			data=data,
		)

	async def analyze_topic(
		self,
		topic: str,
		*,
		department: str = "B.Tech",
		study_goal: StudyGoal = StudyGoal.HIGH_MARKS,
		panic_mode: bool = False,
		controller: Optional[StreamingStageController] = None,
	) -> AnalysisOutcome:
		payload = {
			"topic": topic,
			"department": department,
			"study_goal": study_goal.value,
			"panic_mode": panic_mode,
		}
		return await self._stream(f"{self.base_url}/analysis/topic", controller or StreamingStageController(), json=payload)

	async def _stream(self, url: str, controller: StreamingStageController, **kwargs: Any) -> AnalysisOutcome:
		async with self._client.stream("POST", url, **kwargs) as response:
			if response.status_code >= 400:
				await response.aread()
				error = _request_error(response)
				logger.warning("Analysis request rejected (%s): %s", error.category, error)
				raise error
			text = await controller.consume(response.aiter_bytes())
		return AnalysisOutcome(text=text, result=controller.result)
