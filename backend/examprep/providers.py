from __future__ import annotations
import base64
import io
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from PIL import Image

from .settings import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
	"""Base class for failures talking to an AI provider.

	`category` selects the user-facing message; categories are not interchangeable.
	"""

	category = "upstream"

	def __init__(self, message: str, *, provider: Optional[str] = None, status_code: Optional[int] = None) -> None:
		super().__init__(message)
		self.provider = provider
		self.status_code = status_code


class ProviderConfigError(ProviderError):
	category = "configuration"


class ProviderRateLimitError(ProviderError):
	category = "rate_limit"


class ProviderQuotaError(ProviderError):
	category = "quota"


class ProviderUpstreamError(ProviderError):
	category = "upstream"


class MalformedResponseError(ProviderUpstreamError):
	"""The provider answered 2xx but the body could not be used."""


class InvalidInputError(ProviderError):
	category = "input"


USER_MESSAGES: Dict[str, str] = {
	"configuration": "The analysis service is misconfigured. Please contact the administrator.",
	"input": "Please upload a valid, readable image of your syllabus (max 10 MB).",
	"extraction": "AI Vision failed to read the image. Please try a clearer photo.",
	"rate_limit": "You are being rate-limited by the AI provider. Please wait a minute and try again.",
	"quota": "The AI provider quota is exhausted. Please try again later.",
	"upstream": "The AI provider is unavailable right now. Please try again.",
}


@dataclass
class SearchResult:
	text: str = ""
	citations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Endpoint:
	name: str
	url: str
	api_key: Optional[str]
	model: str
	timeout: float
	extra_headers: Dict[str, str] = field(default_factory=dict)


_THINK_TAGS = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)


def extract_json_object(text: str) -> Dict[str, Any]:
	"""Extract a JSON object from model output.

	Handles raw JSON, JSON inside a markdown code block, and JSON embedded in
	surrounding prose (including reasoning-model `<think>` blocks).

	Raises:
		ValueError: If no JSON object can be extracted
	"""
	text = _THINK_TAGS.sub("", text or "").strip()
	candidates = [text]
	code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
	if code_block:
		candidates.append(code_block.group(1))
	first = text.find("{")
	last = text.rfind("}")
	if first != -1 and last > first:
		candidates.append(text[first : last + 1])
	for candidate in candidates:
		try:
			data = json.loads(candidate)
		except ValueError:
			continue
		if isinstance(data, dict):
			return data
	raise ValueError("model output did not contain a JSON object")


def validate_image(data: bytes, mime_type: Optional[str], *, max_bytes: int) -> None:
	"""Reject uploads that are empty, too large, not image/* or not decodable."""
	if not data:
		raise InvalidInputError("Image is required")
	if len(data) > max_bytes:
		raise InvalidInputError(f"Image exceeds the {max_bytes // (1024 * 1024)} MB limit")
	if not mime_type or not mime_type.lower().startswith("image/"):
		raise InvalidInputError(f"Unsupported content type: {mime_type or 'unknown'}")
	try:
		with Image.open(io.BytesIO(data)) as img:
			img.verify()
	except Exception as e:
		raise InvalidInputError("Uploaded file is not a readable image") from e


def _error_for_response(provider: str, response: httpx.Response) -> ProviderError:
	status = response.status_code
	body = response.text[:500]
	lowered = body.lower()
	message = f"{provider} request failed with HTTP {status}: {body}"
	if status in (401, 403):
		return ProviderConfigError(message, provider=provider, status_code=status)
	if status == 402 or "insufficient credits" in lowered or "insufficient_quota" in lowered:
		return ProviderQuotaError(message, provider=provider, status_code=status)
	if status == 429:
		return ProviderRateLimitError(message, provider=provider, status_code=status)
	return ProviderUpstreamError(message, provider=provider, status_code=status)


class ProviderGateway:
	"""Uniform access to the vision, search and generation providers.

	All three speak the OpenAI-compatible chat-completions protocol. The gateway
	holds no per-call state; one instance can serve a whole pipeline run.
	"""

	def __init__(self, config: Optional[Settings] = None, *, client: Optional[httpx.AsyncClient] = None) -> None:
		self.config = config or default_settings
		self._owns_client = client is None
		self._client = client or httpx.AsyncClient(timeout=30)
		openrouter_headers = {
			"HTTP-Referer": self.config.openrouter_referer,
			"X-Title": self.config.openrouter_title,
		}
		self._vision = _Endpoint(
			name="vision",
			url=self.config.openrouter_base_url,
			api_key=self.config.openrouter_api_key,
			model=self.config.vision_model,
			timeout=self.config.vision_timeout_seconds,
			extra_headers=openrouter_headers,
		)
		self._search = _Endpoint(
			name="search",
			url=self.config.perplexity_base_url,
			api_key=self.config.perplexity_api_key,
			model=self.config.search_model,
			timeout=self.config.search_timeout_seconds,
		)
		self._generation = _Endpoint(
			name="generation",
			url=self.config.openrouter_base_url,
			api_key=self.config.openrouter_api_key,
			model=self.config.generation_model,
			timeout=self.config.generation_timeout_seconds,
			extra_headers=openrouter_headers,
		)

	async def __aenter__(self) -> "ProviderGateway":
		return self

	async def __aexit__(self, *exc_info: Any) -> None:
		await self.aclose()

	async def aclose(self) -> None:
		if self._owns_client:
			await self._client.aclose()

	def configured(self) -> Dict[str, bool]:
		return {ep.name: bool(ep.api_key) for ep in (self._vision, self._search, self._generation)}

	def ensure_configured(self) -> None:
		"""Fail fast when the credentials the run cannot do without are missing.

		Search is optional: without a key the search stage degrades to an empty context.
		"""
		missing = []
		if not self.config.openrouter_api_key:
			missing.append("OPENROUTER_API_KEY")
		if missing:
			raise ProviderConfigError(f"API keys not configured: Missing {', '.join(missing)}")

	# ------------------------------------------------------------------
	# Stage operations
	# ------------------------------------------------------------------

	async def extract_syllabus(self, image: bytes, mime_type: str, instruction: str) -> Dict[str, Any]:
		validate_image(image, mime_type, max_bytes=self.config.max_image_bytes)
		encoded = base64.b64encode(image).decode("ascii")
		payload: Dict[str, Any] = {
			"messages": [
				{
					"role": "user",
					"content": [
						{"type": "text", "text": instruction},
						{"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}},
					],
				}
			],
			"response_format": {"type": "json_object"},
		}
		return self._parse_json(self._vision, await self._post_payload(self._vision, payload))

	async def search(self, prompt: str) -> SearchResult:
		payload: Dict[str, Any] = {
			"messages": [{"role": "user", "content": prompt}],
			"search_recency_filter": "year",
		}
		data = await self._post_payload(self._search, payload)
		citations = data.get("citations") or []
		return SearchResult(
			text=self._message_content(self._search, data),
			citations=[str(c) for c in citations if c],
		)

	async def generate_json(self, system: str, user: str, *, max_tokens: Optional[int] = None) -> Dict[str, Any]:
		payload = self._chat_payload(system, user, max_tokens=max_tokens)
		payload["response_format"] = {"type": "json_object"}
		return self._parse_json(self._generation, await self._post_payload(self._generation, payload))

	async def generate_text(self, system: str, user: str, *, max_tokens: Optional[int] = None) -> str:
		payload = self._chat_payload(system, user, max_tokens=max_tokens)
		return self._message_content(self._generation, await self._post_payload(self._generation, payload))

	async def stream_generation(self, messages: List[Dict[str, Any]], *, max_tokens: Optional[int] = None) -> AsyncIterator[bytes]:
		"""Yield the provider's raw Server-Sent-Events bytes as they arrive."""
		endpoint = self._generation
		payload: Dict[str, Any] = {"model": endpoint.model, "messages": messages, "stream": True}
		if max_tokens is not None:
			payload["max_tokens"] = int(max_tokens)
		try:
			async with self._client.stream(
				"POST",
				endpoint.url,
				headers=self._headers(endpoint),
				json=payload,
				timeout=endpoint.timeout,
			) as r:
				if r.status_code >= 400:
					await r.aread()
					raise _error_for_response(endpoint.name, r)
				async for chunk in r.aiter_bytes():
					yield chunk
		except httpx.TimeoutException as e:
			raise ProviderUpstreamError(f"{endpoint.name} stream timed out", provider=endpoint.name) from e
		except httpx.RequestError as e:
			raise ProviderUpstreamError(f"{endpoint.name} stream failed: {e}", provider=endpoint.name) from e

	# ------------------------------------------------------------------
	# Transport helpers
	# ------------------------------------------------------------------

	def _chat_payload(self, system: str, user: str, *, max_tokens: Optional[int]) -> Dict[str, Any]:
		payload: Dict[str, Any] = {
			"messages": [
				{"role": "system", "content": system},
				{"role": "user", "content": user},
			],
		}
		if max_tokens is not None:
			payload["max_tokens"] = int(max_tokens)
		return payload

	def _headers(self, endpoint: _Endpoint) -> Dict[str, str]:
		if not endpoint.api_key:
			raise ProviderConfigError(f"{endpoint.name} provider API key is not configured", provider=endpoint.name)
		headers = {
			"Authorization": f"Bearer {endpoint.api_key}",
			"Content-Type": "application/json",
		}
		headers.update({k: v for k, v in endpoint.extra_headers.items() if v})
		return headers

	async def _post_payload(self, endpoint: _Endpoint, payload: Dict[str, Any]) -> Dict[str, Any]:
		headers = self._headers(endpoint)
		payload = {"model": endpoint.model, **payload}
		try:
			r = await self._client.post(endpoint.url, headers=headers, json=payload, timeout=endpoint.timeout)
		except httpx.TimeoutException as e:
			raise ProviderUpstreamError(f"{endpoint.name} request timed out", provider=endpoint.name) from e
		except httpx.RequestError as e:
			raise ProviderUpstreamError(f"{endpoint.name} request failed: {e}", provider=endpoint.name) from e
		if r.status_code >= 400:
			raise _error_for_response(endpoint.name, r)
		try:
			data = r.json()
		except ValueError as e:
			raise MalformedResponseError(f"Unexpected {endpoint.name} response: {r.text[:200]}", provider=endpoint.name) from e
		if not isinstance(data, dict):
			raise MalformedResponseError(f"Unexpected {endpoint.name} response shape", provider=endpoint.name)
		return data

	def _message_content(self, endpoint: _Endpoint, data: Dict[str, Any]) -> str:
		try:
			content = data["choices"][0]["message"]["content"]
		except (KeyError, IndexError, TypeError) as e:
			raise MalformedResponseError(f"Unexpected {endpoint.name} response: {str(data)[:200]}", provider=endpoint.name) from e
		return str(content or "")

	def _parse_json(self, endpoint: _Endpoint, data: Dict[str, Any]) -> Dict[str, Any]:
		content = self._message_content(endpoint, data)
		try:
			return extract_json_object(content)
		except ValueError as e:
			raise MalformedResponseError(f"{endpoint.name} did not return valid JSON", provider=endpoint.name) from e
