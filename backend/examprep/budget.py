from __future__ import annotations

from .schemas import ProcessingBudget, Strategy, SyllabusDocument, UnitRecord

# Safe per-request limit for the standard generation models
MAX_TOKENS_PER_REQUEST = 12000
# Average characters per token (approximation)
CHARS_PER_TOKEN = 3.5
# Instructions, schema and examples sent with every unit request
PROMPT_OVERHEAD_CHARS = 2000
# Questions, answers and a study plan for one unit
REQUIRED_OUTPUT_TOKENS = 4000
CHUNKED_MAX_OUTPUT_TOKENS = 4000


class TokenBudgetEstimator:
	def __init__(
		self,
		*,
		max_tokens_per_request: int = MAX_TOKENS_PER_REQUEST,
		chars_per_token: float = CHARS_PER_TOKEN,
		prompt_overhead_chars: int = PROMPT_OVERHEAD_CHARS,
		required_output_tokens: int = REQUIRED_OUTPUT_TOKENS,
		chunked_max_output_tokens: int = CHUNKED_MAX_OUTPUT_TOKENS,
	) -> None:
		self.max_tokens_per_request = max_tokens_per_request
		self.chars_per_token = chars_per_token
		self.prompt_overhead_chars = prompt_overhead_chars
		self.required_output_tokens = required_output_tokens
		self.chunked_max_output_tokens = chunked_max_output_tokens

	def estimate(self, unit: UnitRecord, document: SyllabusDocument) -> ProcessingBudget:
		"""Pick single-shot or chunked generation for one unit from input sizes alone."""
		context_size = len(document.model_dump_json())
		unit_size = len(unit.model_dump_json())
		input_tokens = (context_size + unit_size + self.prompt_overhead_chars) / self.chars_per_token
		total = input_tokens + self.required_output_tokens
		if total > self.max_tokens_per_request:
			return ProcessingBudget(
				strategy=Strategy.CHUNKED,
				max_output_tokens=self.chunked_max_output_tokens,
				estimated_cost=total,
			)
		return ProcessingBudget(
			strategy=Strategy.SINGLE,
			max_output_tokens=self.required_output_tokens,
			estimated_cost=total,
		)
