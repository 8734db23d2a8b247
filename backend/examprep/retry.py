from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def linear_backoff(step_seconds: float = 1.0) -> Callable[[int], float]:
	"""Delay after failed attempt n is n * step_seconds."""
	return lambda attempt: attempt * step_seconds


@dataclass
class RetryPolicy:
	max_attempts: int = 3
	backoff: Callable[[int], float] = field(default_factory=linear_backoff)
	retry_on: Tuple[Type[BaseException], ...] = (Exception,)
	give_up_on: Tuple[Type[BaseException], ...] = ()
	sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

	async def run(
		self,
		operation: Callable[[int], Awaitable[T]],
		*,
		label: str = "operation",
		on_retry: Optional[Callable[[int, BaseException], Awaitable[None]]] = None,
	) -> T:
		"""Call `operation(attempt)` until it succeeds or attempts run out.

		The last exception is re-raised once `max_attempts` is reached.
		"""
		attempt = 1
		while True:
			try:
				return await operation(attempt)
			except self.give_up_on:
				raise
			except self.retry_on as e:
				if attempt >= self.max_attempts:
					logger.warning("%s failed after %s attempts: %s", label, attempt, e)
					raise
				delay = self.backoff(attempt)
				logger.warning("%s attempt %s failed (%s); retrying in %.1fs", label, attempt, e, delay)
				if on_retry is not None:
					await on_retry(attempt, e)
				await self.sleep(delay)
				attempt += 1
