from __future__ import annotations
import logging
import re
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .db import SessionLocal
from .models import CheckpointRecord
from .schemas import CheckpointState, UnitAnalysis

logger = logging.getLogger(__name__)


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _slug(subject: str) -> str:
	return re.sub(r"[^A-Za-z0-9]+", "_", subject).strip("_")[:64] or "subject"


class CheckpointStore:
	"""Durable per-unit progress of analysis runs, keyed by checkpoint id.

	Storage failures are logged and swallowed: a run without a working store
	loses resumability, never its in-memory result. `record_unit` is a plain
	read-modify-write, so one checkpoint id must only have one writer.
	"""

	def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
		self._session_factory = session_factory

	def initialize(self, subject: str, total_units: int) -> str:
		# Timestamp plus random suffix keeps ids distinct across concurrent runs
		checkpoint_id = f"checkpoint_{_slug(subject)}_{time.time_ns()}_{uuid.uuid4().hex[:6]}"
		state = CheckpointState(
			id=checkpoint_id,
			subject=subject,
			total_units=total_units,
			completed_units=[],
			results={},
			timestamp=_now_iso(),
		)
		self._save(state)
		return checkpoint_id

	def record_unit(self, checkpoint_id: str, unit_number: int, result: UnitAnalysis) -> None:
		state = self.load(checkpoint_id)
		if state is None:
			logger.warning("Checkpoint %s not found; unit %s not recorded", checkpoint_id, unit_number)
			return
		if not 1 <= unit_number <= state.total_units:
			logger.warning(
				"Unit %s outside 1..%s for checkpoint %s; not recorded",
				unit_number,
				state.total_units,
				checkpoint_id,
			)
			return
		if unit_number not in state.completed_units:
			state.completed_units.append(unit_number)
		state.results[unit_number] = result
		state.timestamp = _now_iso()
		self._save(state)

	def load(self, checkpoint_id: str) -> Optional[CheckpointState]:
		try:
			with self._session_factory() as db:
				row = db.get(CheckpointRecord, checkpoint_id)
				payload = row.payload if row is not None else None
		except SQLAlchemyError:
			logger.error("Failed to load checkpoint %s", checkpoint_id, exc_info=True)
			return None
		if payload is None:
			return None
		try:
			return CheckpointState.model_validate_json(payload)
		except ValidationError:
			logger.error("Checkpoint %s holds an unreadable payload", checkpoint_id, exc_info=True)
			return None

	def discard(self, checkpoint_id: str) -> None:
		try:
			with self._session_factory() as db:
				db.execute(delete(CheckpointRecord).where(CheckpointRecord.id == checkpoint_id))
				db.commit()
		except SQLAlchemyError:
			logger.error("Failed to discard checkpoint %s", checkpoint_id, exc_info=True)

	def purge_older_than(self, days: int) -> int:
		threshold = datetime.utcnow() - timedelta(days=days)
		try:
			with self._session_factory() as db:
				res = db.execute(delete(CheckpointRecord).where(CheckpointRecord.updated_at < threshold))
				db.commit()
				return res.rowcount or 0
		except SQLAlchemyError:
			logger.error("Failed to purge checkpoints older than %s days", days, exc_info=True)
			return 0

	def _save(self, state: CheckpointState) -> None:
		try:
			with self._session_factory() as db:
				row = db.get(CheckpointRecord, state.id)
				if row is None:
					row = CheckpointRecord(id=state.id, subject=state.subject, payload="")
					db.add(row)
				row.payload = state.model_dump_json()
				row.updated_at = datetime.utcnow()
				db.commit()
		except SQLAlchemyError:
			logger.error("Failed to save checkpoint %s", state.id, exc_info=True)
