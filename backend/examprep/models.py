from __future__ import annotations
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text
from .db import Base


class CheckpointRecord(Base):
	__tablename__ = "checkpoints"
	# Key-value row: the checkpoint id maps to its JSON-serialised state
	id = Column(String(256), primary_key=True, index=True)
	subject = Column(String(256), nullable=False)
	payload = Column(Text, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False, index=True)
