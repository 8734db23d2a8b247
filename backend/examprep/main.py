import asyncio
import logging

from fastapi import FastAPI

from .db import init_db
from .checkpoints import CheckpointStore
from .providers import ProviderGateway
from .settings import settings
from .routers import health
from .routers import analysis
from .routers import checkpoints

logging.basicConfig(
	level=getattr(logging, settings.log_level.upper(), logging.INFO),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Exam Prep Analysis API")
app.include_router(health.router)
app.include_router(analysis.router)
app.include_router(checkpoints.router)


@app.get("/info")
async def info():
	gateway = ProviderGateway()
	try:
		providers = gateway.configured()
	finally:
		await gateway.aclose()
	return {"status": "ok", "providers": providers, "stream_report": settings.stream_report}


def _purge_stale_checkpoints() -> None:
	removed = CheckpointStore().purge_older_than(settings.checkpoint_retention_days)
	if removed:
		logger.info("Purged %s stale checkpoints", removed)


async def _cleanup_watcher():
	# Run once at startup, then daily
	while True:
		_purge_stale_checkpoints()
		await asyncio.sleep(24 * 60 * 60)


@app.on_event("startup")
async def startup_event():
	# Initialize checkpoint table
	init_db()
	# Start periodic retention loop
	asyncio.create_task(_cleanup_watcher())
