from fastapi import APIRouter, Depends, HTTPException, Response

from ..checkpoints import CheckpointStore
from ..schemas import CheckpointState

router = APIRouter(prefix="/checkpoints", tags=["checkpoints"])


def get_checkpoint_store() -> CheckpointStore:
	return CheckpointStore()


@router.get("/{checkpoint_id}", response_model=CheckpointState)
async def get_checkpoint(checkpoint_id: str, store: CheckpointStore = Depends(get_checkpoint_store)):
	state = store.load(checkpoint_id)
	if state is None:
		raise HTTPException(status_code=404, detail="Checkpoint not found")
	return state


@router.delete("/{checkpoint_id}", status_code=204)
async def discard_checkpoint(checkpoint_id: str, store: CheckpointStore = Depends(get_checkpoint_store)):
	store.discard(checkpoint_id)
	return Response(status_code=204)
