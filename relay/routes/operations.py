"""Queue inspection and dead-letter replay."""

from fastapi import APIRouter, Query, Request

from relay.schemas.queue import DeadLetterRecord, QueueStatus, ReplayResponse

router = APIRouter(prefix="/queue", tags=["operations"])


@router.get("/status", response_model=QueueStatus)
async def queue_status(request: Request) -> QueueStatus:
    return await request.app.state.pipeline.get_queue_status()


@router.get("/dead-letter", response_model=list[DeadLetterRecord])
async def dead_letters(request: Request, limit: int = Query(50, ge=1, le=500)) -> list[DeadLetterRecord]:
    return await request.app.state.pipeline.list_dead_letters(limit)


@router.post("/dead-letter/replay", response_model=ReplayResponse)
async def replay_dead_letters(request: Request, limit: int = Query(50, ge=1, le=500)) -> ReplayResponse:
    """Re-enqueue dead letters as fresh events on the normal queue."""
    replayed = await request.app.state.pipeline.replay_dead_letter(limit)
    return ReplayResponse(replayed=replayed)
