from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from app.queue import replay_sqs_dlq

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay status-change messages from the SQS DLQ to the main queue.
    Each DLQ message is re-sent with attempts reset and deleted from the DLQ.
    Returns number of messages replayed.
    """
    replayed = await replay_sqs_dlq(limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )
