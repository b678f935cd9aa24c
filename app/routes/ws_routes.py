from __future__ import annotations

"""WebSocket routes for streaming step logs."""

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from app.deps import get_log_stream_manager, get_run_store
from app.ws import log_message

logger = logging.getLogger("workflow.routes.ws")

router = APIRouter()

_TERMINAL = {"completed", "cancelled", "failed"}


@router.websocket("/ws/logs/{run_id}")
async def stream_logs(
    websocket: WebSocket,
    run_id: str,
    run_store=Depends(get_run_store),
    manager=Depends(get_log_stream_manager),
) -> None:
    """Replay recorded step logs, then stream new ones until the run ends."""

    await websocket.accept()
    try:
        record = await run_store.get(run_id)
    except KeyError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown run_id")
        return

    queue = manager.register(run_id)

    try:
        replayed = list(record.logs)
        for index, entry in enumerate(replayed):
            await websocket.send_json(log_message(entry, index))
        if record.finished:
            await websocket.send_json({"type": "status", "status": record.status})
        else:
            while True:
                message = await queue.get()
                if message.get("type") == "log" and message["index"] < len(replayed):
                    continue
                await websocket.send_json(message)
                if message.get("type") == "status" and message.get("status") in _TERMINAL:
                    break
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for run %s", run_id)
        return
    finally:
        manager.unregister(run_id, queue)

    await websocket.close()
