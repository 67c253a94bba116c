"""WebSocket feed of pipeline progress for one call."""
from __future__ import annotations

from uuid import uuid4

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.session import get_session
from ..repositories import calls as calls_repo
from ..services.notifications import NotificationChannel, Subscriber

router = APIRouter()

EVENT_TYPE = "call-status-update"


@router.websocket("/{call_id}/events")
async def call_events(websocket: WebSocket, call_id: str, session: AsyncSession = Depends(get_session)) -> None:
    """Join the call's topic and forward every progress event.

    Only the call's owner may join. Browsers cannot set headers on a WebSocket
    handshake, so ``user_id`` is also accepted as a query parameter.
    """

    user_id = (websocket.headers.get("x-user-id") or websocket.query_params.get("user_id") or "").strip()
    call = await calls_repo.get_by_id(session, call_id) if user_id else None
    # Release the connection before the long-lived feed starts.
    await session.close()
    if call is None or call.user_id != user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    channel: NotificationChannel = websocket.app.state.notifications
    subscriber_id = websocket.query_params.get("subscriber_id") or str(uuid4())
    await websocket.accept()

    async def forward(event: dict) -> None:
        await websocket.send_json({"type": EVENT_TYPE, **event})

    await channel.subscribe(call_id, Subscriber(subscriber_id=subscriber_id, send=forward))
    await websocket.send_json({"type": "joined", "call_id": call_id, "subscriber_id": subscriber_id})

    try:
        while True:
            # Client messages are only keep-alives.
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await channel.unsubscribe(call_id, subscriber_id)
