"""WebSocket routes for snapshot streaming."""
from fastapi import APIRouter, Depends, WebSocket
from ..config import get_settings
from ..services.care_service import CareService, get_care_service
from ..streaming.websocket import handle_snapshot_stream

router = APIRouter(tags=["websocket"])
settings = get_settings()


@router.websocket("/ws/owners/{owner_id}")
async def snapshot_stream(websocket: WebSocket, owner_id: str, care: CareService = Depends(get_care_service)):
    """
    Live ledger snapshots for one owner.

    The first frames are a "welcome" JSON message and the current snapshot;
    a new snapshot frame follows every optimistic insert, confirmation,
    rollback or refetch.

    Example client (JavaScript):
    ```javascript
    const ws = new WebSocket('ws://localhost:8080/ws/owners/me');
    ws.onmessage = async (msg) => {
        const data = JSON.parse(typeof msg.data === 'string' ? msg.data : await msg.data.text());
        if (data.type === 'snapshot') render(data.events);
        if (data.type === 'ping') ws.send('pong');
    };
    ```
    """
    await handle_snapshot_stream(
        websocket,
        owner_id,
        care,
        ping_interval=settings.WS_PING_INTERVAL,
        rate_limit_messages=settings.WS_RATE_LIMIT_MESSAGES,
        rate_limit_window=settings.WS_RATE_LIMIT_WINDOW,
        metrics=getattr(websocket.app.state, "metrics", None),
    )
