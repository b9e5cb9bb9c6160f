import logging
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession
from app.api.deps import get_presence_service
from app.api.v1.auth import get_current_user, user_from_token
from app.db.session import get_db
from app.models.user import User
from app.services.presence import PresenceService

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/")
async def get_presence(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    presence: PresenceService = Depends(get_presence_service),
):
    """Online status of every user that ever connected, keyed by email"""
    return {"presence": await presence.presence_map(db)}

@router.websocket("/ws")
async def presence_socket(websocket: WebSocket, token: str | None = Query(None)):
    """
    Real-time channel. Opening the first socket marks the user online and
    kicks off retries of their pending deliveries; closing the last one marks
    them offline. Any text frame counts as a heartbeat.
    """
    state = websocket.app.state
    presence: PresenceService = state.presence
    session_factory = state.session_factory

    async with session_factory() as db:
        user = await user_from_token(token, db)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await state.notifier.connect(user.id, websocket)
    try:
        async with session_factory() as db:
            await presence.connection_opened(db, user.id)

        while True:
            await websocket.receive_text()
            async with session_factory() as db:
                await presence.heartbeat(db, user.id)
    except WebSocketDisconnect:
        logger.debug(f"Socket closed by user {user.id}")
    finally:
        state.notifier.disconnect(user.id, websocket)
        async with session_factory() as db:
            await presence.connection_closed(db, user.id)
