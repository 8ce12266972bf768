"""
exam_backend/realtime/ws_server.py
Notification websocket endpoint

URL: /ws/notifications?token={access_token}

The handshake is closed with 1008 for a bad or revoked token, and for a
student account that is inactive or still has to change its password.

Client messages:
- {"type": "subscribe", "topic": "questions/math/algebra"}
- {"type": "ping"}

Server messages:
- {"type": "notification", "notification": {...}}
- {"type": "subscribed", "topic": "..."}
- {"type": "pong"}
- {"type": "error", "message": "..."}
"""
import json
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from exam_backend.database import get_db
from exam_backend.errors import APIError
from exam_backend.security.auth import check_student_account, decode_access_token, token_user_from_claims
from exam_backend.security.permissions import is_known_role

logger = logging.getLogger(__name__)

router = APIRouter()

POLICY_VIOLATION = 1008


@router.websocket("/ws/notifications")
async def notifications_socket(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
):
    try:
        current_user = token_user_from_claims(decode_access_token(token))
    except JWTError:
        await websocket.close(code=POLICY_VIOLATION)
        return

    blocklist = websocket.app.state.token_blocklist
    if blocklist.is_blocked(current_user.jti) or not is_known_role(current_user.role):
        await websocket.close(code=POLICY_VIOLATION)
        return

    try:
        await check_student_account(db, current_user)
    except APIError as e:
        logger.info(f"Notification socket rejected for user {current_user.user_id}: {e.message}")
        await websocket.close(code=POLICY_VIOLATION)
        return

    hub = websocket.app.state.notification_hub
    await websocket.accept()
    await hub.register(current_user.user_id, websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_text(json.dumps({"type": "error", "message": "Invalid JSON"}))
                continue

            message_type = data.get("type") if isinstance(data, dict) else None
            if message_type == "subscribe" and isinstance(data.get("topic"), str):
                await hub.subscribe(current_user.user_id, data["topic"])
                await websocket.send_text(json.dumps({"type": "subscribed", "topic": data["topic"]}))
            elif message_type == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
            else:
                await websocket.send_text(json.dumps({"type": "error", "message": "Unsupported message"}))
    except WebSocketDisconnect:
        pass
    finally:
        await hub.unregister(current_user.user_id, websocket)
