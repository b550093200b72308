"""
WebSocket endpoint streaming the reconciled state of one conversation.

Server -> client:
    {"type": "snapshot", "messages": [...], "unread": n}   after every applied batch
    {"type": "typing", "users": [...]}                      when the typing set changes
    {"type": "connection", "online": bool, ...}             when the change feeds drop or recover
    {"type": "error", "error": ..., "detail": ...}          subscription failures
    {"type": "pong"}

Client -> server:
    {"type": "ping"}
    {"type": "typing", "is_typing": true|false}

Messages are created through the REST API; the change feed brings them back
here.
"""

import jwt
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query, status

from choptso.core.auth import decode_token_string
from choptso.core.exceptions import ChatError
from choptso.core.logging_config import get_logger
from choptso.schemas.message import MessageResponse

router = APIRouter()
logger = get_logger(__name__)


@router.websocket("/ws/{conversation_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    conversation_id: str,
    token: str = Query(..., description="Bearer JWT access token")
):
    """
    Example: ws://localhost:8001/api/chat/ws/dm:alice:bob?token=YOUR_ACCESS_TOKEN

    The connection is refused (1008) for an invalid token or a user who is
    not a participant of the conversation.
    """
    container = websocket.app.state.container
    manager = container.manager

    try:
        actor = decode_token_string(token)
    except jwt.InvalidTokenError as e:
        logger.warning("websocket_authentication_failed", conversation_id=conversation_id, error=str(e))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = actor.user_id
    try:
        await container.conversations.require_participant(conversation_id, user_id)
    except ChatError as e:
        logger.warning(
            "websocket_access_denied",
            conversation_id=conversation_id,
            user_id=user_id,
            error_type=type(e).__name__,
        )
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(websocket, conversation_id)
    logger.info(
        "websocket_connected",
        conversation_id=conversation_id,
        user_id=user_id,
        connection_count=manager.get_connection_count(conversation_id),
    )

    async def send_snapshot(view, batch) -> None:
        await manager.send_personal_message(
            {
                "type": "snapshot",
                "conversation_id": conversation_id,
                "messages": [
                    MessageResponse.from_model(m).model_dump(mode="json") for m in view.messages
                ],
                "unread": view.unread_count(user_id),
            },
            websocket,
        )

    async def send_typing(users) -> None:
        await manager.send_personal_message(
            {
                "type": "typing",
                "conversation_id": conversation_id,
                "users": sorted(u for u in users if u != user_id),
            },
            websocket,
        )

    async def send_connection(state: dict) -> None:
        await manager.send_personal_message(
            {
                "type": "connection",
                "online": state["online"],
                "timestamp": state["timestamp"].isoformat(),
                "active_subscriptions": state["active_subscriptions"],
            },
            websocket,
        )

    async def send_error(error: Exception) -> None:
        await manager.send_personal_message(
            {"type": "error", "error": type(error).__name__, "detail": str(error)},
            websocket,
        )

    manager.attach(
        websocket,
        container.reconciler.subscribe(conversation_id, send_snapshot, on_error=send_error),
    )
    manager.attach(
        websocket,
        container.typing.on_typing_change(conversation_id, send_typing, on_error=send_error),
    )
    manager.attach(websocket, container.reconciler.on_connection_change(send_connection))

    reason = "normal"
    try:
        while True:
            data = await websocket.receive_json()
            message_type = data.get("type")

            if message_type == "ping":
                await manager.send_personal_message({"type": "pong"}, websocket)
            elif message_type == "typing":
                try:
                    await container.typing.set_typing(
                        conversation_id, user_id, bool(data.get("is_typing", True))
                    )
                except ChatError as e:
                    await send_error(e)
            else:
                logger.debug(
                    "websocket_message_ignored",
                    conversation_id=conversation_id,
                    user_id=user_id,
                    message_type=message_type or "unknown",
                )

    except WebSocketDisconnect:
        pass

    except Exception as e:
        reason = "error"
        logger.error(
            "websocket_error",
            error_type=type(e).__name__,
            error=str(e),
            conversation_id=conversation_id,
            user_id=user_id,
            exc_info=True,
        )
        try:
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        except RuntimeError:
            # Already closed
            pass

    finally:
        manager.disconnect(websocket, conversation_id, reason=reason)
        logger.info(
            "websocket_disconnected",
            conversation_id=conversation_id,
            user_id=user_id,
            reason=reason,
            connection_count=manager.get_connection_count(conversation_id),
        )
