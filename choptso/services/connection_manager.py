from typing import Dict, List, Set
from fastapi import WebSocket
import asyncio
from choptso.core.logging_config import get_logger
from choptso.core import metrics
from choptso.services.subscriptions import Subscription

logger = get_logger(__name__)


class ConnectionManager:
    """
    Manages WebSocket connections per conversation.

    Every connection owns its subscriptions (conversation view, typing set);
    they are cancelled when the connection goes away.
    """

    def __init__(self):
        # conversation_id -> set of websockets
        self.active_connections: Dict[str, Set[WebSocket]] = {}
        self._subscriptions: Dict[WebSocket, List[Subscription]] = {}

    async def connect(self, websocket: WebSocket, conversation_id: str):
        """Accept and register a WebSocket connection for a conversation."""
        await websocket.accept()

        self.active_connections.setdefault(conversation_id, set()).add(websocket)
        self._subscriptions[websocket] = []

        metrics.websocket_connections_total.labels(conversation_id=conversation_id).inc()
        metrics.websocket_connections_active.labels(conversation_id=conversation_id).set(
            len(self.active_connections[conversation_id])
        )

        logger.info(
            "websocket_registered",
            conversation_id=conversation_id,
            connection_count=len(self.active_connections[conversation_id]),
        )

    def attach(self, websocket: WebSocket, subscription: Subscription) -> None:
        """Tie a subscription's lifetime to a connection."""
        self._subscriptions.setdefault(websocket, []).append(subscription)

    def disconnect(self, websocket: WebSocket, conversation_id: str, reason: str = "normal"):
        """Unregister a connection and cancel its subscriptions. Safe to call twice."""
        for subscription in self._subscriptions.pop(websocket, []):
            subscription.unsubscribe()

        connections = self.active_connections.get(conversation_id)
        if connections is None or websocket not in connections:
            return

        connections.discard(websocket)
        metrics.websocket_disconnections_total.labels(
            conversation_id=conversation_id,
            reason=reason
        ).inc()
        metrics.websocket_connections_active.labels(conversation_id=conversation_id).set(
            len(connections)
        )

        # Clean up empty conversations
        if not connections:
            del self.active_connections[conversation_id]

        logger.info("websocket_unregistered", conversation_id=conversation_id, reason=reason)

    async def send_personal_message(self, message: dict, websocket: WebSocket) -> bool:
        """Send a message to a specific WebSocket. Returns False if the send failed."""
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning("websocket_send_failed", error_type=type(e).__name__, error=str(e))
            return False

    def get_connection_count(self, conversation_id: str) -> int:
        """Get the number of active connections for a conversation."""
        return len(self.active_connections.get(conversation_id, set()))

    async def shutdown_all(self):
        """
        Gracefully shut down all WebSocket connections.

        Sends a shutdown notification to all connected clients before closing,
        allowing them to handle the disconnection gracefully.
        """
        total_connections = sum(len(conns) for conns in self.active_connections.values())

        if total_connections == 0:
            logger.info("websocket_shutdown", message="No active connections to close")
            return

        logger.info("websocket_shutdown_started", connection_count=total_connections)

        all_connections = [
            (conversation_id, websocket)
            for conversation_id, connections in self.active_connections.items()
            for websocket in connections
        ]

        async def close_connection(conversation_id: str, websocket: WebSocket):
            try:
                await websocket.send_json({
                    "type": "server_shutdown",
                    "message": "Server is restarting. Please reconnect in a few seconds."
                })
                # Close with "Going Away" status code
                await websocket.close(code=1001)
            except Exception as e:
                logger.debug("websocket_shutdown_close_failed", error=str(e))
            finally:
                self.disconnect(websocket, conversation_id, reason="shutdown")

        await asyncio.gather(
            *[close_connection(cid, ws) for cid, ws in all_connections],
            return_exceptions=True
        )

        self.active_connections.clear()
        self._subscriptions.clear()
        logger.info("websocket_shutdown_completed", connections_closed=total_connections)
