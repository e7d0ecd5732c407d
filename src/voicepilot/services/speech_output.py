"""
Speech output delegated to connected frontends.

The server has no audio device of its own to speak through; every `speak`
call is broadcast to the WebSocket clients, which run text-to-speech locally
and report back through POST /speech/done.
"""

import asyncio
from typing import List, Optional

from fastapi import WebSocket

from voicepilot.utils import logger

logger = logger.get_logger("SpeechOutput")


class ConnectionManager:
    """Manages WebSocket connections for real-time state updates"""

    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"WebSocket disconnected. Total: {len(self.active_connections)}")

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients"""
        disconnected = []
        for connection in list(self.active_connections):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.error(f"Error broadcasting to client: {e}")
                disconnected.append(connection)

        # Clean up disconnected clients
        for conn in disconnected:
            self.disconnect(conn)

    def broadcast_threadsafe(self, message: dict, loop: Optional[asyncio.AbstractEventLoop]) -> bool:
        """Schedule a broadcast from any thread. Returns False when no loop is running."""
        if loop is None or loop.is_closed():
            return False
        asyncio.run_coroutine_threadsafe(self.broadcast(message), loop)
        return True


class BroadcastSpeechSynthesizer:
    """SpeechSynthesizer that hands each utterance to the frontends."""

    def __init__(self, connections: ConnectionManager):
        self.connections = connections
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def attach(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop

    def speak(self, text: str) -> None:
        if not self.connections.broadcast_threadsafe({"type": "speak", "text": text}, self.loop):
            logger.warning(f"No event loop attached, dropping speech: {text!r}")
