# Copyright 2025 The bonk_fleet Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Mock protocol bridge for testing the WebSocket bridge client."""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set

import websockets

logger = logging.getLogger(__name__)


class MockBridgeServer:
    """Mock bridge that simulates game-server sessions for testing."""

    def __init__(self, host: str = "localhost", port: int = 0):
        """Initialize mock server.

        Args:
            host: Server host address
            port: Server port number; 0 picks a free port
        """
        self.host = host
        self.port = port
        self.server = None
        self.sessions: Set[Any] = set()
        self.server_up = True  # Answer pings with ok=True
        self.refuse_connect: Optional[str] = None  # Reject reason for connects
        self.auto_join = True  # Send joined/spawned after accepting
        self.recorded_messages: List[Dict[str, Any]] = []  # For test verification

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    async def start(self) -> None:
        """Start the mock server."""
        self.server = await websockets.serve(
            self.handle_connection, self.host, self.port
        )
        self.port = self.server.sockets[0].getsockname()[1]
        logger.info(f"Mock bridge started on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the mock server."""
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            logger.info("Mock bridge stopped")

    async def handle_connection(self, websocket: Any) -> None:
        """Handle one bridge client connection."""
        try:
            async for message in websocket:
                await self._handle_message(websocket, message)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Bridge client disconnected")
        finally:
            self.sessions.discard(websocket)

    async def _handle_message(self, websocket: Any, message: str) -> None:
        data = json.loads(message)
        self.recorded_messages.append(data)
        msg_type = data.get("type", "")

        if msg_type == "ping":
            await websocket.send(json.dumps({"type": "pong", "ok": self.server_up}))
        elif msg_type == "connect":
            await self._handle_connect(websocket, data)
        elif msg_type == "send":
            logger.debug(f"Packet {data.get('name')} forwarded")
        else:
            await websocket.send(
                json.dumps({"type": "error", "error": f"Unknown type {msg_type}"})
            )

    async def _handle_connect(self, websocket: Any, data: Dict[str, Any]) -> None:
        if self.refuse_connect is not None:
            await websocket.send(
                json.dumps({"type": "rejected", "reason": self.refuse_connect})
            )
            return
        self.sessions.add(websocket)
        await websocket.send(json.dumps({"type": "accepted"}))
        if self.auto_join:
            await websocket.send(json.dumps({"type": "joined"}))
            await websocket.send(json.dumps({"type": "spawned"}))

    async def send_to_sessions(self, message: Dict[str, Any]) -> None:
        """Send one bridge message to every accepted session."""
        for websocket in list(self.sessions):
            await websocket.send(json.dumps(message))

    async def close_sessions(self) -> None:
        """Close every accepted session from the server side."""
        for websocket in list(self.sessions):
            await websocket.close()
        self.sessions.clear()

    def messages_of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.recorded_messages if m.get("type") == msg_type]

    async def wait_for_sessions(self, count: int, timeout: float = 2.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while len(self.sessions) < count:
            if asyncio.get_running_loop().time() > deadline:
                raise TimeoutError(f"Expected {count} bridge sessions")
            await asyncio.sleep(0.01)
