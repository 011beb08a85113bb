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

"""
HTTP control surface and WebSocket log feed for the instance keeper
"""

import asyncio
import contextlib
import logging
from typing import Any, Dict, Optional, Sequence

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bonk_fleet.keeper.config_reconciler import ConfigReconciler
from bonk_fleet.keeper.desired_state import InstanceConfig
from bonk_fleet.keeper.errors import (
    AlreadyRunningError,
    DesiredStateError,
    FleetError,
    InvalidOrExpiredTokenError,
    NotConnectedError,
    NotFoundError,
    SubscriberGoneError,
)
from bonk_fleet.keeper.instance_registry import InstanceRegistry
from bonk_fleet.keeper.log_broadcaster import LogBroadcaster, LogEntry
from bonk_fleet.keeper.token_issuer import TokenIssuer

logger = logging.getLogger("bonk-fleet")

_STATUS_CODES = {
    AlreadyRunningError: 409,
    NotConnectedError: 409,
    NotFoundError: 404,
    InvalidOrExpiredTokenError: 401,
    DesiredStateError: 422,
}


class ChatRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=512)


def error_envelope(error_code: str, error_message: str) -> Dict[str, Any]:
    return {
        "type": "error",
        "success": False,
        "error_code": error_code,
        "error_message": error_message,
    }


class WebSocketLogSubscriber:
    """Log subscriber that forwards entries to one WebSocket connection.

    The broadcaster calls ``replay``/``push`` synchronously; entries are queued
    and written by ``pump``. A full queue means the client stopped reading,
    which is reported as SubscriberGoneError so the broadcaster drops it.
    """

    def __init__(self, instance_id: str, queue_size: int = 1024):
        self.instance_id = instance_id
        self._queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue(
            maxsize=queue_size
        )
        self._detached = False

    @property
    def detached(self) -> bool:
        return self._detached

    def _enqueue(self, message: Dict[str, Any]) -> None:
        if self._detached:
            raise SubscriberGoneError(
                "Subscriber detached", instance_id=self.instance_id
            )
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull as e:
            self._detached = True
            raise SubscriberGoneError(
                "Subscriber queue full", instance_id=self.instance_id
            ) from e

    def replay(self, entries: Sequence[LogEntry]) -> None:
        self._enqueue(
            {"type": "history", "entries": [entry.to_dict() for entry in entries]}
        )

    def push(self, entry: LogEntry) -> None:
        self._enqueue({"type": "log", "entry": entry.to_dict()})

    def detach(self) -> None:
        self._detached = True
        # Wake the pump even when the queue is full.
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def pump(self, websocket: WebSocket) -> None:
        """Writes queued messages until detached or the client goes away."""
        receiver = asyncio.create_task(self._watch_client(websocket))
        try:
            while True:
                message = await self._queue.get()
                if message is None:
                    break
                await websocket.send_json(message)
        finally:
            receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await receiver

    async def _watch_client(self, websocket: WebSocket) -> None:
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"Log subscriber for {self.instance_id} disconnected")
        finally:
            if not self._detached:
                self.detach()


def create_app(
    registry: InstanceRegistry,
    tokens: TokenIssuer,
    broadcaster: Optional[LogBroadcaster] = None,
    reconciler: Optional[ConfigReconciler] = None,
    subscriber_queue_size: int = 1024,
) -> FastAPI:
    """Builds the FastAPI app exposing the control surface."""
    broadcaster = broadcaster or registry.broadcaster
    app = FastAPI(title="bonk-fleet")

    @app.exception_handler(FleetError)
    async def fleet_error_handler(request: Request, exc: FleetError):
        status_code = _STATUS_CODES.get(type(exc), 500)
        return JSONResponse(
            status_code=status_code,
            content=error_envelope(exc.error_code, str(exc)),
        )

    @app.get("/instances")
    async def list_instances():
        return [status.to_dict() for status in await registry.statuses()]

    @app.post("/instances/{instance_id}/start")
    async def start_instance(instance_id: str, config: InstanceConfig):
        status = await registry.start(instance_id, config)
        return status.to_dict()

    @app.post("/instances/{instance_id}/stop")
    async def stop_instance(instance_id: str):
        status = await registry.stop(instance_id)
        return status.to_dict()

    @app.post("/instances/{instance_id}/chat")
    async def chat(instance_id: str, request: ChatRequest):
        await registry.send_message(instance_id, request.text)
        return {"success": True}

    @app.get("/instances/{instance_id}/status")
    async def instance_status(instance_id: str):
        status = await registry.status(instance_id)
        return status.to_dict()

    @app.post("/instances/{instance_id}/log-token")
    async def issue_log_token(instance_id: str):
        await registry.status(instance_id)
        token = tokens.issue(instance_id)
        return {"token": token.value, "expiresIn": int(tokens.ttl_seconds)}

    @app.post("/config/reload", status_code=202)
    async def reload_config():
        if reconciler is None:
            return JSONResponse(
                status_code=503,
                content=error_envelope(
                    "reconciler_unavailable", "No desired-state source configured"
                ),
            )
        reconciler.notify_changed()
        return {"success": True}

    @app.websocket("/ws/logs")
    async def log_feed(websocket: WebSocket, token: str = ""):
        """WebSocket endpoint for one instance's live log feed"""
        try:
            instance_id = tokens.redeem(token)
        except InvalidOrExpiredTokenError as e:
            logger.warning(f"Rejected log subscription: {e}")
            await websocket.accept()
            await websocket.close(code=1008, reason="Unauthorized")
            return

        await websocket.accept()
        subscriber = WebSocketLogSubscriber(instance_id, subscriber_queue_size)
        try:
            await websocket.send_json({"type": "connected", "instanceId": instance_id})
            broadcaster.attach(instance_id, subscriber)
            await subscriber.pump(websocket)
        except (WebSocketDisconnect, SubscriberGoneError) as e:
            logger.info(f"Log feed for {instance_id} ended: {e}")
        finally:
            broadcaster.detach(instance_id, subscriber)
            with contextlib.suppress(Exception):
                await websocket.close()

    logger.info("Control routes registered")
    return app
