from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from routers.signals import signals_router
from dependencies import get_redis_backend, get_relay
from errors import InvalidSignalError, RelayError
from constants import CORS_ORIGINS
from schemas.signals import SignalRequest
from services.relay import SignalRelay
import json
import asyncio
from typing import Dict
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

app = FastAPI(title="Call Signal Relay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(signals_router)

logger.info("FastAPI application initialized")


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Rejected malformed request to {request.url.path}: {exc.errors()}")
    return await relay_error_handler(request, InvalidSignalError("Invalid signal"))


@app.get("/health")
async def health(relay: SignalRelay = Depends(get_relay)):
    return {
        "status": "ok",
        "push_enabled": relay.broadcaster.push_enabled,
        "presence_backend": type(relay.presence).__name__,
    }


# In-memory websocket tracking per room
# Format: {project_id: {connection_id: websocket}}
# NOTE: Each instance tracks only its own sockets. Redis pub/sub carries events
# to every instance, and each instance forwards them to its local sockets.
room_connections: Dict[str, Dict[str, WebSocket]] = {}

# Background tasks for Redis pub/sub listeners per room
# Format: {project_id: task}
room_pubsub_tasks: Dict[str, asyncio.Task] = {}


async def listen_to_redis_channel(project_id: str):
    """Background task forwarding a room's call and project channels to local websockets."""
    logger.info(f"Starting Redis pub/sub listener for room: {project_id}")
    pubsub = None
    backend = get_redis_backend()
    try:
        pubsub = backend.subscribe(
            backend.get_call_channel_name(project_id),
            backend.get_project_channel_name(project_id),
        )
        loop = asyncio.get_running_loop()

        while True:
            if not room_connections.get(project_id):
                logger.info(f"No more connections in room {project_id}, stopping listener")
                break

            # Blocking get_message() runs in the thread pool with a timeout
            def get_message():
                try:
                    return pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
                except Exception as e:
                    logger.error(f"Error in pubsub.get_message() for room {project_id}: {e}", exc_info=True)
                    return None

            message = await loop.run_in_executor(None, get_message)
            if message is None or message.get('type') != 'message':
                continue

            data = message['data']
            sockets = list(room_connections.get(project_id, {}).items())
            logger.debug(f"Forwarding pub/sub message to {len(sockets)} local connections in room {project_id}")
            results = await asyncio.gather(*(ws.send_text(data) for _, ws in sockets), return_exceptions=True)
            for (conn_id, _), result in zip(sockets, results):
                if isinstance(result, Exception):
                    logger.warning(f"Error sending to connection {conn_id} in room {project_id}: {result}")
                    room_connections.get(project_id, {}).pop(conn_id, None)

    except asyncio.CancelledError:
        logger.info(f"Redis listener task cancelled for room: {project_id}")
    except Exception as e:
        logger.error(f"Error in Redis listener for room {project_id}: {e}", exc_info=True)
    finally:
        if pubsub:
            try:
                pubsub.close()
            except Exception as e:
                logger.error(f"Error closing pub/sub for room {project_id}: {e}")
        room_pubsub_tasks.pop(project_id, None)


@app.websocket("/api/chat/{project_id}/ws")
async def websocket_endpoint(project_id: str, websocket: WebSocket, user_id: str = None):
    """Push subscription for a call room.

    Query parameters:
    - user_id: identity of the subscriber, must be a member of the project

    Text frames sent by the client are handled as signals, exactly like
    POST /api/chat/{project_id}/signal.
    """
    relay = await run_in_threadpool(get_relay)
    try:
        await run_in_threadpool(relay.authorize, project_id, user_id)
    except RelayError as e:
        logger.info(f"WebSocket connection rejected for room {project_id}: {e.message}")
        await websocket.close(code=1008, reason=e.message)
        return

    if get_redis_backend() is None:
        logger.info(f"WebSocket connection rejected for room {project_id}: push transport disabled")
        await websocket.close(code=1013, reason="Push transport unavailable, use polling")
        return

    await websocket.accept()
    connection_id = os.urandom(8).hex()
    room_connections.setdefault(project_id, {})[connection_id] = websocket
    logger.info(f"WebSocket {connection_id} for {user_id} joined room {project_id}")

    task = room_pubsub_tasks.get(project_id)
    if task is None or task.done():
        room_pubsub_tasks[project_id] = asyncio.create_task(listen_to_redis_channel(project_id))

    try:
        while True:
            data = await websocket.receive_text()
            try:
                signal = SignalRequest.model_validate(json.loads(data))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.debug(f"Ignoring malformed frame from {connection_id} in room {project_id}: {e}")
                await websocket.send_text(json.dumps({"error": "Invalid signal"}))
                continue
            await run_in_threadpool(relay.handle, project_id, user_id, signal)
    except WebSocketDisconnect:
        logger.info(f"WebSocket {connection_id} disconnected from room {project_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id} in room {project_id}: {e}", exc_info=True)
    finally:
        connections = room_connections.get(project_id, {})
        connections.pop(connection_id, None)
        if not connections:
            room_connections.pop(project_id, None)
            task = room_pubsub_tasks.pop(project_id, None)
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                logger.debug(f"Cancelled pub/sub task for room {project_id}")
