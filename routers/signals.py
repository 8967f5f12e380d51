from fastapi import APIRouter, Depends, Query
from typing import Optional
from dependencies import get_caller_identity, get_caller_name, get_relay
from errors import RelayError
from schemas.signals import (
    NotifyCallRequest, ParticipantOut, ParticipantsResponse, PollResponse, SignalMessage, SignalRequest, SignalResponse,
)
from services.relay import SignalRelay
from logging_config import get_logger

logger = get_logger(__name__)

signals_router = APIRouter(prefix="/api/chat", tags=["signals"])

# Handlers are plain functions: membership lookups and Redis calls block, so
# FastAPI runs them in its threadpool instead of on the event loop.


@signals_router.post("/{project_id}/signal", response_model=SignalResponse)
def send_signal(
    project_id: str,
    signal: SignalRequest,
    caller_id: Optional[str] = Depends(get_caller_identity),
    relay: SignalRelay = Depends(get_relay),
):
    # POST /api/chat/{project_id}/signal Body: { "type": "user-joined", "userId": "...", "userName": "...", "peerId": "..." }
    # Response 200: { "success": true }
    try:
        relay.handle(project_id, caller_id, signal)
    except RelayError:
        raise
    except Exception as e:
        logger.error(f"Error handling {signal.type} signal in room {project_id}: {e}", exc_info=True)
        raise RelayError("Failed to send signal") from e
    return SignalResponse(success=True)


@signals_router.get("/{project_id}/signal", response_model=PollResponse)
def poll_signals(
    project_id: str,
    since: int = Query(0, description="Epoch millis; only signals strictly newer are returned"),
    caller_id: Optional[str] = Depends(get_caller_identity),
    relay: SignalRelay = Depends(get_relay),
):
    """
    Polling fallback for clients without a push connection.
    Clients call this every few seconds with the `timestamp` of the previous
    response and de-duplicate by message id.
    """
    try:
        events = relay.poll(project_id, caller_id, since)
    except RelayError:
        raise
    except Exception as e:
        logger.error(f"Error fetching signals for room {project_id}: {e}", exc_info=True)
        raise RelayError("Failed to fetch signals") from e
    logger.debug(f"Poll for room {project_id} since {since} returned {len(events)} signals")
    return PollResponse(
        messages=[SignalMessage(**event.to_message()) for event in events],
        timestamp=relay.clock(),
    )


@signals_router.get("/{project_id}/participants", response_model=ParticipantsResponse)
def list_participants(
    project_id: str,
    caller_id: Optional[str] = Depends(get_caller_identity),
    relay: SignalRelay = Depends(get_relay),
):
    try:
        participants = relay.participants(project_id, caller_id)
    except RelayError:
        raise
    except Exception as e:
        logger.error(f"Error fetching participants for room {project_id}: {e}", exc_info=True)
        raise RelayError("Failed to fetch participants") from e
    return ParticipantsResponse(participants=[ParticipantOut.from_participant(p) for p in participants])


@signals_router.post("/{project_id}/notify-call", response_model=SignalResponse)
def notify_call(
    project_id: str,
    body: Optional[NotifyCallRequest] = None,
    caller_id: Optional[str] = Depends(get_caller_identity),
    caller_name: Optional[str] = Depends(get_caller_name),
    relay: SignalRelay = Depends(get_relay),
):
    # Broadcasts "video-call-started" to everyone on the project channel
    user_id = (body.user_id if body else None) or caller_id
    user_name = (body.user_name if body else None) or caller_name or "Team member"
    relay.notify_call_started(project_id, caller_id, user_id, user_name)
    return SignalResponse(success=True)
