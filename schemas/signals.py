from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class SignalRequest(BaseModel):
    """Body of POST /api/chat/{project_id}/signal.

    The actor may be named by userId/userName or by the older from/fromName
    aliases; userId/userName win when both are present. Any other fields
    (sdp, candidate, target ...) are passed through untouched.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: str = Field(..., min_length=1)
    user_id: Optional[str] = Field(None, alias="userId")
    from_user: Optional[str] = Field(None, alias="from")
    user_name: Optional[str] = Field(None, alias="userName")
    from_name: Optional[str] = Field(None, alias="fromName")
    peer_id: Optional[str] = Field(None, alias="peerId")

    @property
    def actor_id(self) -> Optional[str]:
        return self.user_id or self.from_user or None

    @property
    def actor_name(self) -> str:
        return self.user_name or self.from_name or "Participant"

    def payload(self) -> Dict[str, Any]:
        """Everything the client sent except `type`, keyed the way it was sent."""
        data = {
            field.alias or name: getattr(self, name)
            for name, field in type(self).model_fields.items()
            if name != "type" and name in self.model_fields_set
        }
        data.update(self.model_extra or {})
        return data


class SignalResponse(BaseModel):
    success: bool = True


class SignalMessage(BaseModel):
    id: str
    type: str
    data: Dict[str, Any]
    userId: Optional[str] = None
    timestamp: int


class PollResponse(BaseModel):
    messages: List[SignalMessage]
    timestamp: int


class ParticipantOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    user_name: str = Field(..., alias="userName")
    peer_id: Optional[str] = Field(None, alias="peerId")
    joined_at: int = Field(..., alias="joinedAt")
    last_seen_at: int = Field(..., alias="lastSeenAt")

    @classmethod
    def from_participant(cls, participant) -> "ParticipantOut":
        return cls(
            user_id=participant.user_id,
            user_name=participant.display_name,
            peer_id=participant.peer_id,
            joined_at=participant.joined_at,
            last_seen_at=participant.last_seen_at,
        )


class ParticipantsResponse(BaseModel):
    participants: List[ParticipantOut]


class NotifyCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(None, alias="userId")
    user_name: Optional[str] = Field(None, alias="userName")
