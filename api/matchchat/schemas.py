from datetime import datetime

from pydantic import BaseModel


class SendMessageRequest(BaseModel):
    message_type: str = "text"
    content: str
    voice_duration: int | None = None
    reply_to_message_id: int | None = None


class SocketSendMessage(SendMessageRequest):
    conversation_id: int


class MarkReadRequest(BaseModel):
    message_ids: list[int] | None = None


class SocketMarkRead(MarkReadRequest):
    conversation_id: int


class ConsentRequest(BaseModel):
    level: int
    accepted: bool


class CreateConversationRequest(BaseModel):
    user_a_id: int
    user_b_id: int
    match_created_at: datetime | None = None


class ExpireMatchesRequest(BaseModel):
    conversation_id: int | None = None
