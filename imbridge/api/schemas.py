from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class DingtalkText(BaseModel):
    content: Optional[str] = None


class DingtalkRawMessage(BaseModel):
    """Robot message payload pushed on the DingTalk Stream chatbot topic."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    msg_id: Optional[str] = Field(default=None, alias="msgId")
    msgtype: str = "text"
    conversation_id: str = Field(default="", alias="conversationId")
    conversation_type: Optional[str] = Field(default=None, alias="conversationType")
    sender_id: str = Field(default="", alias="senderId")
    sender_nick: Optional[str] = Field(default=None, alias="senderNick")
    sender_staff_id: Optional[str] = Field(default=None, alias="senderStaffId")
    chatbot_user_id: Optional[str] = Field(default=None, alias="chatbotUserId")
    session_webhook: Optional[str] = Field(default=None, alias="sessionWebhook")
    create_at: Optional[int] = Field(default=None, alias="createAt")
    text: Optional[DingtalkText] = None
    # delivery id from the stream frame headers, not part of the payload
    stream_message_id: Optional[str] = Field(default=None, alias="streamMessageId")


class InboundMessage(BaseModel):
    platform: str
    account_id: str
    conversation_id: str
    sender_id: str
    sender_nick: Optional[str] = None
    text: str
    message_id: Optional[str] = None


class MonitorStatus(BaseModel):
    active: bool
    account_id: Optional[str] = None
    state: str = "idle"
