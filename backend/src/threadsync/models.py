"""API-specific request and response models."""

from pydantic import BaseModel, Field

from messaging_models import ConversationSummary, MessagingRole


class ConversationListResponse(BaseModel):
    """Response model for a viewer's conversation list."""

    data: list[ConversationSummary] = Field(default_factory=list)
    role: MessagingRole = MessagingRole.USER
    unread_total: int = 0


class MessagePageData(BaseModel):
    """One page of message history, as returned by the server."""

    conversation_id: str
    messages: list[dict] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


class MessagePageResponse(BaseModel):
    data: MessagePageData


class SendMessageRequest(BaseModel):
    """Request model for sending a message."""

    body: str = Field(..., min_length=1, description="Trimmed message text")


class SendMessageResponse(BaseModel):
    data: dict


class CreateConversationRequest(BaseModel):
    """Request model for starting a conversation with a business."""

    business_id: str = Field(..., description="Business to contact")
    user_id: str | None = Field(None, description="Customer to contact, when a business starts the thread")


class CreateConversationResponse(BaseModel):
    """Response model for conversation creation."""

    data: ConversationSummary
    created: bool = False
