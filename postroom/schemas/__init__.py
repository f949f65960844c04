"""
postroom.schemas
~~~~~~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from postroom.schemas.api_response import ApiResponse
from postroom.schemas.chat import (
    ConversationData,
    ConversationDetailData,
    ConversationListData,
    CreateConversationRequest,
    MessageData,
    PageMetadata,
    SendMessageRequest,
)
from postroom.schemas.comments import (
    ClientEvent,
    CommentData,
    ErrorData,
    MarkAsReadPayload,
    SendCommentPayload,
    TypingPayload,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
