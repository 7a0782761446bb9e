"""Request bodies accepted by the HTTP API."""
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from librarian import config


class ChatRequest(BaseModel):
    message: str = Field(..., description="User message text")
    session_id: Optional[str] = Field(None, description="Existing session; a new one is created if omitted")
    include_history: bool = Field(True, description="Add recent turns to the prompt")

    @field_validator("message")
    @classmethod
    def message_length(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message cannot be empty")
        if len(value) > config.MAX_MESSAGE_LENGTH:
            raise ValueError(f"Message too long (max {config.MAX_MESSAGE_LENGTH} characters)")
        return value


class InsightRequest(BaseModel):
    topic: str = Field(..., min_length=1, max_length=200, description="Topic to generate an insight about")

    @field_validator("topic")
    @classmethod
    def topic_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Topic cannot be empty")
        return value


class ReportUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    content: Optional[str] = Field(None, min_length=1)
    source_urls: Optional[List[str]] = None


class SessionCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
