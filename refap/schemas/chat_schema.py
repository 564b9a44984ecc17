"""Request and response models for the HTTP boundary."""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr


class ChatRequest(BaseModel):
    """One customer turn."""
    model_config = ConfigDict(populate_by_name=True)

    message: StrictStr
    session_id: Optional[StrictStr] = Field(default=None, alias="sessionId")


class ChatResponse(BaseModel):
    """Reply plus the CTAs computed for this turn."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    reply: str
    stage: str
    next: Optional[str] = None
    ctas: list[dict[str, Any]] = Field(default_factory=list)
    cta: Optional[dict[str, Any]] = None
    debug: Optional[dict[str, Any]] = None


class SearchRequest(BaseModel):
    question: StrictStr
    limit: Optional[int] = Field(default=None, ge=1, le=20)


class SearchResponse(BaseModel):
    items: list[dict[str, str]] = Field(default_factory=list)


class LeadRequest(BaseModel):
    """Contact form submitted outside the chat flow."""
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    phone: Optional[str] = None
    vehicle: Optional[str] = None
    postcode: Optional[str] = None
    note: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class LeadResponse(BaseModel):
    ok: bool = True
    id: str
