"""
API request / response models.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatResponse(BaseModel):
    """Chat response"""

    success: bool = True
    conversation_id: str = Field(..., description="Conversation id")
    message: Dict[str, Any] = Field(..., description="Stored assistant message")
    service: str = Field(..., description="Provider that answered")
    mode: str = Field("default", description="default | deep")
    citations: List[str] = Field(default_factory=list)
    visualization: Optional[Dict[str, Any]] = None
    attempts: List[str] = Field(default_factory=list, description="Providers tried, in order")
    job: Optional[Dict[str, Any]] = Field(None, description="Research job when mode=deep")


class ResearchOptions(BaseModel):
    """Recognized research options; unknown keys pass through to the provider call."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    model: Optional[str] = None
    generate_clarifying_questions: Optional[bool] = Field(None, alias="generateClarifyingQuestions")
    priority: Optional[str] = Field(None, description="low | normal | high")
    clarification_answers: Optional[Dict[str, str]] = Field(None, alias="clarificationAnswers")

    def to_options(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True, by_alias=False)


class ChatRequest(BaseModel):
    """Chat request"""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., min_length=1, description="User message")
    conversation_id: Optional[str] = Field(
        None, alias="conversationId", description="Conversation id; omitted starts a new conversation"
    )
    service: Optional[str] = Field(None, description="Explicit provider hint (claude | perplexity)")
    confirm_deep_research: bool = Field(
        False, alias="confirmDeepResearch", description="Start a deep research job instead of chatting"
    )
    research_options: Optional[ResearchOptions] = Field(
        None, alias="researchOptions", description="Options for the deep research job"
    )


class ResearchRequest(BaseModel):
    """Deep research submission"""

    query: str = Field(..., description="Research query")
    options: ResearchOptions = Field(default_factory=ResearchOptions)


class JobResponse(BaseModel):
    success: bool = True
    job: Dict[str, Any]


class JobListResponse(BaseModel):
    success: bool = True
    jobs: List[Dict[str, Any]] = Field(default_factory=list)


class ProviderStatusItem(BaseModel):
    name: str
    state: str
    model_version: str = ""
    last_updated: float = 0.0
    consecutive_successes: int = 0
    last_error: Optional[str] = None
    credential_present: bool = False


class StatusResponse(BaseModel):
    success: bool = True
    providers: List[ProviderStatusItem] = Field(default_factory=list)
    health: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
