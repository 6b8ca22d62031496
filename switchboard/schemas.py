from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

AgentName = Literal["orchestrator", "coder", "researcher", "secretary", "personality", "home", "finance", "imagegen"]
RoutingSource = Literal["heuristic", "llm", "fallback", "user-forced"]


class RoutingDecision(BaseModel):
    agent: str
    confidence: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    source: RoutingSource = "heuristic"

    model_config = {"frozen": True}


class UserProfile(BaseModel):
    name: Optional[str] = None
    timezone: Optional[str] = None
    communication_style: Optional[Literal["concise", "detailed"]] = None
    lat: Optional[float] = None
    lon: Optional[float] = None


class ChatRequest(BaseModel):
    message: str
    user_id: str = "default"
    thread_id: Optional[str] = None
    user_profile: Optional[UserProfile] = None
    force_agent: Optional[AgentName] = None
    show_tool_executions: bool = True

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("message must not be empty")
        return value


class ToolEvent(BaseModel):
    id: str
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["running", "completed", "failed"] = "running"
    result: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None


class SwitchBack(BaseModel):
    agent: str
    topic: str
    prompt: str
    minutes_ago: int


class ChatResponse(BaseModel):
    content: str
    agent: str
    thread_id: str
    routing: RoutingDecision
    model: Optional[str] = None
    provider: Optional[str] = None
    tool_executions: List[ToolEvent] = Field(default_factory=list)
    handoff: Optional[Dict[str, Any]] = None
    switch_back: Optional[SwitchBack] = None
    cached: bool = False
    error: Optional[str] = None


class FeedbackRequest(BaseModel):
    user_id: str = "default"
    message_id: Optional[str] = None
    thread_id: Optional[str] = None
    agent: Optional[AgentName] = None
    signal: Literal["positive", "negative", "neutral"]
    source: Literal["thumbs", "regenerate", "followup", "abandon", "sentiment"] = "thumbs"
    strength: float = Field(default=1.0, ge=0.0, le=1.0)


class ThreadCreate(BaseModel):
    user_id: str = "default"
    title: Optional[str] = None


class MemoryCreate(BaseModel):
    user_id: str = "default"
    memory_type: Literal["fact", "preference", "goal", "relationship", "context"] = "fact"
    content: str
    importance: float = Field(default=0.5, ge=0.0, le=1.0)


class DocumentCreate(BaseModel):
    user_id: str = "default"
    title: str
    content: str
