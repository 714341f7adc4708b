from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class AgentRelayRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    assistantId: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class UpstreamErrorResponse(BaseModel):
    error: str
    details: Any = None
    status: int


class BadRequestResponse(BaseModel):
    error: str
    details: Optional[str] = None


class UnexpectedErrorResponse(BaseModel):
    error: str
    message: str
