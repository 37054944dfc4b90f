from typing import Any

from pydantic import BaseModel, Field


class ErrorInfo(BaseModel):
    code: str
    message: str
    retryable: bool = False
    suggested_fix: str | None = None  # Human-readable fix suggestion
    suggested_action: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
