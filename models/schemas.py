"""
Pydantic schemas for request/response validation.
Reusable across routes; keeps API contracts explicit.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Error body rendered by the terminal error handler."""

    status: str = "error"
    status_code: int = Field(serialization_alias="statusCode")
    message: str
    stack: str | None = None

    model_config = ConfigDict(extra="forbid")

    def to_content(self) -> dict[str, Any]:
        # stack is dropped entirely unless populated
        return self.model_dump(by_alias=True, exclude_none=True)


class TokenRequest(BaseModel):
    """Credentials for POST /api/v1/auth/token."""

    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=1, max_length=128)

    model_config = ConfigDict(extra="forbid")


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class EchoResponse(BaseModel):
    """What the pipeline made of the request: sanitized query and parsed body."""

    method: str
    path: str
    query: dict[str, str]
    query_polluted: dict[str, list[str]] = Field(default_factory=dict)
    body: Any = None


class UserResponse(BaseModel):
    subject: str
    claims: dict[str, Any] = Field(default_factory=dict)
