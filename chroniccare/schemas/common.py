"""Response envelope shared by every endpoint."""

from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class ResponseMeta(BaseModel):
    """Envelope metadata."""

    model_config = ConfigDict(populate_by_name=True)

    request_id: str | None = Field(None, alias="requestId")
    timestamp: str


class ApiResponse(BaseModel, Generic[T]):
    """Standard success envelope."""

    success: bool = True
    data: T
    meta: ResponseMeta


def response_meta(request: Request) -> dict[str, Any]:
    """Metadata block for success and error envelopes."""
    return {
        "requestId": getattr(request.state, "request_id", None),
        "timestamp": datetime.now(UTC).isoformat(),
    }


def envelope(request: Request, data: Any) -> dict[str, Any]:
    """Wrap ``data`` in the success envelope."""
    return {"success": True, "data": data, "meta": response_meta(request)}
