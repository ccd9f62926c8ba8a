from typing import Any

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Body of every non-2xx response from the media API."""

    detail: str | dict[str, Any] | list[Any] = Field(
        description="Plain message, or the structured payload of a domain error (candidates, usage, failed names)"
    )
    code: str | None = Field(default=None, description="Stable identifier such as `duplicate_found`; null for plain HTTP errors")
    request_id: str | None = Field(default=None, description="Matches the `X-Request-ID` header and the request log line")
