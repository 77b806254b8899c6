"""
Wire schemas for the token refresh exchange.

The refresh endpoint answers with a tagged document: `success: true` with a
`tokens` object, or `success: false` with an untrusted error payload.
Anything else is rejected, so a malformed body can never produce a token pair.
"""

from typing import Any, Literal, Optional, Union

from pydantic import (
    BaseModel, ConfigDict, Field, StrictInt, StrictStr, TypeAdapter, ValidationError, field_validator
)

from shared.exceptions import MalformedResponseError


class RefreshRequest(BaseModel):
    refresh_token: StrictStr = Field(..., min_length=1, description="Current refresh token")


class RefreshedTokens(BaseModel):
    model_config = ConfigDict(extra='ignore')

    access_token: StrictStr = Field(..., min_length=1, description="New access token")
    refresh_token: Optional[StrictStr] = Field(None, description="Rotated refresh token, if issued")
    expires_in: Optional[StrictInt] = Field(None, ge=0, description="Access token lifetime in seconds")

    @field_validator('expires_in', mode='before')
    @classmethod
    def normalize_expires_in(cls, value):
        """Accept integral floats; 0 means the server gave no lifetime."""
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if value == 0 and not isinstance(value, bool):
            return None
        return value


class RefreshSuccess(BaseModel):
    model_config = ConfigDict(extra='ignore')

    success: Literal[True]
    tokens: RefreshedTokens


class RefreshFailure(BaseModel):
    model_config = ConfigDict(extra='allow')

    success: Literal[False]
    error: Optional[Any] = None


RefreshResponse = Union[RefreshSuccess, RefreshFailure]

_response_adapter = TypeAdapter(RefreshResponse)


def parse_refresh_response(payload: Any) -> RefreshResponse:
    """
    Validate a decoded refresh response body.

    Args:
        payload: Decoded JSON body

    Returns:
        RefreshSuccess or RefreshFailure

    Raises:
        MalformedResponseError: If the body matches neither variant
    """
    try:
        return _response_adapter.validate_python(payload)
    except ValidationError as e:
        raise MalformedResponseError(
            f"Invalid refresh response: {e.error_count()} validation error(s)",
            context={'errors': [err.get('loc') for err in e.errors()]},
            cause=e
        )
