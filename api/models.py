"""
Request / Response Models
-------------------------
Immutable value types that flow through the client pipeline.

A request is frozen once built; interceptors return new instances
through replace() / with_headers() instead of mutating.
"""

from dataclasses import dataclass, field, replace as dc_replace
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from core.errors import ValidationError

T = TypeVar("T")

HTTPMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

# Methods that never carry a request body
BODYLESS_METHODS = frozenset({"GET", "HEAD"})


@dataclass(frozen=True)
class APIRequest:
    """One outbound call, relative to the client's base URL unless absolute."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    data: Any = None
    timeout: Optional[float] = None   # Seconds, overrides ClientConfig.timeout
    retries: Optional[int] = None     # Overrides ClientConfig.max_retries
    cache: Optional[bool] = None      # False skips cache lookup and store
    metadata: Dict[str, Any] = field(default_factory=dict)

    def replace(self, **changes: Any) -> "APIRequest":
        """Return a copy with the given fields changed."""
        return dc_replace(self, **changes)

    def with_headers(self, headers: Dict[str, str]) -> "APIRequest":
        """Return a copy with extra headers merged over the existing ones."""
        merged = dict(self.headers)
        merged.update(headers)
        return dc_replace(self, headers=merged)


@dataclass(frozen=True)
class Timing:
    """Wall time of a call, in seconds on the client's clock."""
    start: float
    end: float
    duration: float

    @property
    def duration_ms(self) -> float:
        return self.duration * 1000.0


@dataclass(frozen=True)
class APIResponse(Generic[T]):
    """Response returned to the caller. Never mutated by the client afterwards."""
    data: T
    status: int
    reason: str
    headers: Dict[str, str]
    request: APIRequest
    timing: Timing
    cached: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def replace(self, **changes: Any) -> "APIResponse[T]":
        return dc_replace(self, **changes)


class RequestSchema(BaseModel):
    """Shape checks applied to every request before it is dispatched."""
    method: HTTPMethod
    url: str = Field(..., min_length=1)
    headers: Dict[str, str] = Field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    data: Any = None
    timeout: Optional[float] = Field(None, gt=0)
    retries: Optional[int] = Field(None, ge=0)
    cache: Optional[bool] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("url")
    @classmethod
    def _no_blank_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("url must not be blank")
        return value


def validate_request(request: APIRequest) -> APIRequest:
    """
    Validate a request, raising ValidationError on bad shape.

    Returns the request unchanged so the call reads as a pipeline step.
    """
    try:
        RequestSchema(
            method=request.method,
            url=request.url,
            headers=request.headers,
            params=request.params,
            data=request.data,
            timeout=request.timeout,
            retries=request.retries,
            cache=request.cache,
            metadata=request.metadata,
        )
    except PydanticValidationError as e:
        errors: List[Dict[str, Any]] = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(
            f"Invalid request: {errors[0]['field']}: {errors[0]['message']}",
            request=request,
            details={"errors": errors},
        ) from e
    return request
