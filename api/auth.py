"""
Authentication Strategies
-------------------------
One variant per supported scheme. The executor dispatches on the
variant type; each variant only knows how to produce headers.

    auth = BearerAuth(token=os.environ["OPENAI_API_KEY"])
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Optional, Protocol, Union, runtime_checkable
import base64

from api.oauth2 import OAuth2Config, OAuth2TokenManager

if TYPE_CHECKING:
    from api.models import APIRequest


@runtime_checkable
class Authenticator(Protocol):
    """Capability used by CustomAuth: returns headers to add to a request."""

    async def authenticate(self, request: "APIRequest") -> Dict[str, str]: ...


@dataclass(frozen=True)
class NoAuth:
    pass


@dataclass(frozen=True)
class BearerAuth:
    token: str = field(repr=False)


@dataclass(frozen=True)
class BasicAuth:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class ApiKeyAuth:
    api_key: str = field(repr=False)
    header_name: str = "X-API-Key"


@dataclass(frozen=True)
class OAuth2Auth:
    config: OAuth2Config


@dataclass(frozen=True)
class CustomAuth:
    authenticator: Authenticator


AuthStrategy = Union[NoAuth, BearerAuth, BasicAuth, ApiKeyAuth, OAuth2Auth, CustomAuth]


async def auth_headers(
    auth: AuthStrategy,
    request: "APIRequest",
    tokens: Optional[OAuth2TokenManager] = None,
) -> Dict[str, str]:
    """
    Headers contributed by an authentication strategy.

    OAuth2 may suspend on a token fetch; TokenFetchError propagates.
    """
    if isinstance(auth, NoAuth):
        return {}

    if isinstance(auth, BearerAuth):
        return {"Authorization": f"Bearer {auth.token}"}

    if isinstance(auth, BasicAuth):
        credentials = base64.b64encode(f"{auth.username}:{auth.password}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {credentials}"}

    if isinstance(auth, ApiKeyAuth):
        return {auth.header_name: auth.api_key}

    if isinstance(auth, OAuth2Auth):
        if tokens is None:
            raise RuntimeError("OAuth2Auth requires an OAuth2TokenManager")
        token = await tokens.get_access_token(auth.config)
        return {"Authorization": f"Bearer {token}"}

    if isinstance(auth, CustomAuth):
        return dict(await auth.authenticator.authenticate(request))

    raise TypeError(f"Unknown authentication strategy: {type(auth).__name__}")
