"""Bearer token verification against the Auth0 tenant's signing keys."""

from typing import Dict, List, Optional, Union
import logging

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt
from jose.exceptions import JWTError
import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from stageflow.core.config import settings
from stageflow.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)


class SigningKeyCache:
    """
    Signing keys published at the tenant's JWKS endpoint, indexed by key ID.

    The key set is fetched on first use. A token signed with a key ID that is
    not in the cache triggers one refetch, which picks up rotated keys.
    """

    def __init__(self, domain: str):
        self.jwks_uri = f"https://{domain}/.well-known/jwks.json"
        self._keys: Dict[str, Dict] = {}

    async def _refresh(self) -> None:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(self.jwks_uri)
            response.raise_for_status()
        self._keys = {key["kid"]: key for key in response.json().get("keys", []) if "kid" in key}
        logger.info(f"Loaded {len(self._keys)} signing keys from {self.jwks_uri}")

    async def key_for(self, kid: str) -> Dict:
        if kid not in self._keys:
            await self._refresh()
        try:
            return self._keys[kid]
        except KeyError:
            raise UnauthorizedError("Token signed with an unknown key")


class TokenPayload(BaseModel):
    """Claims of a verified access token."""
    model_config = ConfigDict(extra="allow")

    sub: str
    permissions: Optional[List[str]] = []
    iss: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    exp: Optional[int] = None


class TokenVerifier:
    def __init__(self, domain: str = None):
        self.keys = SigningKeyCache(domain or settings.AUTH0_DOMAIN)

    async def verify(self, token: str) -> Dict:
        """Check the signature, audience, issuer and expiry of ``token``."""
        try:
            kid = jwt.get_unverified_header(token).get("kid")
            if not kid:
                raise UnauthorizedError("Token header has no key ID")

            return jwt.decode(
                token,
                await self.keys.key_for(kid),
                algorithms=settings.AUTH0_ALGORITHMS,
                audience=settings.AUTH0_AUDIENCE,
                issuer=settings.AUTH0_ISSUER,
            )
        except JWTError as e:
            raise UnauthorizedError(f"Invalid token: {e}")
        except httpx.HTTPError:
            logger.error(f"Could not fetch signing keys from {self.keys.jwks_uri}", exc_info=True)
            raise UnauthorizedError("Unable to fetch signing keys")


token_verifier = TokenVerifier()


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False)),
) -> TokenPayload:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthorizedError("Missing bearer token")

    claims = await token_verifier.verify(credentials.credentials)

    try:
        return TokenPayload(**claims)
    except ValidationError as e:
        raise UnauthorizedError(f"Token claims are malformed: {e}")
