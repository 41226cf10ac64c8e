"""
Identity resolution for rate limiting and persistence.

Token validity is decided by a TokenVerifier; this module only maps the
request headers onto one or more rate-limit identities.
"""

from typing import Dict, List, Optional, Protocol

from rate_limit import Identity


class Unauthorized(Exception):
    """Missing or invalid identity."""


class TokenVerifier(Protocol):
    def verify(self, token: str) -> Optional[str]: ...


class StaticTokenVerifier:
    """{token: user_id} table, usually built from the API_TOKENS setting."""

    def __init__(self, tokens: Dict[str, str]):
        self.tokens = dict(tokens)

    def verify(self, token: str) -> Optional[str]:
        return self.tokens.get(token)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization is None:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Authorization header must be 'Bearer <token>'")
    return token.strip()


def resolve_identities(
    authorization: Optional[str],
    device_id: Optional[str],
    verifier: TokenVerifier,
    allow_device_identity: bool = True,
) -> List[Identity]:
    """
    - bearer present and valid  -> user identity (+ device identity if sent)
    - bearer present but invalid -> Unauthorized
    - no bearer, device id sent and allowed -> device identity
    - otherwise -> Unauthorized
    """
    token = _bearer_token(authorization)
    device = device_id.strip() if device_id and device_id.strip() else None

    if token is not None:
        user_id = verifier.verify(token)
        if not user_id:
            raise Unauthorized("Invalid bearer token")
        identities = [Identity("user", user_id)]
        if device:
            identities.append(Identity("device", device))
        return identities

    if device and allow_device_identity:
        return [Identity("device", device)]

    raise Unauthorized("Missing identity: send a bearer token or X-Device-Id header")


def user_id_of(identities: List[Identity]) -> Optional[str]:
    for identity in identities:
        if identity.namespace == "user":
            return identity.value
    return None
