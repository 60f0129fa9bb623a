# auth.py
import logging
import time
from typing import Any, Sequence

from jose import JWTError, jwt

from errors import InvalidCredential, MissingCredential

logger = logging.getLogger(__name__)

_BEARER_PREFIX = "Bearer "


def _claim_time(claims: dict[str, Any], name: str) -> float | None:
    value = claims.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        logger.warning("JWT '%s' claim is not numeric", name)
        raise InvalidCredential()
    return float(value)


def verify_bearer(
    authorization: str | None,
    secret: str,
    now: float | None = None,
    *,
    algorithms: Sequence[str] = ("HS256",),
    audience: str | None = None,
    issuer: str | None = None,
    leeway: int = 0,
) -> dict[str, Any]:
    """Verify an ``Authorization: Bearer <jwt>`` value and return its claims.

    Raises MissingCredential when the header is absent or not a bearer value,
    InvalidCredential when the token is malformed, badly signed, expired or
    not yet valid. Expiry is judged against ``now`` (defaults to the wall clock).
    """
    if not authorization or not authorization.startswith(_BEARER_PREFIX):
        raise MissingCredential()

    token = authorization[len(_BEARER_PREFIX):]
    if not token:
        raise MissingCredential()

    if now is None:
        now = time.time()

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=list(algorithms),
            audience=audience,
            issuer=issuer,
            # exp/nbf are checked below against the injected clock.
            options={
                "verify_exp": False,
                "verify_nbf": False,
                "verify_aud": audience is not None,
            },
        )
    except JWTError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise InvalidCredential()

    exp = _claim_time(claims, "exp")
    if exp is not None and exp + leeway <= now:
        logger.warning("JWT expired for sub=%s", claims.get("sub"))
        raise InvalidCredential()

    nbf = _claim_time(claims, "nbf")
    if nbf is not None and nbf - leeway > now:
        logger.warning("JWT not yet valid for sub=%s", claims.get("sub"))
        raise InvalidCredential()

    return claims


class CredentialVerifier:
    def __init__(
        self,
        secret: str,
        algorithms: Sequence[str] = ("HS256",),
        audience: str | None = None,
        issuer: str | None = None,
        leeway: int = 0,
    ) -> None:
        self._secret = secret
        self.algorithms = tuple(algorithms)
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway

    def verify(self, authorization: str | None, now: float | None = None) -> dict[str, Any]:
        return verify_bearer(
            authorization,
            self._secret,
            now,
            algorithms=self.algorithms,
            audience=self.audience,
            issuer=self.issuer,
            leeway=self.leeway,
        )
