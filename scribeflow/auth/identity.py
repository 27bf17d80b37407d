import logging
import os
import time
from typing import List, Mapping, Optional, Protocol

import jwt
import requests

from ..errors import IdentityError
from ..security.classifier import SecurityLevel
from ..security.context import RequesterContext

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    def resolve(self, token: str) -> RequesterContext:
        """Return the requester behind ``token``."""


class IdentityConfig:
    def __init__(
        self,
        jwks_url: str,
        audience: str = "",
        issuer: str = "",
        leeway: int = 0,
        org_claim: str = "org_id",
        clearance_claim: str = "clearance",
        default_clearance: SecurityLevel = SecurityLevel.INTERNAL,
        jwks_ttl: float = 300,
    ) -> None:
        self.jwks_url = jwks_url
        self.audience = audience
        self.issuer = issuer
        self.leeway = leeway
        self.org_claim = org_claim
        self.clearance_claim = clearance_claim
        self.default_clearance = default_clearance
        self.jwks_ttl = jwks_ttl

    @classmethod
    def from_env(cls) -> "IdentityConfig":
        return cls(
            jwks_url=os.getenv("SCRIBEFLOW_JWKS_URL", ""),
            audience=os.getenv("SCRIBEFLOW_JWT_AUDIENCE", ""),
            issuer=os.getenv("SCRIBEFLOW_JWT_ISSUER", ""),
            leeway=int(os.getenv("SCRIBEFLOW_JWT_LEEWAY", "30")),
            org_claim=os.getenv("SCRIBEFLOW_ORG_CLAIM", "org_id"),
            clearance_claim=os.getenv("SCRIBEFLOW_CLEARANCE_CLAIM", "clearance"),
        )


class JWTIdentityProvider:
    """Resolves RS256 bearer tokens against a cached JWKS."""

    def __init__(self, config: Optional[IdentityConfig] = None) -> None:
        self.config = config or IdentityConfig.from_env()
        self._jwks_cache: List[Mapping] = []
        self._last_fetch: float = 0

    def _fetch_jwks(self) -> None:
        resp = requests.get(self.config.jwks_url, timeout=5)
        resp.raise_for_status()
        self._jwks_cache = resp.json().get("keys", [])
        self._last_fetch = time.time()

    def verify_token(self, token: str) -> Mapping:
        """Validate JWT using configured JWKS."""
        now = time.time()
        if not self._jwks_cache or now - self._last_fetch > self.config.jwks_ttl:
            self._fetch_jwks()

        header = jwt.get_unverified_header(token)
        for key in self._jwks_cache:
            if key.get("kid") == header.get("kid"):
                return jwt.decode(
                    token,
                    jwt.algorithms.RSAAlgorithm.from_jwk(key),
                    audience=self.config.audience or None,
                    issuer=self.config.issuer or None,
                    leeway=self.config.leeway,
                    algorithms=["RS256"],
                    options={"verify_aud": bool(self.config.audience)},
                )
        raise jwt.exceptions.InvalidSignatureError("No matching JWK found.")

    def resolve(self, token: str) -> RequesterContext:
        try:
            claims = self.verify_token(token)
        except (jwt.PyJWTError, requests.RequestException) as exc:
            raise IdentityError(f"Invalid bearer token: {exc}") from exc

        subject = claims.get("sub")
        org_id = claims.get(self.config.org_claim)
        if not subject or not org_id:
            raise IdentityError(
                f"Token lacks required claims 'sub' and {self.config.org_claim!r}"
            )
        raw_clearance = claims.get(self.config.clearance_claim)
        if raw_clearance is None:
            clearance = self.config.default_clearance
        else:
            try:
                clearance = SecurityLevel(str(raw_clearance).strip().lower())
            except ValueError:
                # An unreadable clearance must never widen access.
                logger.warning(f"Unrecognised clearance {raw_clearance!r} for {subject}; using public")
                clearance = SecurityLevel.PUBLIC
        logger.debug(f"Resolved requester {subject} in org {org_id}")
        return RequesterContext(requester_id=subject, org_id=org_id, clearance=clearance)
