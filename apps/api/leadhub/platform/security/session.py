from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from jose import JWTError, jwt

from leadhub.platform.security.context import CallerIdentity
from leadhub.platform.security.legacy import LegacyAdminEmailShim
from leadhub.platform.security.policies import Role


logger = logging.getLogger("leadhub.security")

_VALID_ROLES = {role.value for role in Role}


@dataclass(slots=True)
class Profile:
    user_id: str
    role: str
    owned_brand_ids: list[str] = field(default_factory=list)
    email: str | None = None


class ProfileLookup(Protocol):
    """Resolves the persisted profile behind a token subject."""

    def get_profile(self, user_id: str, claims: Mapping[str, Any]) -> Profile | None:
        ...


class ClaimsProfileLookup:
    """Builds the profile from signed token claims (``role``, ``brand_ids``, ``email``)."""

    def get_profile(self, user_id: str, claims: Mapping[str, Any]) -> Profile | None:
        role = claims.get("role")
        if not isinstance(role, str):
            return None
        brand_ids = claims.get("brand_ids") or []
        if not isinstance(brand_ids, list):
            brand_ids = []
        email = claims.get("email")
        return Profile(
            user_id=user_id,
            role=role,
            owned_brand_ids=[str(brand_id) for brand_id in brand_ids],
            email=email if isinstance(email, str) else None,
        )


class InMemoryProfileLookup:
    def __init__(self, profiles: Iterable[Profile] = ()) -> None:
        self._profiles = {profile.user_id: profile for profile in profiles}

    def add(self, profile: Profile) -> None:
        self._profiles[profile.user_id] = profile

    def get_profile(self, user_id: str, claims: Mapping[str, Any]) -> Profile | None:
        return self._profiles.get(user_id)


class SessionProvider:
    """Turns a bearer token into a :class:`CallerIdentity`.

    Any failure (missing or invalid token, profile lookup error, unknown role)
    yields a deny-all identity; this never raises.
    """

    def __init__(
        self,
        *,
        secret: str,
        algorithm: str,
        profiles: ProfileLookup,
        legacy: LegacyAdminEmailShim | None = None,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._profiles = profiles
        self._legacy = legacy

    def identify(self, token: str | None, correlation_id: str | None = None) -> CallerIdentity:
        if not token:
            return CallerIdentity.deny_all(correlation_id)

        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError:
            logger.info("session.token_rejected")
            return CallerIdentity.deny_all(correlation_id)

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            return CallerIdentity.deny_all(correlation_id)

        try:
            profile = self._profiles.get_profile(subject, claims)
        except Exception as exc:
            logger.warning("session.profile_lookup_failed", extra={"entity_id": subject, "error": str(exc)})
            profile = None

        if profile is None:
            email = claims.get("email") if isinstance(claims.get("email"), str) else None
            if self._legacy is not None:
                legacy_identity = self._legacy.resolve(subject, email, correlation_id)
                if legacy_identity is not None:
                    return legacy_identity
            return CallerIdentity.deny_all(correlation_id)

        if profile.role not in _VALID_ROLES:
            logger.warning("session.unknown_role", extra={"entity_id": subject, "outcome": profile.role})
            return CallerIdentity.deny_all(correlation_id)

        return CallerIdentity(
            user_id=profile.user_id,
            role=profile.role,
            owned_brand_ids=frozenset(profile.owned_brand_ids),
            email=profile.email,
            correlation_id=correlation_id,
        )

    def identify_header(self, authorization: str | None, correlation_id: str | None = None) -> CallerIdentity:
        header = authorization or ""
        token = header.replace("Bearer ", "", 1) if header.startswith("Bearer ") else ""
        return self.identify(token, correlation_id)
