"""Legacy e-mail list role fallback.

Migration shim only. Older deployments granted super-admin rights from a
hard-coded list of e-mail addresses; the session provider consults this shim
after the primary profile lookup has failed and nowhere else. Delete once
every administrator has a profile row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from leadhub.platform.cache import TTLCache
from leadhub.platform.security.context import CallerIdentity
from leadhub.platform.security.policies import Role


logger = logging.getLogger("leadhub.security")

_CACHE_KEY = "legacy.super_admin_emails"


class LegacyAdminEmailShim:
    def __init__(
        self,
        loader: Callable[[], Iterable[str]],
        cache: TTLCache[frozenset[str]],
    ) -> None:
        self._loader = loader
        self._cache = cache

    def _emails(self) -> frozenset[str]:
        return self._cache.get_or_load(
            _CACHE_KEY,
            lambda: frozenset(email.strip().lower() for email in self._loader() if email.strip()),
        )

    def is_super_admin_email(self, email: str | None) -> bool:
        if not email:
            return False
        return email.strip().lower() in self._emails()

    def resolve(self, user_id: str, email: str | None, correlation_id: str | None = None) -> CallerIdentity | None:
        if not self.is_super_admin_email(email):
            return None
        logger.warning("legacy_admin_email_fallback_used", extra={"entity_id": user_id})
        return CallerIdentity(
            user_id=user_id,
            role=Role.SUPER_ADMIN.value,
            email=email,
            correlation_id=correlation_id,
        )

    def invalidate(self) -> None:
        self._cache.invalidate(_CACHE_KEY)
