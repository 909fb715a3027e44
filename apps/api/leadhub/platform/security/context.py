from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True, frozen=True)
class CallerIdentity:
    """Who is calling, as resolved by the session provider.

    Never persisted. ``owned_brand_ids`` only matters for ``brand_admin``;
    administrators are scoped through configuration instead.
    """

    user_id: str
    role: str
    owned_brand_ids: frozenset[str] = field(default_factory=frozenset)
    email: str | None = None
    correlation_id: str | None = None

    @classmethod
    def deny_all(cls, correlation_id: str | None = None) -> CallerIdentity:
        return cls(user_id="anonymous", role="user", correlation_id=correlation_id)

    @property
    def is_anonymous(self) -> bool:
        return self.user_id == "anonymous"
