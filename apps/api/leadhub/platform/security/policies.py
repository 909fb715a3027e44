from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from leadhub import audit
from leadhub.errors import NotFound, Unauthorized
from leadhub.metrics import observe_policy_denial
from leadhub.platform.security.context import CallerIdentity


logger = logging.getLogger("leadhub.security")


class Role(StrEnum):
    USER = "user"
    BRAND_ADMIN = "brand_admin"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class Action(StrEnum):
    READ = "read"
    LIST = "list"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REPLY = "reply"


@dataclass(slots=True, frozen=True)
class VisibilityFilter:
    """Record predicate derived from a caller identity.

    ``brand_ids`` is ``None`` for unrestricted callers and a (possibly empty)
    frozenset otherwise, so stores can push the scope into SQL.
    """

    brand_ids: frozenset[str] | None

    @classmethod
    def unrestricted(cls) -> VisibilityFilter:
        return cls(brand_ids=None)

    @classmethod
    def nothing(cls) -> VisibilityFilter:
        return cls(brand_ids=frozenset())

    @property
    def is_unrestricted(self) -> bool:
        return self.brand_ids is None

    @property
    def matches_nothing(self) -> bool:
        return self.brand_ids is not None and not self.brand_ids

    def __call__(self, record: Mapping[str, Any]) -> bool:
        if self.brand_ids is None:
            return True
        brand_id = record.get("brand_id")
        return brand_id is not None and str(brand_id) in self.brand_ids

    def scope_key(self) -> str:
        if self.brand_ids is None:
            return "*"
        return ",".join(sorted(self.brand_ids))


@dataclass(slots=True, frozen=True)
class PolicyDecision:
    allowed: bool
    reason: str | None = None


class AccessPolicy:
    """Role/brand-scope policy evaluator.

    Pure and synchronous. Administrator scopes come from configuration
    (user id to brand ids); brand admins are scoped by ownership.
    """

    def __init__(self, admin_brand_scopes: Mapping[str, Iterable[str]] | None = None) -> None:
        self._admin_brand_scopes = {
            str(user_id): frozenset(str(brand_id) for brand_id in brand_ids)
            for user_id, brand_ids in (admin_brand_scopes or {}).items()
        }

    def visibility_filter(self, identity: CallerIdentity) -> VisibilityFilter:
        role = identity.role
        if role == Role.SUPER_ADMIN:
            return VisibilityFilter.unrestricted()
        if role == Role.BRAND_ADMIN:
            return VisibilityFilter(brand_ids=frozenset(identity.owned_brand_ids))
        if role == Role.ADMIN:
            return VisibilityFilter(brand_ids=self._admin_brand_scopes.get(identity.user_id, frozenset()))
        return VisibilityFilter.nothing()

    def authorize(self, identity: CallerIdentity, action: Action | str, entity: Mapping[str, Any] | None) -> PolicyDecision:
        role = identity.role
        if role == Role.SUPER_ADMIN:
            return PolicyDecision(allowed=True)
        if role not in {Role.BRAND_ADMIN, Role.ADMIN}:
            return PolicyDecision(allowed=False, reason=f"role '{role}' has no access")

        if entity is None:
            return PolicyDecision(allowed=True)
        if not self.visibility_filter(identity)(entity):
            return PolicyDecision(allowed=False, reason="record outside brand scope")
        return PolicyDecision(allowed=True)

    def require(
        self,
        identity: CallerIdentity,
        action: Action | str,
        entity: Mapping[str, Any] | None,
        *,
        entity_type: str,
        conceal: bool = True,
    ) -> None:
        """Raise unless ``authorize`` allows the action.

        Denials against an existing record raise :class:`NotFound` so callers
        cannot discover records outside their scope; pass ``conceal=False``
        where no record exists yet (creation).
        """
        decision = self.authorize(identity, action, entity)
        if decision.allowed:
            return

        action_value = str(action)
        observe_policy_denial(entity_type=entity_type, action=action_value, role=identity.role)
        entity_id = str(entity.get("id")) if entity is not None else "*"
        logger.info(
            "policy.denied",
            extra={"entity_type": entity_type, "entity_id": entity_id, "outcome": decision.reason},
        )
        audit.record(
            actor_user_id=identity.user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=f"denied.{action_value}",
            before=None,
            after=None,
            correlation_id=identity.correlation_id,
        )
        if entity is not None and conceal:
            raise NotFound(f"{entity_type} not found")
        raise Unauthorized(decision.reason or "not authorized")
