from leadhub.platform.security.context import CallerIdentity
from leadhub.platform.security.legacy import LegacyAdminEmailShim
from leadhub.platform.security.policies import AccessPolicy, Action, PolicyDecision, Role, VisibilityFilter
from leadhub.platform.security.session import (
    ClaimsProfileLookup,
    InMemoryProfileLookup,
    Profile,
    ProfileLookup,
    SessionProvider,
)

__all__ = [
    "AccessPolicy",
    "Action",
    "CallerIdentity",
    "ClaimsProfileLookup",
    "InMemoryProfileLookup",
    "LegacyAdminEmailShim",
    "PolicyDecision",
    "Profile",
    "ProfileLookup",
    "Role",
    "SessionProvider",
    "VisibilityFilter",
]
