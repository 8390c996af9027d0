from __future__ import annotations

from socialauth.models.audit import AuditEvent  # noqa: F401
from socialauth.models.auth import AuthSession  # noqa: F401
from socialauth.models.base import Base as Base  # noqa: F401
from socialauth.models.enums import (  # noqa: F401
    BindingBatchAction,
    BindingStatus,
    OAuthProvider,
    OAuthStateStatus,
    ProviderStatus,
    RefreshOutcome,
    StateIntent,
)
from socialauth.models.identity import User  # noqa: F401
from socialauth.models.oauth import OAuthAccount, OAuthState, ProviderConfig  # noqa: F401
