from __future__ import annotations

import enum


class InvalidTransitionError(ValueError):
    def __init__(self, *, kind: str, current: str, target: str) -> None:
        super().__init__(f"Illegal {kind} transition: {current} -> {target}")
        self.kind = kind
        self.current = current
        self.target = target


class OAuthProvider(enum.StrEnum):
    github = "github"
    gitee = "gitee"
    qq = "qq"
    wechat = "wechat"
    dingtalk = "dingtalk"
    feishu = "feishu"


class StateIntent(enum.StrEnum):
    login = "login"
    bind = "bind"


class OAuthStateStatus(enum.StrEnum):
    valid = "valid"
    used = "used"
    expired = "expired"

    def can_transition_to(self, target: OAuthStateStatus) -> bool:
        return target in _STATE_TRANSITIONS[self]

    def ensure_transition(self, target: OAuthStateStatus) -> OAuthStateStatus:
        if not self.can_transition_to(target):
            raise InvalidTransitionError(kind="oauth_state", current=self.value, target=target.value)
        return target


class BindingStatus(enum.StrEnum):
    normal = "normal"
    disabled = "disabled"

    def can_transition_to(self, target: BindingStatus) -> bool:
        return target in _BINDING_TRANSITIONS[self]

    def ensure_transition(self, target: BindingStatus) -> BindingStatus:
        if not self.can_transition_to(target):
            raise InvalidTransitionError(kind="binding", current=self.value, target=target.value)
        return target


class ProviderStatus(enum.StrEnum):
    active = "active"
    deleted = "deleted"

    def can_transition_to(self, target: ProviderStatus) -> bool:
        return target in _PROVIDER_TRANSITIONS[self]

    def ensure_transition(self, target: ProviderStatus) -> ProviderStatus:
        if not self.can_transition_to(target):
            raise InvalidTransitionError(kind="provider", current=self.value, target=target.value)
        return target


class RefreshOutcome(enum.StrEnum):
    refreshed = "refreshed"
    unsupported = "unsupported"
    skipped = "skipped"
    failed = "failed"


class BindingBatchAction(enum.StrEnum):
    unbind = "unbind"
    activate = "activate"
    deactivate = "deactivate"


# used and expired are terminal.
_STATE_TRANSITIONS: dict[OAuthStateStatus, frozenset[OAuthStateStatus]] = {
    OAuthStateStatus.valid: frozenset({OAuthStateStatus.used, OAuthStateStatus.expired}),
    OAuthStateStatus.used: frozenset(),
    OAuthStateStatus.expired: frozenset(),
}

_BINDING_TRANSITIONS: dict[BindingStatus, frozenset[BindingStatus]] = {
    BindingStatus.normal: frozenset({BindingStatus.disabled}),
    BindingStatus.disabled: frozenset({BindingStatus.normal}),
}

_PROVIDER_TRANSITIONS: dict[ProviderStatus, frozenset[ProviderStatus]] = {
    ProviderStatus.active: frozenset({ProviderStatus.deleted}),
    ProviderStatus.deleted: frozenset(),
}
