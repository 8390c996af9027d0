from __future__ import annotations

from typing import Any


class OAuthError(RuntimeError):
    """Base for every failure the OAuth core reports.

    ``public_message`` is safe to show to end users. ``context`` carries the
    diagnostic detail (provider codes, owner ids, causes) for logs and admins.
    """

    default_public_message = "OAuth request failed"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        public_message: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.public_message = public_message or self.default_public_message
        self.context = dict(context or {})

    def diagnostics(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "provider": self.provider,
            **self.context,
        }


class ConfigurationError(OAuthError):
    default_public_message = "OAuth provider is not available"


class StateError(OAuthError):
    default_public_message = "Invalid or expired OAuth state"


class RateLimitError(OAuthError):
    default_public_message = "Too many OAuth requests, please try again later"

    def __init__(self, message: str, *, retry_after_seconds: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds


class AdapterError(OAuthError):
    default_public_message = "Identity provider request failed"

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        cause: BaseException | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, provider=provider, **kwargs)
        self.status_code = status_code
        self.cause = cause


class FlowError(OAuthError):
    default_public_message = "OAuth sign-in could not be completed"

    @classmethod
    def from_adapter_error(cls, error: AdapterError, *, stage: str) -> FlowError:
        context = {**error.context, "stage": stage}
        if error.status_code is not None:
            context["status_code"] = error.status_code
        flow_error = cls(
            f"{stage} failed: {error.message}",
            provider=error.provider,
            public_message=error.public_message,
            context=context,
        )
        flow_error.__cause__ = error
        return flow_error

    @property
    def caused_by_provider(self) -> bool:
        return isinstance(self.__cause__, AdapterError)


class BindingConflictError(FlowError):
    default_public_message = "This account is already linked to another user"


class AccountNotBoundError(FlowError):
    default_public_message = (
        "No account found for this OAuth provider. "
        "Please register first or bind your account."
    )
