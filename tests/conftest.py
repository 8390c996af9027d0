from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, ClassVar

import httpx
import pytest
from alembic.config import Config
from sqlalchemy.orm import Session

from alembic import command

# Valid AES-256 key (32 bytes of "0"), test-only.
TEST_ENCRYPTION_KEY = "MDAw" * 10 + "MDA="


@pytest.fixture(scope="session", autouse=True)
def _test_database(tmp_path_factory: pytest.TempPathFactory) -> Generator[None, None, None]:
    db_path = tmp_path_factory.mktemp("db") / "socialauth_test.sqlite3"
    os.environ["DATABASE_URL"] = f"sqlite+pysqlite:///{db_path}"
    os.environ.setdefault("APP_ENV", "test")
    os.environ.setdefault("ALLOW_DEV_LOGIN", "true")
    os.environ.setdefault("COOKIE_SECURE", "false")
    os.environ["ENCRYPTION_KEY_BASE64"] = TEST_ENCRYPTION_KEY
    os.environ["RATE_LIMIT_REQUESTS_PER_MINUTE"] = "0"
    os.environ.setdefault("FRONTEND_URL", "http://frontend.test")

    # Clear cached settings/engines so imports inside the test session use the test DB.
    from socialauth.core.config import get_settings
    from socialauth.db.session import get_engine, get_sessionmaker
    from socialauth.services.oauth.providers.registry import get_provider_registry

    get_settings.cache_clear()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()
    get_provider_registry.cache_clear()

    alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
    command.upgrade(Config(str(alembic_ini)), "head")

    yield

    with suppress(Exception):
        get_engine().dispose()
    get_engine.cache_clear()
    get_sessionmaker.cache_clear()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clean_tables() -> Generator[None, None, None]:
    yield

    from socialauth.db.session import get_sessionmaker
    from socialauth.models import Base

    session = get_sessionmaker()()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    from socialauth.db.session import get_sessionmaker

    SessionLocal = get_sessionmaker()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@dataclass
class FrozenClock:
    current: datetime

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture()
def clock() -> FrozenClock:
    # Anchored to wall time so cookie sessions minted by flows stay valid.
    return FrozenClock(current=datetime.now(UTC).replace(microsecond=0))


ACME_AUTHORIZE_URL = "https://acme.test/oauth/authorize"
ACME_TOKEN_URL = "https://acme.test/oauth/token"
ACME_USER_URL = "https://acme.test/api/me"


def _acme_adapter_cls() -> type:
    from socialauth.services.oauth.providers.base import (
        NormalizedProfile,
        ProviderCredentials,
        RefreshResult,
        TokenBundle,
        build_url,
        parse_token_bundle,
        raise_for_oauth_error,
        request_json,
        require_identifier,
        resolve_scopes,
    )

    @dataclass(frozen=True)
    class AcmeAdapter:
        credentials: ProviderCredentials
        client: httpx.Client

        name: ClassVar[str] = "acme"
        display_name: ClassVar[str] = "Acme"
        default_scopes: ClassVar[tuple[str, ...]] = ("profile",)
        refresh_supported: ClassVar[bool] = True

        def supports_refresh(self) -> bool:
            return self.refresh_supported

        def build_authorization_url(self, *, state: str, scopes: list[str] | None = None) -> str:
            scope_list = resolve_scopes(
                scopes, credentials=self.credentials, defaults=self.default_scopes
            )
            return build_url(
                ACME_AUTHORIZE_URL,
                {
                    "client_id": self.credentials.client_id,
                    "redirect_uri": self.credentials.redirect_uri,
                    "response_type": "code",
                    "scope": " ".join(scope_list),
                    "state": state,
                },
            )

        def exchange_code(self, code: str) -> TokenBundle:
            return self._token({"grant_type": "authorization_code", "code": code}, "exchange_code")

        def fetch_user_info(self, tokens: TokenBundle) -> NormalizedProfile:
            payload = request_json(
                self.client,
                provider=self.name,
                operation="fetch_user_info",
                method="GET",
                url=ACME_USER_URL,
                headers={"Authorization": f"Bearer {tokens.access_token}"},
            )
            return NormalizedProfile(
                id=require_identifier(payload, ("id",), provider=self.name),
                username=payload.get("login"),
                display_name=payload.get("name"),
                email=payload.get("email"),
                avatar_url=None,
                raw=payload,
            )

        def refresh_token(self, refresh_token: str) -> RefreshResult:
            return RefreshResult.refreshed(
                self._token(
                    {"grant_type": "refresh_token", "refresh_token": refresh_token},
                    "refresh_token",
                )
            )

        def _token(self, data: dict[str, Any], operation: str) -> TokenBundle:
            payload = request_json(
                self.client,
                provider=self.name,
                operation=operation,
                method="POST",
                url=ACME_TOKEN_URL,
                data={**data, "client_id": self.credentials.client_id},
            )
            raise_for_oauth_error(payload, provider=self.name, operation=operation)
            return parse_token_bundle(payload, provider=self.name)

    return AcmeAdapter


@pytest.fixture()
def registry():
    """Built-in adapters plus the "acme" test provider."""
    from socialauth.services.oauth.providers.registry import get_provider_registry

    return get_provider_registry().with_adapters(_acme_adapter_cls())


@pytest.fixture()
def configure_provider(db_session: Session, clock: FrozenClock, registry):
    from socialauth.services.oauth.provider_configs import (
        ProviderConfigInput,
        create_or_update_provider,
    )

    def _configure(
        name: str = "acme",
        *,
        enabled: bool = True,
        scopes: list[str] | None = None,
        extra_config: dict[str, Any] | None = None,
    ):
        config = create_or_update_provider(
            session=db_session,
            clock=clock,
            registry=registry,
            data=ProviderConfigInput(
                name=name,
                client_id=f"{name}-client",
                client_secret=f"{name}-secret",
                redirect_uri=f"http://api.test/oauth/{name}/callback",
                scopes=scopes,
                extra_config=extra_config or {},
                enabled=enabled,
            ),
            actor_user_id=None,
        )
        db_session.commit()
        return config

    return _configure


@pytest.fixture()
def make_user(db_session: Session):
    from socialauth.models.identity import User

    def _make(email: str, *, is_admin: bool = False, is_disabled: bool = False) -> User:
        user = User(email=email, is_admin=is_admin, is_disabled=is_disabled)
        db_session.add(user)
        db_session.commit()
        return user

    return _make
