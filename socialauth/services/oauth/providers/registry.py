from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache

import httpx

from socialauth.services.oauth.errors import ConfigurationError
from socialauth.services.oauth.providers.base import ProviderAdapter, ProviderCredentials
from socialauth.services.oauth.providers.dingtalk import DingTalkAdapter
from socialauth.services.oauth.providers.feishu import FeishuAdapter
from socialauth.services.oauth.providers.gitee import GiteeAdapter
from socialauth.services.oauth.providers.github import GitHubAdapter
from socialauth.services.oauth.providers.qq import QQAdapter
from socialauth.services.oauth.providers.wechat import WeChatAdapter

BUILTIN_ADAPTERS: tuple[type[ProviderAdapter], ...] = (
    DingTalkAdapter,
    GitHubAdapter,
    GiteeAdapter,
    FeishuAdapter,
    WeChatAdapter,
    QQAdapter,
)


@dataclass(frozen=True)
class ProviderInfo:
    name: str
    display_name: str
    default_scopes: list[str]
    supports_refresh: bool


class ProviderRegistry:
    def __init__(self, adapters: Iterable[type[ProviderAdapter]]) -> None:
        self._adapters: dict[str, type[ProviderAdapter]] = {}
        for adapter_cls in adapters:
            if adapter_cls.name in self._adapters:
                raise ValueError(f"Duplicate OAuth adapter for provider {adapter_cls.name!r}")
            self._adapters[adapter_cls.name] = adapter_cls

    def names(self) -> list[str]:
        return list(self._adapters)

    def is_registered(self, name: str) -> bool:
        return name in self._adapters

    def adapter_class(self, name: str) -> type[ProviderAdapter]:
        adapter_cls = self._adapters.get(name)
        if adapter_cls is None:
            raise ConfigurationError(
                f"Unknown OAuth provider: {name}",
                provider=name,
                context={"registered": self.names()},
            )
        return adapter_cls

    def describe(self, name: str) -> ProviderInfo:
        adapter_cls = self.adapter_class(name)
        return ProviderInfo(
            name=adapter_cls.name,
            display_name=adapter_cls.display_name,
            default_scopes=list(adapter_cls.default_scopes),
            supports_refresh=adapter_cls.refresh_supported,
        )

    def create(
        self, name: str, *, credentials: ProviderCredentials, client: httpx.Client
    ) -> ProviderAdapter:
        return self.adapter_class(name)(credentials=credentials, client=client)

    def with_adapters(self, *adapters: type[ProviderAdapter]) -> ProviderRegistry:
        return ProviderRegistry([*self._adapters.values(), *adapters])


@lru_cache(maxsize=1)
def get_provider_registry() -> ProviderRegistry:
    return ProviderRegistry(BUILTIN_ADAPTERS)
