"""
kubeplane/clouds/registry.py

Provider id -> adapter factory. Built once at startup and injected.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

from kubeplane.clouds.base import CloudProvider
from kubeplane.errors import InvalidRequestError
from kubeplane.models.account import CloudAccount
from kubeplane.models.providers import ProviderName

ProviderFactory = Callable[[CloudAccount], CloudProvider]


class ProviderRegistry:
    def __init__(self, factories: Optional[Dict[ProviderName, ProviderFactory]] = None) -> None:
        self._factories: Dict[ProviderName, ProviderFactory] = dict(factories or {})

    def register(self, name: ProviderName, factory: ProviderFactory) -> None:
        self._factories[name] = factory

    def names(self) -> List[ProviderName]:
        return list(self._factories)

    def supports(self, name: ProviderName) -> bool:
        return name in self._factories

    def build(self, account: CloudAccount) -> CloudProvider:
        if account.provider not in self._factories:
            raise InvalidRequestError(f"Unsupported provider: {account.provider.value}")
        return self._factories[account.provider](account)


def default_registry() -> ProviderRegistry:
    from kubeplane.clouds.aws import AWSProvider
    from kubeplane.clouds.digitalocean import DigitalOceanProvider

    return ProviderRegistry(
        {
            ProviderName.digitalocean: DigitalOceanProvider.from_account,
            ProviderName.aws: AWSProvider.from_account,
        }
    )
