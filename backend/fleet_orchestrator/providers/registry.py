from typing import Callable, Dict, Optional

from ..models import BotInstance
from ..targets import resolve_target
from .base import BaseProvider
from .docker import DockerProvider
from .local import LocalProvider


def _ecs_provider() -> BaseProvider:
    from .ecs_ec2 import EcsEc2Provider

    return EcsEc2Provider()


def _gce_provider() -> BaseProvider:
    from .gce import GceProvider

    return GceProvider()


def _azure_provider() -> BaseProvider:
    from .azure_vm import AzureVmProvider

    return AzureVmProvider()


class ProviderRegistry:
    def __init__(self, factories: Optional[Dict[str, Callable[[], BaseProvider]]] = None):
        self._factories: Dict[str, Callable[[], BaseProvider]] = {
            "LOCAL": LocalProvider,
            "DOCKER": DockerProvider,
            "ECS_EC2": _ecs_provider,
            "GCE": _gce_provider,
            "AZURE_VM": _azure_provider,
        }
        if factories:
            self._factories.update(factories)

    def register(self, deployment_type: str, factory: Callable[[], BaseProvider]) -> None:
        self._factories[deployment_type] = factory

    def resolve(self, deployment_type: Optional[str]) -> BaseProvider:
        if not deployment_type:
            return self._factories["LOCAL"]()
        key = str(deployment_type).strip().upper().replace("-", "_")
        factory = self._factories.get(key)
        if factory is None:
            factory = self._factories["LOCAL"]
        return factory()

    def get_provider(self, instance: BotInstance) -> BaseProvider:
        target = resolve_target(instance)
        provider = self.resolve(target.deployment_type)
        provider.initialize(target.config)
        return provider


registry = ProviderRegistry()
