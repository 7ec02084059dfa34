from typing import Any, Dict

from .docker import DockerProvider


class LocalProvider(DockerProvider):
    """Runs bot containers on the control-plane host's own docker engine."""

    provider_type = "local"
    display_name = "Local Docker"

    def initialize(self, config: Dict[str, Any]) -> None:
        config = dict(config or {})
        config.pop("dockerHost", None)
        config.pop("docker_host", None)
        config.setdefault("host", "127.0.0.1")
        super().initialize(config)
        self.region = "local"
