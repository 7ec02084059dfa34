from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..provider_utils import (
    DEFAULT_RETRY_CONFIG,
    ProviderError,
    ProviderErrorType,
    RetryConfig,
    call_provider,
    is_not_found,
)


class ContainerStatus:
    CREATING = "CREATING"
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    DELETING = "DELETING"
    DEGRADED = "DEGRADED"
    ERROR = "ERROR"


class ContainerHealth:
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    UNKNOWN = "UNKNOWN"


@dataclass
class ContainerDeploymentConfig:
    name: str
    image: str
    cpu: float = 1.0
    memory: int = 2048
    replicas: int = 1
    command: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    ports: List[int] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    def merged(self, overrides: Dict[str, Any]) -> "ContainerDeploymentConfig":
        data = asdict(self)
        data.update({k: v for k, v in (overrides or {}).items() if k in data and v is not None})
        return ContainerDeploymentConfig(**data)


@dataclass
class ContainerInstance:
    id: str
    name: str
    status: str
    health: str = ContainerHealth.UNKNOWN
    provider: str = ""
    region: str = ""
    endpoint: Optional[str] = None
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class BootstrapOptions:
    workspace: str
    region: str = ""
    create_vpc: bool = True
    vpc_id: Optional[str] = None
    subnet_ids: List[str] = field(default_factory=list)
    enable_logging: bool = True
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class CloudResources:
    provider: str
    region: str
    network: Dict[str, Any] = field(default_factory=dict)
    iam: Dict[str, Any] = field(default_factory=dict)
    logging: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ContainerFilters:
    status: Optional[str] = None
    workspace: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class LogOptions:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = 100
    next_token: Optional[str] = None


@dataclass
class LogEvent:
    timestamp: datetime
    message: str
    stream: str = "stdout"


@dataclass
class LogResult:
    events: List[LogEvent] = field(default_factory=list)
    next_token: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


ProgressCallback = Callable[[str, str], None]


class BaseProvider:
    """Lifecycle contract shared by every deployment backend.

    Implementations wrap remote calls with ``self._call`` so transient errors
    are retried and everything else surfaces as a ``ProviderError``. Deletes
    and stops must tolerate resources that are already gone.
    """

    provider_type = ""
    display_name = ""
    retry_config: RetryConfig = DEFAULT_RETRY_CONFIG

    def __init__(self):
        self.config: Dict[str, Any] = {}
        self.workspace = "default"
        self.region = ""

    def initialize(self, config: Dict[str, Any]) -> None:
        self.config = dict(config or {})
        self.workspace = str(self.config.get("workspace") or "default")
        self.region = str(self.config.get("region") or self.region or "")

    def _call(self, operation: Callable[[], Any]) -> Any:
        return call_provider(operation, self.display_name or self.provider_type, self.retry_config)

    def _call_ignoring_missing(self, operation: Callable[[], Any]) -> bool:
        """Returns False when the provider reports the resource as already gone."""
        try:
            self._call(operation)
        except ProviderError as exc:
            if exc.error_type == ProviderErrorType.NOT_FOUND or (exc.original and is_not_found(exc.original)):
                return False
            raise
        return True

    def validate(self) -> ValidationResult:
        raise NotImplementedError

    def bootstrap(self, options: BootstrapOptions, on_progress: Optional[ProgressCallback] = None) -> CloudResources:
        raise NotImplementedError

    def deploy_container(self, config: ContainerDeploymentConfig, manifest: Dict[str, Any]) -> ContainerInstance:
        raise NotImplementedError

    def update_container(self, container_id: str, config: ContainerDeploymentConfig) -> ContainerInstance:
        raise NotImplementedError

    def start_container(self, container_id: str) -> None:
        raise NotImplementedError

    def stop_container(self, container_id: str) -> None:
        raise NotImplementedError

    def delete_container(self, container_id: str) -> None:
        raise NotImplementedError

    def get_container(self, container_id: str) -> Optional[ContainerInstance]:
        raise NotImplementedError

    def list_containers(self, filters: Optional[ContainerFilters] = None) -> List[ContainerInstance]:
        raise NotImplementedError

    def get_logs(self, container_id: str, options: Optional[LogOptions] = None) -> LogResult:
        raise NotImplementedError

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        raise NotImplementedError

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        raise NotImplementedError

    def delete_secret(self, instance_id: str, key: str) -> None:
        raise NotImplementedError

    def get_console_url(self, resource_type: str = "", resource_id: str = "") -> str:
        return ""

    def resource_labels(self, config: ContainerDeploymentConfig) -> Dict[str, str]:
        labels = dict(config.labels or {})
        labels.update(
            {
                "managed-by": "clawster",
                "workspace": self.workspace,
                "instance": config.name,
            }
        )
        return labels


def report(on_progress: Optional[ProgressCallback], step: str, message: str) -> None:
    if on_progress:
        on_progress(step, message)
