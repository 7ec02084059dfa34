import json
import logging
import os
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..provider_utils import create_or_update, generate_resource_name, sanitize_resource_name
from ..vault.local import LocalVaultStore
from .base import (
    BaseProvider,
    BootstrapOptions,
    CloudResources,
    ContainerDeploymentConfig,
    ContainerFilters,
    ContainerHealth,
    ContainerInstance,
    ContainerStatus,
    LogEvent,
    LogOptions,
    LogResult,
    ValidationResult,
    report,
)

logger = logging.getLogger(__name__)

DOCKER_BIN = os.environ.get("CLAWSTER_DOCKER_BIN", "docker")
DEFAULT_DATA_DIR = os.environ.get("CLAWSTER_DOCKER_DATA_DIR", "/var/lib/clawster")


class DockerCommandError(RuntimeError):
    def __init__(self, args: List[str], returncode: int, stdout: str, stderr: str):
        super().__init__(stderr.strip() or stdout.strip() or f"docker {' '.join(args[:1])} failed")
        self.args_list = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _parse_timestamp(value: str) -> Optional[datetime]:
    if not value or value.startswith("0001-"):
        return None
    text = value.strip().replace("Z", "+00:00")
    # docker reports nanoseconds; fromisoformat only accepts microseconds
    if "." in text:
        head, _, tail = text.partition(".")
        digits = re.match(r"\d*", tail).group(0)
        offset = tail[len(digits):]
        text = f"{head}.{digits[:6].ljust(6, '0')}{offset}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class DockerProvider(BaseProvider):
    provider_type = "docker"
    display_name = "Docker"

    def __init__(self):
        super().__init__()
        self.region = "local"
        self.docker_host = ""
        self.data_dir = Path(DEFAULT_DATA_DIR)
        self.network_name = ""
        self.endpoint_host = "localhost"
        self._vault: Optional[LocalVaultStore] = None

    def initialize(self, config: Dict[str, Any]) -> None:
        super().initialize(config)
        self.region = str(self.config.get("region") or "local")
        self.docker_host = str(self.config.get("dockerHost") or self.config.get("docker_host") or "")
        self.data_dir = Path(str(self.config.get("dataDir") or DEFAULT_DATA_DIR)) / sanitize_resource_name(self.workspace)
        self.network_name = generate_resource_name(self.workspace, "net")
        self.endpoint_host = str(self.config.get("host") or "localhost")

    def _docker(self, args: List[str], *, check: bool = True) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        if self.docker_host:
            env["DOCKER_HOST"] = self.docker_host
        proc = subprocess.run([DOCKER_BIN, *args], capture_output=True, text=True, env=env)
        if check and proc.returncode != 0:
            raise DockerCommandError(args, proc.returncode, proc.stdout or "", proc.stderr or "")
        return proc

    def _run(self, args: List[str]) -> str:
        return self._call(lambda: self._docker(args)).stdout or ""

    @property
    def vault(self) -> LocalVaultStore:
        if self._vault is None:
            self._vault = LocalVaultStore()
        return self._vault

    def validate(self) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        proc = self._docker(["version", "--format", "{{.Server.Version}}"], check=False)
        if proc.returncode != 0:
            errors.append(f"Docker is not available: {(proc.stderr or proc.stdout or '').strip()}")
            return ValidationResult(valid=False, errors=errors, warnings=warnings)
        compose = self._docker(["compose", "version"], check=False)
        if compose.returncode != 0:
            warnings.append("Docker Compose plugin not found. Some features may not work.")
        return ValidationResult(valid=True, errors=errors, warnings=warnings)

    def bootstrap(self, options: BootstrapOptions, on_progress=None) -> CloudResources:
        report(on_progress, "directories", "Creating data directories")
        for sub in ("logs", "data", "secrets"):
            (self.data_dir / sub).mkdir(parents=True, exist_ok=True)

        report(on_progress, "network", f"Ensuring docker network {self.network_name}")
        inspect = self._docker(["network", "inspect", self.network_name], check=False)
        if inspect.returncode != 0:
            self._run(
                [
                    "network",
                    "create",
                    "--label",
                    "managed-by=clawster",
                    "--label",
                    f"workspace={self.workspace}",
                    self.network_name,
                ]
            )
        return CloudResources(
            provider=self.provider_type,
            region=self.region,
            network={"networkName": self.network_name},
            logging={"logDriver": "json-file", "logDir": str(self.data_dir / "logs")},
            metadata={"dataDir": str(self.data_dir)},
        )

    def _secret_path(self, name: str, key: str) -> Path:
        return self.data_dir / "secrets" / f"{sanitize_resource_name(name)}_{key}"

    def _container_name(self, config: ContainerDeploymentConfig) -> str:
        return str(self.config.get("containerName") or sanitize_resource_name(config.name))

    def _run_args(self, config: ContainerDeploymentConfig) -> List[str]:
        container_name = self._container_name(config)
        args = ["run", "-d", "--name", container_name, "--restart", "unless-stopped"]
        for key, value in self.resource_labels(config).items():
            args.extend(["--label", f"{key}={value}"])
        args.extend(["--memory", f"{int(config.memory)}m", "--cpus", str(config.cpu)])
        args.extend(["--log-driver", "json-file", "--log-opt", "max-size=10m", "--log-opt", "max-file=3"])
        if self.network_name and self.config.get("useNetwork", True):
            args.extend(["--network", self.network_name])
        for key, value in sorted((config.environment or {}).items()):
            args.extend(["-e", f"{key}={value}"])
        for port in config.ports or []:
            args.extend(["-p", f"{int(port)}:{int(port)}"])
        for key, value in sorted((config.secrets or {}).items()):
            path = self._secret_path(config.name, key)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(value, encoding="utf-8")
            os.chmod(path, 0o600)
            args.extend(["-v", f"{path}:/run/secrets/{key}:ro"])
        args.append(config.image)
        args.extend(config.command or [])
        return args

    def deploy_container(self, config: ContainerDeploymentConfig, manifest: Dict[str, Any]) -> ContainerInstance:
        # a container left behind by an interrupted deploy is found by name and replaced
        snapshot, _created = create_or_update(
            lambda: self.get_container(self._container_name(config)),
            lambda: self._create_container(config),
            lambda existing: self.update_container(existing.id, config),
        )
        return snapshot

    def _create_container(self, config: ContainerDeploymentConfig) -> ContainerInstance:
        container_id = self._run(self._run_args(config)).strip()
        logger.info("started container %s for %s", container_id[:12], config.name)
        snapshot = self.get_container(container_id)
        if snapshot:
            return snapshot
        now = datetime.now(timezone.utc)
        return ContainerInstance(
            id=container_id,
            name=config.name,
            status=ContainerStatus.RUNNING,
            health=ContainerHealth.UNKNOWN,
            provider=self.provider_type,
            region=self.region,
            endpoint=self._endpoint(config.ports),
            created_at=now,
            updated_at=now,
            metadata={"workspace": self.workspace},
        )

    def update_container(self, container_id: str, config: ContainerDeploymentConfig) -> ContainerInstance:
        # containers are immutable; converge by recreating under the same name
        self.delete_container(container_id)
        return self._create_container(config)

    def start_container(self, container_id: str) -> None:
        self._run(["start", container_id])

    def stop_container(self, container_id: str) -> None:
        if not self._call_ignoring_missing(lambda: self._docker(["stop", container_id])):
            logger.warning("container %s already removed", container_id)

    def delete_container(self, container_id: str) -> None:
        snapshot = self.get_container(container_id)
        if not self._call_ignoring_missing(lambda: self._docker(["rm", "-f", container_id])):
            logger.warning("container %s already removed", container_id)
        if snapshot:
            for path in (self.data_dir / "secrets").glob(f"{sanitize_resource_name(snapshot.name)}_*"):
                path.unlink(missing_ok=True)

    def _endpoint(self, ports: List[int]) -> Optional[str]:
        port = self.config.get("gatewayPort") or (ports[0] if ports else None)
        if not port:
            return None
        return f"http://{self.endpoint_host}:{port}"

    def _snapshot(self, info: Dict[str, Any]) -> ContainerInstance:
        state = info.get("State") or {}
        labels = (info.get("Config") or {}).get("Labels") or {}
        status = ContainerStatus.PENDING
        if state.get("Running"):
            status = ContainerStatus.RUNNING
        elif state.get("Restarting"):
            status = ContainerStatus.DEGRADED
        elif state.get("Dead") or state.get("OOMKilled") or state.get("Error"):
            status = ContainerStatus.ERROR
        elif state.get("Status") in ("exited", "created"):
            status = ContainerStatus.STOPPED
        health_state = ((state.get("Health") or {}).get("Status") or "").lower()
        health = ContainerHealth.UNKNOWN
        if health_state == "healthy":
            health = ContainerHealth.HEALTHY
        elif health_state == "unhealthy":
            health = ContainerHealth.UNHEALTHY
        ports = []
        for spec in ((info.get("NetworkSettings") or {}).get("Ports") or {}).keys():
            try:
                ports.append(int(str(spec).split("/")[0]))
            except ValueError:
                continue
        return ContainerInstance(
            id=str(info.get("Id") or ""),
            name=labels.get("instance") or str(info.get("Name") or "").lstrip("/"),
            status=status,
            health=health,
            provider=self.provider_type,
            region=self.region,
            endpoint=self._endpoint(sorted(ports)),
            created_at=_parse_timestamp(str(info.get("Created") or "")),
            updated_at=_parse_timestamp(str(state.get("StartedAt") or "")),
            metadata={
                "containerName": str(info.get("Name") or "").lstrip("/"),
                "image": (info.get("Config") or {}).get("Image"),
                "workspace": labels.get("workspace"),
                "restartCount": info.get("RestartCount", 0),
                "labels": labels,
            },
        )

    def get_container(self, container_id: str) -> Optional[ContainerInstance]:
        proc = self._docker(["inspect", "--format", "{{json .}}", container_id], check=False)
        if proc.returncode != 0:
            return None
        try:
            info = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError:
            return None
        return self._snapshot(info)

    def list_containers(self, filters: Optional[ContainerFilters] = None) -> List[ContainerInstance]:
        filters = filters or ContainerFilters()
        args = ["ps", "-a", "--format", "{{.ID}}", "--filter", "label=managed-by=clawster"]
        args.extend(["--filter", f"label=workspace={filters.workspace or self.workspace}"])
        for key, value in (filters.labels or {}).items():
            args.extend(["--filter", f"label={key}={value}"])
        ids = [line.strip() for line in self._run(args).splitlines() if line.strip()]
        results = []
        for container_id in ids:
            snapshot = self.get_container(container_id)
            if snapshot and (not filters.status or snapshot.status == filters.status):
                results.append(snapshot)
        return results

    def get_logs(self, container_id: str, options: Optional[LogOptions] = None) -> LogResult:
        options = options or LogOptions()
        args = ["logs", "--timestamps", "--tail", str(options.limit)]
        if options.start:
            args.extend(["--since", options.start.isoformat()])
        if options.end:
            args.extend(["--until", options.end.isoformat()])
        args.append(container_id)
        proc = self._call(lambda: self._docker(args))
        events: List[LogEvent] = []
        for stream, text in (("stdout", proc.stdout or ""), ("stderr", proc.stderr or "")):
            for line in text.splitlines():
                stamp, _, message = line.partition(" ")
                parsed = _parse_timestamp(stamp)
                if parsed is None:
                    parsed, message = datetime.now(timezone.utc), line
                events.append(LogEvent(timestamp=parsed, message=message, stream=stream))
        events.sort(key=lambda event: event.timestamp)
        return LogResult(events=events[-options.limit:] if options.limit else events)

    def store_secret(self, instance_id: str, key: str, value: str) -> str:
        return self.vault.store_secret(instance_id, key, value)

    def get_secret(self, instance_id: str, key: str) -> Optional[str]:
        return self.vault.get_secret(instance_id, key)

    def delete_secret(self, instance_id: str, key: str) -> None:
        self.vault.delete_secret(instance_id, key)
