import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

MANAGED_BY = "clawster"
RESOURCE_PREFIX = "clawster"


class ProviderErrorType:
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


RETRYABLE_TYPES = {ProviderErrorType.QUOTA_EXCEEDED, ProviderErrorType.NETWORK}


class ProviderError(RuntimeError):
    def __init__(
        self,
        message: str,
        error_type: str = ProviderErrorType.UNKNOWN,
        original: Optional[BaseException] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.original = original
        self.suggestions = list(suggestions or [])

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.error_type, "message": self.message, "suggestions": self.suggestions}

    def __str__(self) -> str:
        return f"[{self.error_type}] {self.message}"


@dataclass
class RetryConfig:
    max_attempts: int = 3
    delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    retryable_errors: Tuple[str, ...] = (
        "ThrottlingException",
        "Throttling",
        "RateExceeded",
        "RequestLimitExceeded",
        "TooManyRequests",
        "ServiceUnavailable",
        "InternalError",
        "ECONNRESET",
        "ETIMEDOUT",
    )


DEFAULT_RETRY_CONFIG = RetryConfig()


def error_name(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return exc.error_type
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or exc.__class__.__name__)
    nested = getattr(exc, "error", None)
    code = getattr(nested, "code", None)
    if isinstance(code, str) and code:
        return f"{exc.__class__.__name__}:{code}"
    return exc.__class__.__name__


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return exc.message
    stderr = getattr(exc, "stderr", None)
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    if isinstance(stderr, str) and stderr.strip():
        return stderr.strip()
    return str(exc) or exc.__class__.__name__


def is_retryable(exc: BaseException, config: RetryConfig = DEFAULT_RETRY_CONFIG) -> bool:
    if isinstance(exc, ProviderError):
        return exc.error_type in RETRYABLE_TYPES
    name = error_name(exc)
    message = _error_message(exc)
    for candidate in config.retryable_errors:
        if candidate in name or candidate in message:
            return True
    return parse_cloud_error(exc).error_type in RETRYABLE_TYPES


def with_retry(operation: Callable[[], Any], config: Optional[RetryConfig] = None) -> Any:
    config = config or DEFAULT_RETRY_CONFIG
    delay = config.delay_seconds
    last_exc: Optional[BaseException] = None
    for attempt in range(1, config.max_attempts + 1):
        try:
            return operation()
        except Exception as exc:
            last_exc = exc
            if attempt >= config.max_attempts or not is_retryable(exc, config):
                raise
            logger.warning(
                "transient provider error (%s), attempt %s/%s, retrying in %.1fs",
                error_name(exc),
                attempt,
                config.max_attempts,
                delay,
            )
            time.sleep(delay)
            delay *= config.backoff_multiplier
    raise last_exc  # pragma: no cover


def parse_cloud_error(exc: BaseException, provider_name: str = "cloud provider") -> ProviderError:
    if isinstance(exc, ProviderError):
        return exc
    name = error_name(exc)
    message = _error_message(exc)
    lowered = message.lower()

    if (
        "Credentials" in name
        or "TokenRefresh" in name
        or "Unauthenticated" in name
        or "ClientAuthentication" in name
        or "credentials" in lowered
    ):
        return ProviderError(
            f"{provider_name} credentials not configured or expired",
            ProviderErrorType.AUTHENTICATION,
            exc,
            [
                f"Configure credentials for {provider_name}",
                "Check that your access keys or service account are valid",
                "Verify the region or project environment variables are set",
            ],
        )
    if (
        "AccessDenied" in name
        or "UnauthorizedOperation" in name
        or "PermissionDenied" in name
        or "Forbidden" in name
        or "AuthorizationFailed" in name
    ):
        return ProviderError(
            "Insufficient permissions to perform this operation",
            ProviderErrorType.AUTHORIZATION,
            exc,
            [
                "Check the role or policy attached to the credentials",
                f"See {provider_name} documentation for required permissions",
            ],
        )
    if (
        "ResourceNotFound" in name
        or "NotFound" in name
        or "NoSuch" in name
        or "no such container" in lowered
        or "no such object" in lowered
    ):
        return ProviderError(
            f"Resource not found: {message}",
            ProviderErrorType.NOT_FOUND,
            exc,
            [
                "Check that the resource name or id is correct",
                "Verify the resource exists in the configured region",
            ],
        )
    if (
        "AlreadyExists" in name
        or "ResourceExists" in name
        or "Conflict" in name
        or "already in use" in lowered
        or "already exists" in lowered
        or lowered.startswith("conflict")
    ):
        return ProviderError(
            f"Resource already exists: {message}",
            ProviderErrorType.ALREADY_EXISTS,
            exc,
            [
                "Use a different name for the resource",
                "Check if the resource was already created",
            ],
        )
    if (
        "LimitExceeded" in name
        or "QuotaExceeded" in name
        or "Throttling" in name
        or "ResourceExhausted" in name
        or "TooManyRequests" in name
    ):
        return ProviderError(
            f"Service limit exceeded: {message}",
            ProviderErrorType.QUOTA_EXCEEDED,
            exc,
            [
                f"Request a quota increase from {provider_name}",
                "Wait a few minutes and try again",
            ],
        )
    if (
        "NetworkError" in name
        or "Timeout" in name
        or "ECONN" in name
        or "EndpointConnection" in name
        or "ConnectionError" in name
        or "DeadlineExceeded" in name
        or "ServiceRequestError" in name
    ):
        return ProviderError(
            f"Network error: {message}",
            ProviderErrorType.NETWORK,
            exc,
            [
                "Check connectivity to the provider API",
                "Try again in a few moments",
            ],
        )
    return ProviderError(
        f"{provider_name} error: {message}",
        ProviderErrorType.UNKNOWN,
        exc,
        ["Check the provider console for details"],
    )


def call_provider(
    operation: Callable[[], Any],
    provider_name: str,
    config: Optional[RetryConfig] = None,
) -> Any:
    """Run a remote call with retry and surface failures as ProviderError."""
    try:
        return with_retry(operation, config)
    except ProviderError:
        raise
    except Exception as exc:
        raise parse_cloud_error(exc, provider_name) from exc


def is_not_found(exc: BaseException) -> bool:
    return parse_cloud_error(exc).error_type == ProviderErrorType.NOT_FOUND


def create_or_update(
    check_exists: Callable[[], Any],
    create: Callable[[], Any],
    update: Optional[Callable[[Any], Any]] = None,
) -> Tuple[Any, bool]:
    existing = check_exists()
    if existing:
        if update is not None:
            return update(existing), False
        return existing, False
    return create(), True


def wait_for_state(
    get_state: Callable[[], Any],
    target_state: Any,
    *,
    max_wait_seconds: float = 300,
    poll_interval_seconds: float = 5,
    failure_states: Iterable[Any] = (),
    description: str = "resource",
) -> Any:
    targets = set(target_state) if isinstance(target_state, (list, tuple, set)) else {target_state}
    failures = set(failure_states)
    deadline = time.monotonic() + max_wait_seconds
    state = None
    while True:
        state = get_state()
        if state in targets:
            return state
        if state in failures:
            raise ProviderError(
                f"{description} entered failure state {state}",
                ProviderErrorType.UNKNOWN,
                suggestions=["Inspect the resource in the provider console"],
            )
        if time.monotonic() >= deadline:
            break
        time.sleep(poll_interval_seconds)
    raise ProviderError(
        f"Timed out waiting for {description} to reach {sorted(str(t) for t in targets)} (last state: {state})",
        ProviderErrorType.UNKNOWN,
        suggestions=["Check the resource status in the provider console", "Increase the wait timeout"],
    )


@dataclass
class ProgressStep:
    id: str
    name: str
    status: str = "pending"
    message: str = ""


@dataclass
class ProgressTracker:
    steps: List[ProgressStep] = field(default_factory=list)
    on_progress: Optional[Callable[[ProgressStep], None]] = None

    @classmethod
    def from_names(cls, names: Iterable[Tuple[str, str]], on_progress=None) -> "ProgressTracker":
        return cls([ProgressStep(id=step_id, name=name) for step_id, name in names], on_progress)

    def _set(self, step_id: str, status: str, message: str = "") -> None:
        for step in self.steps:
            if step.id == step_id:
                step.status = status
                step.message = message
                if self.on_progress:
                    self.on_progress(step)
                return
        raise KeyError(step_id)

    def start(self, step_id: str, message: str = "") -> None:
        self._set(step_id, "in_progress", message)

    def complete(self, step_id: str, message: str = "") -> None:
        self._set(step_id, "complete", message)

    def error(self, step_id: str, message: str = "") -> None:
        self._set(step_id, "error", message)

    def advance(self, step_id: str, message: str = "") -> None:
        """Completes whatever step is in progress and starts ``step_id``, adding it if unknown.

        Matches the ``(key, message)`` callback providers report bootstrap progress through.
        """
        for step in self.steps:
            if step.status == "in_progress" and step.id != step_id:
                self.complete(step.id, step.message)
        if not any(step.id == step_id for step in self.steps):
            self.steps.append(ProgressStep(id=step_id, name=step_id))
        self.start(step_id, message)

    def finish(self) -> None:
        for step in self.steps:
            if step.status == "in_progress":
                self.complete(step.id, step.message)

    def summary(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for step in self.steps:
            counts[step.status] = counts.get(step.status, 0) + 1
        return {
            "steps": [{"id": s.id, "name": s.name, "status": s.status, "message": s.message} for s in self.steps],
            "counts": counts,
            "done": all(s.status == "complete" for s in self.steps),
        }


def sanitize_resource_name(name: str, max_length: int = 63) -> str:
    value = re.sub(r"[^a-z0-9-]+", "-", (name or "").lower())
    value = re.sub(r"-{2,}", "-", value).strip("-")
    return value[:max_length].rstrip("-")


def generate_resource_name(workspace: str, resource_type: str, suffix: str = "") -> str:
    parts = [RESOURCE_PREFIX, workspace, resource_type]
    if suffix:
        parts.append(suffix)
    return sanitize_resource_name("-".join(p for p in parts if p))


def generate_tags(workspace: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    tags = {
        "managed-by": MANAGED_BY,
        "workspace": workspace,
        "created-at": datetime.now(timezone.utc).strftime("%Y-%m-%dt%H-%M-%S"),
    }
    tags.update({str(k): str(v) for k, v in (extra or {}).items()})
    return tags


def to_aws_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": str(key), "Value": str(value)} for key, value in tags.items()]


def to_azure_tags(tags: Dict[str, str]) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for key, value in tags.items():
        safe_key = re.sub(r"[^a-zA-Z0-9_-]", "_", str(key))[:512]
        if safe_key:
            result[safe_key] = str(value)[:256]
    return result


def to_gcp_labels(tags: Dict[str, str]) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    for key, value in tags.items():
        safe_key = re.sub(r"[^a-z0-9_-]", "_", str(key).lower())[:63]
        if not safe_key:
            continue
        if not safe_key[0].isalpha():
            safe_key = f"k{safe_key}"[:63]
        labels[safe_key] = re.sub(r"[^a-z0-9_-]", "_", str(value).lower())[:63]
    return labels
