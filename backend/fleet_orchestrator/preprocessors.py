import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import BotInstance, BotTeamMember

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100
RUNTIME_TOOL_GROUP = "group:runtime"
DELEGATION_SKILL_DIR = "/home/node/.openclaw/skills"
VAULT_REF_RE = re.compile(r"^\$\{vault:([A-Za-z0-9._/-]+)\}$")


@dataclass
class PreprocessorContext:
    instance: BotInstance
    deployment_type: str = "LOCAL"


@dataclass
class PreprocessorResult:
    modified: bool
    description: str = ""


@dataclass
class ChainResult:
    results: List[Dict[str, Any]] = field(default_factory=list)
    modification_count: int = 0
    changes: List[str] = field(default_factory=list)


class ManifestPreprocessor:
    name = ""
    priority = DEFAULT_PRIORITY

    def process(self, manifest: Dict[str, Any], context: PreprocessorContext) -> PreprocessorResult:
        raise NotImplementedError


def _openclaw_config(manifest: Dict[str, Any]) -> Dict[str, Any]:
    spec = manifest.setdefault("spec", {})
    cfg = spec.get("openclawConfig")
    if not isinstance(cfg, dict):
        cfg = {}
        spec["openclawConfig"] = cfg
    return cfg


def _dict_at(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def _append_unique(values: Any, item: str) -> List[str]:
    items = list(values) if isinstance(values, list) else []
    if item not in items:
        items.append(item)
    return items


class DelegationConfigPreprocessor(ManifestPreprocessor):
    """Grants runtime exec and the delegation skill dir to bots that lead a team."""

    name = "delegation-config"
    priority = 50

    def process(self, manifest: Dict[str, Any], context: PreprocessorContext) -> PreprocessorResult:
        member_count = BotTeamMember.objects.filter(owner_id=context.instance.id, enabled=True).count()
        if member_count == 0:
            return PreprocessorResult(modified=False)

        cfg = _openclaw_config(manifest)
        tools = _dict_at(cfg, "tools")
        # allow and alsoAllow are mutually exclusive in the gateway config
        if tools.get("allow"):
            tools["allow"] = _append_unique(tools.get("allow"), RUNTIME_TOOL_GROUP)
        else:
            tools["alsoAllow"] = _append_unique(tools.get("alsoAllow"), RUNTIME_TOOL_GROUP)

        load = _dict_at(_dict_at(cfg, "skills"), "load")
        load["extraDirs"] = _append_unique(load.get("extraDirs"), DELEGATION_SKILL_DIR)

        logger.debug("injected delegation config for %s (%s team members)", context.instance.id, member_count)
        return PreprocessorResult(
            modified=True,
            description=f"Delegation config injected ({member_count} team members)",
        )


class VaultConfigPreprocessor(ManifestPreprocessor):
    """Replaces ${vault:KEY} environment values with secrets from the instance's vault."""

    name = "vault-config"
    priority = 40

    def __init__(self, router=None):
        self._router = router

    @property
    def router(self):
        if self._router is None:
            from .vault.router import vault_router

            self._router = vault_router
        return self._router

    def process(self, manifest: Dict[str, Any], context: PreprocessorContext) -> PreprocessorResult:
        spec = manifest.setdefault("spec", {})
        environment = spec.get("environment")
        if not isinstance(environment, dict):
            return PreprocessorResult(modified=False)
        refs = {}
        for name, value in environment.items():
            match = VAULT_REF_RE.match(str(value)) if isinstance(value, str) else None
            if match:
                refs[name] = match.group(1)
        if not refs:
            return PreprocessorResult(modified=False)

        store = self.router.store_for_instance(context.instance)
        secrets = _dict_at(spec, "secrets")
        missing = []
        for name, key in refs.items():
            value = store.get_secret(str(context.instance.id), key)
            if value is None:
                missing.append(key)
                continue
            secrets[name] = value
            environment.pop(name, None)
        if missing:
            raise LookupError(f"vault secrets not found: {', '.join(sorted(missing))}")
        return PreprocessorResult(
            modified=True,
            description=f"Resolved {len(refs)} vault reference(s) from {store.store_type} store",
        )


class PreprocessorChain:
    def __init__(self, preprocessors: Optional[List[ManifestPreprocessor]] = None):
        self._preprocessors: List[ManifestPreprocessor] = []
        for preprocessor in preprocessors if preprocessors is not None else default_preprocessors():
            self.register(preprocessor)

    def register(self, preprocessor: ManifestPreprocessor) -> None:
        self._preprocessors.append(preprocessor)
        self._preprocessors.sort(key=lambda p: p.priority if p.priority is not None else DEFAULT_PRIORITY)

    def registered(self) -> List[Dict[str, Any]]:
        return [{"name": p.name, "priority": p.priority} for p in self._preprocessors]

    def process(self, manifest: Dict[str, Any], context: PreprocessorContext) -> ChainResult:
        chain = ChainResult()
        for preprocessor in self._preprocessors:
            try:
                result = preprocessor.process(manifest, context)
            except Exception as exc:
                logger.error(
                    "preprocessor %s failed for instance %s: %s", preprocessor.name, context.instance.id, exc
                )
                result = PreprocessorResult(modified=False, description=f"Error: {exc}")
            chain.results.append({"name": preprocessor.name, "result": result})
            if result.modified:
                chain.modification_count += 1
                if result.description:
                    chain.changes.append(result.description)
        return chain


def default_preprocessors() -> List[ManifestPreprocessor]:
    return [VaultConfigPreprocessor(), DelegationConfigPreprocessor()]
