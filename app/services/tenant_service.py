"""Static per-client configuration table and tenant resolution.

The table is a YAML document with two sections:

    clients:
      alpha:
        name: Casino Alpha
        kommo:
          access_token: env:ALPHA_KOMMO_TOKEN
          subdomain: alphacasino
          stages: {waiting_for_proof: 101, proof_received: 102, ...}
    pipeline_groups:
      zeus:
        base: zeus-base
        members: [zeus1, zeus2, zeus3]

String values of the form ``env:VAR`` are replaced with the environment
variable once, at load time. A pipeline group lets one Kommo account host
several funnels: the lead's pipeline id picks the member config.
"""

import os
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import yaml
from pydantic import ValidationError

from app.config import settings
from app.logging_config import get_logger
from app.schemas.tenant import KommoConfig, PipelineGroup, TenantConfig
from app.services.result import Result

logger = get_logger("tenant_service")

ENV_PREFIX = "env:"
OPTIONAL_SECTIONS = {
    "proxy": ("host", "port", "username", "password"),
    "meta": ("pixel_id", "access_token"),
}


class TenantNotFoundError(Exception):
    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"Client '{client_id}' not found")


def resolve_env_value(value: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    if not isinstance(value, str) or not value.startswith(ENV_PREFIX):
        return value
    env_name = value[len(ENV_PREFIX) :]
    env_value = (environ if environ is not None else os.environ).get(env_name)
    if not env_value:
        logger.warning(f"Environment variable {env_name} not found", extra={"context": {"env_var": env_name}})
        return None
    return env_value.strip()


def resolve_env_markers(raw: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    if isinstance(raw, dict):
        return {key: resolve_env_markers(value, environ) for key, value in raw.items()}
    if isinstance(raw, list):
        return [resolve_env_markers(item, environ) for item in raw]
    return resolve_env_value(raw, environ)


def _build_tenant(client_id: str, raw: dict) -> TenantConfig:
    data = dict(raw)
    kommo = dict(data.get("kommo") or {})
    for key in ("access_token", "subdomain"):
        if kommo.get(key) is None:
            kommo[key] = ""
    data["kommo"] = kommo

    backend = data.get("backend")
    if isinstance(backend, dict):
        data["backend"] = {key: ("" if value is None and key in ("api_url", "api_token") else value) for key, value in backend.items()}

    # Proxy / attribution sections are dropped unless fully resolved
    for section, required in OPTIONAL_SECTIONS.items():
        values = data.get(section)
        if values is None:
            continue
        if not isinstance(values, dict) or any(not values.get(key) for key in required):
            logger.warning(
                f"Incomplete {section} config ignored",
                extra={"context": {"client_id": client_id, "section": section}},
            )
            data[section] = None

    data["client_id"] = client_id
    data.setdefault("name", client_id)
    return TenantConfig.model_validate(data)


class TenantRegistry:
    """Immutable lookup table of resolved tenant configs."""

    def __init__(
        self,
        tenants: Mapping[str, TenantConfig],
        groups: Optional[Mapping[str, PipelineGroup]] = None,
    ):
        groups = groups or {}
        for group_id, group in groups.items():
            if group_id in tenants:
                raise ValueError(f"Pipeline group '{group_id}' clashes with a client id")
            missing = [name for name in (group.base, *group.members) if name not in tenants]
            if missing:
                raise ValueError(f"Pipeline group '{group_id}' references unknown clients: {', '.join(missing)}")
            undeclared = [name for name in group.members if tenants[name].kommo.pipeline_id is None]
            if undeclared:
                raise ValueError(f"Pipeline group '{group_id}' members without pipeline_id: {', '.join(undeclared)}")
        self._tenants = MappingProxyType(dict(tenants))
        self._groups = MappingProxyType(dict(groups))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> "TenantRegistry":
        resolved = resolve_env_markers(dict(raw or {}), environ)
        tenants: dict[str, TenantConfig] = {}
        for client_id, client_raw in (resolved.get("clients") or {}).items():
            try:
                tenants[str(client_id)] = _build_tenant(str(client_id), client_raw or {})
            except ValidationError as exc:
                raise ValueError(f"Invalid config for client '{client_id}': {exc}") from exc

        groups = {
            str(group_id): PipelineGroup(base=group_raw["base"], members=tuple(group_raw.get("members") or ()))
            for group_id, group_raw in (resolved.get("pipeline_groups") or {}).items()
        }
        return cls(tenants, groups)

    @classmethod
    def from_yaml(cls, path: str | Path, environ: Optional[Mapping[str, str]] = None) -> "TenantRegistry":
        with open(path, encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        return cls.from_mapping(data, environ)

    @property
    def client_ids(self) -> list[str]:
        return sorted(self._tenants)

    @property
    def group_ids(self) -> list[str]:
        return sorted(self._groups)

    def get(self, client_id: str) -> Optional[TenantConfig]:
        return self._tenants.get(client_id)

    def is_known(self, hint: str) -> bool:
        return hint in self._tenants or hint in self._groups

    def is_pipeline_group(self, hint: str) -> bool:
        return hint in self._groups

    def base_config(self, hint: str) -> TenantConfig:
        """Config whose credentials are used before the pipeline is known."""
        group = self._groups.get(hint)
        if group is not None:
            return self._tenants[group.base]
        config = self._tenants.get(hint)
        if config is None:
            raise TenantNotFoundError(hint)
        return config

    def resolve(self, hint: str, pipeline_id: Optional[int] = None) -> Optional[TenantConfig]:
        """Return the config for hint; None if a group has no member for pipeline_id."""
        group = self._groups.get(hint)
        if group is None:
            config = self._tenants.get(hint)
            if config is None:
                raise TenantNotFoundError(hint)
            return config

        if pipeline_id is None:
            raise ValueError(f"Pipeline group '{hint}' requires a pipeline id")
        for member in group.members:
            config = self._tenants[member]
            if config.kommo.pipeline_id == pipeline_id:
                return config
        return None


def resolve_tenant_for_lead(
    registry: TenantRegistry,
    hint: str,
    lead_id: int,
    kommo_factory: Callable[[KommoConfig], Any],
) -> Result[TenantConfig]:
    """Resolve hint, looking up the lead's pipeline when hint is a pipeline group.

    Raises TenantNotFoundError for unknown hints.
    """
    if not registry.is_pipeline_group(hint):
        return Result.success(registry.resolve(hint))

    base = registry.base_config(hint)
    pipeline_id = kommo_factory(base.kommo).fetch_pipeline_id(lead_id)
    if pipeline_id is None:
        logger.warning(
            "Could not fetch lead pipeline for group resolution",
            extra={"context": {"client_id": hint, "lead_id": lead_id}},
        )
        return Result.failure("Could not fetch lead for pipeline detection", "pipeline_lookup_failed")

    config = registry.resolve(hint, pipeline_id)
    if config is None:
        logger.info(
            f"No config for pipeline {pipeline_id} - event dropped",
            extra={"context": {"client_id": hint, "lead_id": lead_id, "pipeline_id": pipeline_id}},
        )
        return Result.failure(f"Pipeline {pipeline_id} not configured", "pipeline_not_configured")

    logger.info(
        f"Resolved {hint} -> {config.client_id}",
        extra={"context": {"lead_id": lead_id, "pipeline_id": pipeline_id}},
    )
    return Result.success(config)


def validate_tenant(config: TenantConfig) -> list[str]:
    errors = []
    if not config.kommo.access_token:
        errors.append("KOMMO access_token is missing")
    if not config.kommo.subdomain:
        errors.append("KOMMO subdomain is missing")
    return errors


def validate_backend(config: TenantConfig) -> list[str]:
    if config.backend is None:
        return ["Backend config is missing"]
    errors = []
    if not config.backend.api_token:
        errors.append("Backend API token is missing")
    if not config.backend.api_url:
        errors.append("Backend API URL is missing")
    return errors


@lru_cache(maxsize=1)
def get_tenant_registry() -> TenantRegistry:
    path = Path(settings.clients_config_path)
    if not path.exists():
        logger.error(f"Clients config not found: {path}")
        return TenantRegistry({})
    registry = TenantRegistry.from_yaml(path)
    logger.info(
        "Clients config loaded",
        extra={"context": {"clients": registry.client_ids, "pipeline_groups": registry.group_ids}},
    )
    return registry
