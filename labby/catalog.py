"""Service configurations, limits and lab templates loaded from YAML.

Layout::

    <service_configs_dir>/*.yaml   one ServiceConfig per file
    <service_configs_dir>/limits.yaml   list of ServiceLimit entries
    <templates_dir>/*.yaml|*.yml   one LabTemplate per file

Invalid files are logged and skipped so one bad file does not hide the
rest of the catalog.
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError

from labby.errors import ConfigurationError
from labby.schemas import LabTemplate, ServiceConfig, ServiceLimit
from labby.services.base import ServiceType

if TYPE_CHECKING:
    from labby.repository import LabRepository

logger = logging.getLogger(__name__)

LIMITS_FILE = "limits.yaml"
_KNOWN_TYPES = {t.value for t in ServiceType}


def _describe(error: ValidationError) -> str:
    return ", ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in error.errors()
    )


def parse_service_config(data: Any) -> ServiceConfig:
    """Validate one service config document.

    Raises:
        ConfigurationError: If required fields are missing or the type is unknown
    """
    if not isinstance(data, dict):
        raise ConfigurationError("service config must be a mapping")
    for key in ("id", "name", "type"):
        if not data.get(key):
            raise ConfigurationError(f"service config is missing '{key}'")
    if data["type"] not in _KNOWN_TYPES:
        raise ConfigurationError(f"unknown service type '{data['type']}'")
    try:
        return ServiceConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid service config: {_describe(e)}") from e


def parse_service_limits(data: Any) -> list[ServiceLimit]:
    """Validate the limits document (a list of limit mappings)."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError("limits file must contain a list")
    limits = []
    for index, item in enumerate(data):
        if not isinstance(item, dict) or not item.get("id") or not item.get("service_id"):
            raise ConfigurationError(f"limit #{index} is missing 'id' or 'service_id'")
        try:
            limits.append(ServiceLimit.model_validate(item))
        except ValidationError as e:
            raise ConfigurationError(f"invalid limit '{item['id']}': {_describe(e)}") from e
    return limits


def parse_template(data: Any) -> LabTemplate:
    """Validate one lab template document."""
    if not isinstance(data, dict):
        raise ConfigurationError("template must be a mapping")
    for key in ("id", "name", "expiration_duration"):
        if not data.get(key):
            raise ConfigurationError(f"template is missing '{key}'")
    for index, ref in enumerate(data.get("services") or []):
        if not isinstance(ref, dict) or not ref.get("name") or not ref.get("service_id"):
            raise ConfigurationError(f"template service #{index} is missing 'name' or 'service_id'")
    try:
        return LabTemplate.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid template: {_describe(e)}") from e


def _read_yaml(path: Path) -> Any:
    with path.open() as handle:
        return yaml.safe_load(handle)


class ServiceCatalog:
    """Thread-safe in-memory store of configs, limits and templates."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._configs: dict[str, ServiceConfig] = {}
        self._limits: dict[str, ServiceLimit] = {}
        self._templates: dict[str, LabTemplate] = {}

    # Service configs

    def add_service_config(self, config: ServiceConfig) -> None:
        with self._lock:
            self._configs[config.id] = config

    def get_service_config(self, config_id: str) -> ServiceConfig | None:
        with self._lock:
            return self._configs.get(config_id)

    def list_service_configs(self) -> list[ServiceConfig]:
        with self._lock:
            return list(self._configs.values())

    def configs_of_type(self, service_type: str) -> list[ServiceConfig]:
        with self._lock:
            return [c for c in self._configs.values() if c.type == service_type]

    # Limits

    def add_service_limit(self, limit: ServiceLimit) -> None:
        with self._lock:
            self._limits[limit.id] = limit

    def get_service_limit(self, service_id: str) -> ServiceLimit | None:
        """The active limit for a service config, if any."""
        with self._lock:
            for limit in self._limits.values():
                if limit.service_id == service_id and limit.is_active:
                    return limit
        return None

    def list_service_limits(self) -> list[ServiceLimit]:
        with self._lock:
            return list(self._limits.values())

    # Templates

    def add_template(self, template: LabTemplate) -> LabTemplate:
        """Store a template, filling each reference's type and logo from its config."""
        with self._lock:
            for ref in template.services:
                config = self._configs.get(ref.service_id)
                if config is None:
                    logger.warning(f"Template {template.id} references unknown service config {ref.service_id}")
                    continue
                ref.type = config.type
                ref.logo = ref.logo or config.logo
            self._templates[template.id] = template
        return template

    def get_template(self, template_id: str) -> LabTemplate | None:
        with self._lock:
            return self._templates.get(template_id)

    def list_templates(self) -> list[LabTemplate]:
        with self._lock:
            return list(self._templates.values())

    # Loading

    def load_service_configs(self, directory: str | Path) -> int:
        """Load every service config file in ``directory``; returns the count loaded."""
        path = Path(directory)
        if not path.is_dir():
            logger.warning(f"Service config directory {path} does not exist")
            return 0
        loaded = 0
        for file in sorted(path.glob("*.yaml")):
            if file.name == LIMITS_FILE:
                continue
            try:
                config = parse_service_config(_read_yaml(file))
            except (ConfigurationError, yaml.YAMLError, OSError) as e:
                logger.error(f"Skipping service config {file}: {e}")
                continue
            self.add_service_config(config)
            loaded += 1
        logger.info(f"Loaded {loaded} service config(s) from {path}")
        return loaded

    def load_service_limits(self, directory: str | Path) -> int:
        file = Path(directory) / LIMITS_FILE
        if not file.exists():
            logger.info(f"No service limits file at {file}")
            return 0
        try:
            limits = parse_service_limits(_read_yaml(file))
        except (ConfigurationError, yaml.YAMLError, OSError) as e:
            logger.error(f"Skipping service limits {file}: {e}")
            return 0
        for limit in limits:
            self.add_service_limit(limit)
        logger.info(f"Loaded {len(limits)} service limit(s) from {file}")
        return len(limits)

    def load_templates(self, directory: str | Path) -> int:
        path = Path(directory)
        if not path.is_dir():
            logger.warning(f"Template directory {path} does not exist")
            return 0
        loaded = 0
        files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
        for file in files:
            try:
                template = parse_template(_read_yaml(file))
            except (ConfigurationError, yaml.YAMLError, OSError) as e:
                logger.error(f"Skipping template {file}: {e}")
                continue
            self.add_template(template)
            loaded += 1
        logger.info(f"Loaded {loaded} template(s) from {path}")
        return loaded

    def load(self, service_configs_dir: str | Path, templates_dir: str | Path) -> None:
        """Load configs and limits before templates so references can be enriched."""
        self.load_service_configs(service_configs_dir)
        self.load_service_limits(service_configs_dir)
        self.load_templates(templates_dir)

    def load_from_repository(self, repository: LabRepository) -> None:
        for config in repository.list_service_configs():
            self.add_service_config(config)
        for limit in repository.list_service_limits():
            self.add_service_limit(limit)

    def sync_to_repository(self, repository: LabRepository) -> None:
        """Persist every config and limit so other tooling sees the same catalog."""
        for config in self.list_service_configs():
            repository.save_service_config(config)
        for limit in self.list_service_limits():
            repository.save_service_limit(limit)
