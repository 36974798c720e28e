"""Tests for the YAML service catalog."""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from labby.catalog import (
    ServiceCatalog,
    parse_service_config,
    parse_service_limits,
    parse_template,
)
from labby.errors import ConfigurationError
from labby.schemas import ServiceLimit

CONFIG_ROOT = Path(__file__).resolve().parent.parent / "config"


def _write(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data))
    return path


def _config(config_id: str = "proxmox-test", **overrides) -> dict:
    data = {
        "id": config_id,
        "name": "Proxmox",
        "type": "proxmox_user",
        "logo": "/logos/proxmox.svg",
        "config": {"uri": "https://pve:8006", "admin_user": "root@pam", "admin_pass": "pw"},
    }
    data.update(overrides)
    return data


class TestParseServiceConfig:
    """Tests for parse_service_config."""

    def test_valid_config(self):
        config = parse_service_config(_config())

        assert config.id == "proxmox-test"
        assert config.params["uri"] == "https://pve:8006"
        assert config.is_active is True

    def test_params_are_stringified(self):
        config = parse_service_config(_config(config={"port": 8006, "skip_tls_verify": True, "empty": None}))

        assert config.params == {"port": "8006", "skip_tls_verify": "True", "empty": ""}

    @pytest.mark.parametrize("missing", ["id", "name", "type"])
    def test_missing_required_field(self, missing):
        data = _config()
        del data[missing]

        with pytest.raises(ConfigurationError, match=missing):
            parse_service_config(data)

    def test_palette_tenant_type(self):
        config = parse_service_config(_config(
            "tenant", type="palette_tenant",
            config={"host": "https://palette", "system_username": "admin", "system_password": "pw"},
        ))

        assert config.type == "palette_tenant"
        assert config.params["system_username"] == "admin"

    def test_unknown_type(self):
        with pytest.raises(ConfigurationError, match="unknown service type"):
            parse_service_config(_config(type="kubernetes"))

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError):
            parse_service_config(["not", "a", "mapping"])


class TestParseLimits:
    """Tests for parse_service_limits."""

    def test_valid_limits(self):
        limits = parse_service_limits([
            {"id": "l1", "service_id": "proxmox-test", "max_labs": 5, "max_duration": 120},
        ])

        assert limits == [ServiceLimit(id="l1", service_id="proxmox-test", max_labs=5, max_duration=120)]

    def test_empty_document(self):
        assert parse_service_limits(None) == []

    def test_non_positive_values_rejected(self):
        with pytest.raises(ConfigurationError, match="l1"):
            parse_service_limits([{"id": "l1", "service_id": "x", "max_labs": 0, "max_duration": 10}])

    def test_missing_service_id(self):
        with pytest.raises(ConfigurationError):
            parse_service_limits([{"id": "l1", "max_labs": 1, "max_duration": 10}])

    def test_mapping_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_service_limits({"id": "l1"})


class TestParseTemplate:
    """Tests for parse_template."""

    def test_valid_template(self):
        template = parse_template({
            "id": "t1",
            "name": "Template",
            "expiration_duration": "1h30m",
            "services": [{"name": "Proxmox", "service_id": "proxmox-test"}],
        })

        assert template.duration == timedelta(minutes=90)
        assert template.services[0].service_id == "proxmox-test"

    def test_invalid_duration(self):
        with pytest.raises(ConfigurationError):
            parse_template({"id": "t1", "name": "T", "expiration_duration": "forever"})

    def test_service_reference_needs_service_id(self):
        with pytest.raises(ConfigurationError, match="service #0"):
            parse_template({
                "id": "t1",
                "name": "T",
                "expiration_duration": "2h",
                "services": [{"name": "Proxmox"}],
            })


class TestServiceCatalog:
    """Tests for loading and querying the catalog."""

    def test_load_directory(self, tmp_path):
        services = tmp_path / "services"
        templates = tmp_path / "templates"
        services.mkdir()
        templates.mkdir()
        _write(services / "proxmox.yaml", _config())
        _write(services / "limits.yaml", [
            {"id": "l1", "service_id": "proxmox-test", "max_labs": 2, "max_duration": 60},
        ])
        _write(templates / "basic.yml", {
            "id": "basic",
            "name": "Basic",
            "expiration_duration": "1h",
            "services": [{"name": "Hypervisor", "service_id": "proxmox-test"}],
        })

        catalog = ServiceCatalog()
        catalog.load(services, templates)

        assert [c.id for c in catalog.list_service_configs()] == ["proxmox-test"]
        assert catalog.get_service_limit("proxmox-test").max_labs == 2
        ref = catalog.get_template("basic").services[0]
        assert ref.type == "proxmox_user"
        assert ref.logo == "/logos/proxmox.svg"

    def test_bad_files_are_skipped(self, tmp_path):
        _write(tmp_path / "good.yaml", _config("good"))
        _write(tmp_path / "bad.yaml", _config("bad", type="unknown"))
        (tmp_path / "broken.yaml").write_text("id: [unclosed")

        catalog = ServiceCatalog()

        assert catalog.load_service_configs(tmp_path) == 1
        assert catalog.get_service_config("good") is not None
        assert catalog.get_service_config("bad") is None

    def test_missing_directories(self, tmp_path):
        catalog = ServiceCatalog()

        assert catalog.load_service_configs(tmp_path / "nope") == 0
        assert catalog.load_service_limits(tmp_path / "nope") == 0
        assert catalog.load_templates(tmp_path / "nope") == 0

    def test_inactive_limit_ignored(self):
        catalog = ServiceCatalog()
        catalog.add_service_limit(ServiceLimit(
            id="l1", service_id="svc", max_labs=1, max_duration=10, is_active=False,
        ))

        assert catalog.get_service_limit("svc") is None
        assert len(catalog.list_service_limits()) == 1

    def test_configs_of_type(self):
        catalog = ServiceCatalog()
        catalog.add_service_config(parse_service_config(_config("a")))
        catalog.add_service_config(parse_service_config(_config("b")))
        catalog.add_service_config(parse_service_config(_config("c", type="guacamole")))

        assert [c.id for c in catalog.configs_of_type("proxmox_user")] == ["a", "b"]

    def test_shipped_configuration_loads(self):
        catalog = ServiceCatalog()
        catalog.load(CONFIG_ROOT / "services", CONFIG_ROOT / "templates")

        template = catalog.get_template("edge-lab")
        assert template is not None
        assert [ref.type for ref in template.services] == [
            "palette_project", "proxmox_user", "terraform_cloud", "guacamole",
        ]
        assert catalog.get_service_limit("tfc-edge").max_duration == 240

    def test_repository_round_trip(self, repository):
        catalog = ServiceCatalog()
        catalog.add_service_config(parse_service_config(_config()))
        catalog.add_service_limit(ServiceLimit(id="l1", service_id="proxmox-test", max_labs=3, max_duration=60))
        catalog.sync_to_repository(repository)

        restored = ServiceCatalog()
        restored.load_from_repository(repository)

        assert restored.get_service_config("proxmox-test").params["admin_user"] == "root@pam"
        assert restored.get_service_limit("proxmox-test").max_labs == 3
