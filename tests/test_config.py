"""
Tests for ControlPlaneConfig settings resolution.
"""

from pathlib import Path

import pytest

from controlplane.config import ControlPlaneConfig, get_config, reset_config


class TestEnvironment:

    def test_established_variable_names(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SAP_AUTOMATION_REPO_PATH", str(tmp_path / "sap-automation"))
        monkeypatch.setenv("CONFIG_REPO_PATH", str(tmp_path / "WORKSPACES"))
        monkeypatch.setenv("FORCE_RESET", "true")

        config = ControlPlaneConfig()
        assert config.automation_repo_path == tmp_path / "sap-automation"
        assert config.config_dir == tmp_path / "WORKSPACES" / ".sap_deployment_automation"
        assert config.force_reset is True

    @pytest.mark.parametrize("value, expected", [
        ("", False),
        ("force", True),
        ("1", True),
        ("false", True),
    ])
    def test_force_reset_set_when_non_empty(self, monkeypatch, value, expected):
        monkeypatch.setenv("FORCE_RESET", value)
        assert ControlPlaneConfig().force_reset is expected

    def test_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("CONTROLPLANE_LOG_LEVEL", "debug")
        monkeypatch.setenv("CONTROLPLANE_CONFIG_DIR", "/var/lib/controlplane")

        config = ControlPlaneConfig()
        assert config.log_level == "debug"
        assert config.config_dir == Path("/var/lib/controlplane")

    def test_empty_repo_path_is_unset(self, monkeypatch):
        monkeypatch.setenv("SAP_AUTOMATION_REPO_PATH", "")
        assert ControlPlaneConfig().automation_repo_path is None

    def test_defaults(self):
        config = ControlPlaneConfig()
        assert config.force_reset is False
        assert config.is_ado is False
        assert config.agent_ip_url == "https://ipinfo.io/ip"

    def test_ado_build_id(self, monkeypatch):
        monkeypatch.setenv("ADO_BUILD_ID", "20240101.1")
        assert ControlPlaneConfig().is_ado


class TestPaths:

    def test_store_paths(self, config, workspace):
        store_dir = workspace["config_repo"] / ".sap_deployment_automation"
        assert config.get_generic_config_path() == store_dir / "config"
        assert config.get_record_path("DEVWEEU") == store_dir / "DEVWEEU.json"

    def test_automation_paths(self, config, workspace):
        assert config.get_scripts_dir() == workspace["automation"] / "deploy" / "scripts"
        assert config.get_bootstrap_module_dir("sap_library") == (
            workspace["automation"] / "deploy" / "terraform" / "bootstrap" / "sap_library"
        )

    def test_on_deploy_server(self, config, tmp_path):
        assert not config.on_deploy_server
        config.deploy_server_profile = tmp_path / "deploy_server.sh"
        config.deploy_server_profile.write_text("export PATH=/usr/bin\n")
        assert config.on_deploy_server


class TestSingleton:

    def test_get_config_cached(self):
        assert get_config() is get_config()

    def test_overrides_replace_instance(self):
        first = get_config()
        second = get_config(force_reset=True)
        assert second is not first
        assert get_config().force_reset is True

    def test_reset(self):
        first = get_config()
        reset_config()
        assert get_config() is not first
