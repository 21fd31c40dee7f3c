"""Tests for azext_mcp.config -- mcp.yaml handling."""

from pathlib import Path

import pytest
import yaml
from knack.util import CLIError

from azext_mcp.config import DEFAULT_CONFIG, RouterConfig, _sanitize_for_yaml, default_config_path


class TestConfigPath:
    def test_env_override(self, config_path):
        assert default_config_path() == config_path

    def test_default_under_home(self, monkeypatch):
        monkeypatch.delenv("AZURE_MCP_CONFIG", raising=False)
        assert default_config_path() == Path.home() / ".azure" / "mcp.yaml"


class TestLoad:
    def test_missing_file_means_defaults(self, config_path):
        config = RouterConfig()
        assert config.load() == DEFAULT_CONFIG
        assert not config.exists()

    def test_file_overlays_defaults(self, config_path):
        config_path.write_text(yaml.safe_dump({"server": {"mode": "flatten"}}), encoding="utf-8")
        config = RouterConfig()
        config.load()
        assert config.get("server.mode") == "flatten"
        assert config.get("server.max_workers") == 8
        assert config.get("extensions.command") == "azd"

    def test_empty_file_means_defaults(self, config_path):
        config_path.write_text("", encoding="utf-8")
        assert RouterConfig().load() == DEFAULT_CONFIG

    def test_invalid_yaml_raises(self, config_path):
        config_path.write_text("server: [unclosed", encoding="utf-8")
        with pytest.raises(CLIError, match="Invalid configuration file"):
            RouterConfig().load()

    def test_non_mapping_raises(self, config_path):
        config_path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(CLIError, match="expected a mapping"):
            RouterConfig().load()

    def test_load_does_not_mutate_defaults(self, config_path):
        config_path.write_text(yaml.safe_dump({"extensions": {"tags": ["x"]}}), encoding="utf-8")
        RouterConfig().load()
        assert DEFAULT_CONFIG["extensions"]["tags"] == ["azure", "mcp"]


class TestGetSet:
    def test_get_missing_returns_default(self, config_path):
        config = RouterConfig()
        config.load()
        assert config.get("server.nope") is None
        assert config.get("server.nope", "fallback") == "fallback"

    def test_set_persists(self, config_path):
        config = RouterConfig()
        config.load()
        config.set("server.mode", "flatten")

        saved = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        assert saved["server"]["mode"] == "flatten"

        reloaded = RouterConfig()
        reloaded.load()
        assert reloaded.get("server.mode") == "flatten"

    def test_set_unknown_key(self, config_path):
        config = RouterConfig()
        with pytest.raises(CLIError, match="Unknown configuration key"):
            config.set("server.port", 8080)
        assert not config_path.exists()

    @pytest.mark.parametrize("raw,expected", [("true", True), ("no", False), ("ON", True), (False, False)])
    def test_bool_coercion(self, config_path, raw, expected):
        config = RouterConfig()
        config.set("sampling.enabled", raw)
        assert config.get("sampling.enabled") is expected

    def test_telemetry_opt_out_persists(self, config_path):
        RouterConfig().set("telemetry.enabled", "no")
        reloaded = RouterConfig()
        reloaded.load()
        assert reloaded.get("telemetry.enabled") is False
        assert reloaded.get("telemetry.connection_string") == ""

    def test_bool_rejects_junk(self, config_path):
        with pytest.raises(CLIError, match="expects true or false"):
            RouterConfig().set("sampling.enabled", "maybe")

    def test_numbers(self, config_path):
        config = RouterConfig()
        config.set("client.timeout", "90.5")
        config.set("server.max_workers", "4")
        assert config.get("client.timeout") == 90.5
        assert config.get("server.max_workers") == 4

    @pytest.mark.parametrize("key,value", [
        ("client.timeout", "-1"),
        ("server.max_workers", 0),
        ("sampling.max_tokens", "lots"),
    ])
    def test_numbers_out_of_range(self, config_path, key, value):
        with pytest.raises(CLIError):
            RouterConfig().set(key, value)

    def test_list_from_comma_string(self, config_path):
        config = RouterConfig()
        config.set("extensions.tags", "azure, mcp ,preview,")
        assert config.get("extensions.tags") == ["azure", "mcp", "preview"]

    def test_list_from_list(self, config_path):
        config = RouterConfig()
        config.set("router.ignore_ids", ["mcp.azure", " "])
        assert config.get("router.ignore_ids") == ["mcp.azure"]

    def test_server_mode_validated(self, config_path):
        with pytest.raises(CLIError, match="Unknown server mode"):
            RouterConfig().set("server.mode", "mirror")

    def test_log_level_uppercased(self, config_path):
        config = RouterConfig()
        config.set("logging.level", "debug")
        assert config.get("logging.level") == "DEBUG"

    def test_log_level_validated(self, config_path):
        with pytest.raises(CLIError, match="Unknown log level"):
            RouterConfig().set("logging.level", "chatty")


class TestTypedAccessors:
    def test_timeout_zero_means_none(self, config_path):
        config = RouterConfig()
        config.load()
        assert config.timeout is None

    def test_timeout_positive(self, config_path):
        config = RouterConfig()
        config.set("client.timeout", 30)
        assert config.timeout == 30.0

    def test_ignore_ids_include_router_id(self, config_path):
        config = RouterConfig()
        config.set("router.ignore_ids", "")
        config.set("router.id", "mcp.azure.dev")
        assert config.ignore_ids == ["mcp.azure.dev"]

    def test_to_dict_is_a_copy(self, config_path):
        config = RouterConfig()
        config.load()
        snapshot = config.to_dict()
        snapshot["server"]["mode"] = "flatten"
        assert config.get("server.mode") == "proxy"


class TestSanitizeForYaml:
    def test_str_subclass_becomes_str(self):
        class DefaultStr(str):
            pass

        clean = _sanitize_for_yaml({"a": DefaultStr("x"), "b": (1, True)})
        assert type(clean["a"]) is str
        assert clean["b"] == [1, True]
        yaml.safe_dump(clean)
