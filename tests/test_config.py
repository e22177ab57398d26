import pytest
import yaml

from kaiproof.config import (
    ConfigError,
    ConfigManager,
    ConfigValue,
    KaiproofConfig,
    ValidationError,
    load_config,
)


def test_defaults():
    config = KaiproofConfig()
    assert config.webauthn.rp_id.get() == "phi.network"
    assert config.webauthn.origin.get() == "https://phi.network"
    assert config.cache.version.get() == "KVB-1.0"
    assert config.logging.level.get() == "warning"
    assert ConfigManager().validate() == []


def test_env_overrides_file_and_runtime(monkeypatch, tmp_path):
    path = tmp_path / "kaiproof.yaml"
    path.write_text("webauthn:\n  rp_id: file.example\n", encoding="utf-8")
    manager = ConfigManager()
    manager.load_from_file(path)
    assert manager.get("webauthn.rp_id") == "file.example"

    monkeypatch.setenv("KAIPROOF_RP_ID", "env.example")
    assert manager.get("webauthn.rp_id") == "env.example"
    manager.set("webauthn.rp_id", "runtime.example")
    assert manager.get("webauthn.rp_id") == "env.example"


@pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("ON", True), ("0", False), ("nope", False)])
def test_bool_coercion(monkeypatch, raw, expected):
    monkeypatch.setenv("KAIPROOF_LOG_JSON", raw)
    assert KaiproofConfig().logging.json.get() is expected


def test_numeric_env_coercion(monkeypatch):
    monkeypatch.setenv("KAIPROOF_CACHE_MAX_ENTRIES", "64")
    monkeypatch.setenv("KAIPROOF_PROMPT_TIMEOUT", "2.5")
    config = KaiproofConfig()
    assert config.cache.max_entries.get() == 64
    assert config.webauthn.timeout_seconds.get() == 2.5


def test_unparseable_env_is_a_validation_error(monkeypatch):
    monkeypatch.setenv("KAIPROOF_CACHE_MAX_ENTRIES", "many")
    errors = ConfigManager().validate()
    assert len(errors) == 1
    assert errors[0].startswith("cache.max_entries:")


def test_validator_rejects_runtime_value():
    manager = ConfigManager()
    with pytest.raises(ValidationError):
        manager.set("webauthn.rp_id", "https://phi.network")
    with pytest.raises(ValidationError):
        manager.set("logging.level", "verbose")


def test_string_values_are_coerced_on_set():
    manager = ConfigManager()
    manager.set("cache.max_entries", "10")
    assert manager.get("cache.max_entries") == 10


def test_invalid_paths():
    manager = ConfigManager()
    with pytest.raises(ConfigError):
        manager.get("webauthn.nope")
    with pytest.raises(ConfigError):
        manager.set("webauthn", "x")


def test_independent_managers():
    a, b = ConfigManager(), ConfigManager()
    a.set("cache.version", "KVB-2.0")
    assert b.get("cache.version") == "KVB-1.0"


class TestConfigFile:

    def test_load(self, tmp_path):
        path = tmp_path / "kaiproof.yaml"
        path.write_text(yaml.safe_dump({"cache": {"max_entries": 8}, "logging": {"level": "debug"}}), encoding="utf-8")
        config = load_config(path)
        assert config.cache.max_entries.get() == 8
        assert config.logging.level.get() == "debug"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path).webauthn.rp_id.get() == "phi.network"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.yaml")

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "kaiproof.yaml"
        path.write_text("webauthn:\n  rpid: phi.network\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="webauthn.rpid"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "kaiproof.yaml"
        path.write_text("webauthn: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="not valid YAML"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "kaiproof.yaml"
        path.write_text("- one\n- two\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_section_must_be_mapping(self, tmp_path):
        path = tmp_path / "kaiproof.yaml"
        path.write_text("webauthn: phi.network\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="must be a mapping"):
            load_config(path)

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "kaiproof.yaml"
        path.write_text("webauthn:\n  timeout_seconds: 0\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_env_error_surfaces_from_load_config(self, monkeypatch):
        monkeypatch.setenv("KAIPROOF_LOG_LEVEL", "verbose")
        with pytest.raises(ValidationError) as exc:
            load_config()
        assert exc.value.details["errors"] == ["logging.level: validation failed for value 'verbose'"]


def test_to_yaml_round_trips_values():
    dumped = yaml.safe_load(KaiproofConfig().to_yaml())
    assert dumped["webauthn"]["rp_id"] == "phi.network"
    assert dumped["cache"]["max_entries"] == 1024
    assert dumped["zk"]["verification_key_path"] == ""


def test_export_schema():
    schema = ConfigManager().export_schema()["properties"]
    rp_id = schema["webauthn"]["rp_id"]
    assert rp_id["type"] == "str"
    assert rp_id["default"] == "phi.network"
    assert rp_id["env_var"] == "KAIPROOF_RP_ID"
    assert schema["webauthn"]["timeout_seconds"]["type"] == "float"


def test_config_value_reset():
    value = ConfigValue(default=3, validator=lambda x: x > 0)
    value.set(5)
    assert value.get() == 5
    value.reset()
    assert value.get() == 3
    with pytest.raises(ValidationError):
        value.set(-1)
