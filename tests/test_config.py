"""
Tests for engine configuration loading and hot reload.
"""

from pathlib import Path

import pytest

from src.threat_engine.config import (
    ConfigStore,
    CorrelatorConfig,
    EngineConfig,
    engine_config_from_dict,
    load_engine_config,
)
from src.threat_engine.errors import ConfigError
from src.threat_engine.schemas import Severity

ENGINE_YAML = Path(__file__).resolve().parent.parent / "config" / "engine.yaml"


def test_defaults_are_valid():
    config = EngineConfig().validate()
    assert config.correlator.max_gap_seconds == 300.0
    assert config.incidents.min_severity == Severity.HIGH
    assert config.dispatch.routes["critical"] == ("log", "webhook", "email")


def test_shipped_engine_yaml_loads():
    config = load_engine_config(ENGINE_YAML)
    assert config.correlator.rate_max_severity == Severity.LOW
    assert config.dispatch.routes["high"] == ("log", "webhook")
    assert config.detectors.disabled_detectors == ()
    assert config.rule_files == ("config/rules.yaml",)


def test_from_dict_coerces_types():
    config = engine_config_from_dict({
        "incidents": {"min_severity": "medium"},
        "correlator": {"pivot_priority": ["user", "host"]},
    })
    assert config.incidents.min_severity == Severity.MEDIUM
    assert config.correlator.pivot_priority == ("user", "host")


@pytest.mark.parametrize("data, message", [
    ({"correlatr": {}}, "unknown configuration sections"),
    ({"correlator": {"max_gapp_seconds": 10}}, "unknown setting 'correlator.max_gapp_seconds'"),
    ({"incidents": {"min_severity": "urgent"}}, "incidents.min_severity"),
    ({"correlator": {"window_duration_seconds": 100}}, "window_duration_seconds must be >= max_gap_seconds"),
    ({"scorer": {"confidence_floor": 1.5}}, "confidence_floor"),
    ({"dispatch": {"routes": {"sev9": ["log"]}}}, "unknown severity 'sev9'"),
])
def test_invalid_configuration_is_rejected(data, message):
    with pytest.raises(ConfigError, match=message):
        engine_config_from_dict(data)


def test_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        load_engine_config(tmp_path / "nope.yaml")


class TestConfigStore:
    def test_swap_bumps_version_and_notifies(self):
        store = ConfigStore()
        seen = []
        store.subscribe(seen.append)

        new = store.swap(EngineConfig(correlator=CorrelatorConfig(max_gap_seconds=120)))

        assert new.version == 1
        assert store.current() is new
        assert seen == [new]

    def test_update_one_section(self):
        store = ConfigStore()
        store.update("scorer", confidence_floor=0.35)
        assert store.current().scorer.confidence_floor == 0.35
        assert store.current().correlator == CorrelatorConfig()

    def test_update_rejects_unknown_names(self):
        store = ConfigStore()
        with pytest.raises(ConfigError):
            store.update("nonsense", a=1)
        with pytest.raises(ConfigError):
            store.update("scorer", not_a_setting=1)

    def test_invalid_swap_keeps_previous(self):
        store = ConfigStore()
        with pytest.raises(ConfigError):
            store.update("correlator", max_gap_seconds=-1)
        assert store.current().version == 0

    def test_reload_from_file(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("correlator:\n  max_gap_seconds: 120\n")
        store = ConfigStore(path=path)
        assert store.current().correlator.max_gap_seconds == 120

        path.write_text("correlator:\n  max_gap_seconds: 60\n")
        reloaded = store.reload()
        assert reloaded.correlator.max_gap_seconds == 60
        assert reloaded.version == 1

    def test_broken_reload_keeps_previous(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("correlator:\n  max_gap_seconds: 120\n")
        store = ConfigStore(path=path)

        path.write_text("correlator: [unclosed\n")
        with pytest.raises(ConfigError):
            store.reload()
        assert store.current().correlator.max_gap_seconds == 120

    def test_reload_without_path(self):
        with pytest.raises(ConfigError):
            ConfigStore().reload()
