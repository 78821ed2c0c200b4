"""Unit tests for locator_config.py — defaults and environment overrides."""

import dataclasses

import pytest

from locator_config import DEFAULT_CONFIG, LocatorConfig, load_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for suffix in (
        "ROUTE_ID_FIELD", "IN_SR", "OUT_SR", "SEARCH_DISTANCE_FT",
        "TIMEOUT", "MAX_RETRIES", "RETRY_BACKOFF", "MEASURE_UNITS",
    ):
        monkeypatch.delenv(f"ROUTE_LOCATOR_{suffix}", raising=False)


class TestDefaults:
    def test_default_values(self):
        assert DEFAULT_CONFIG.route_id_field == "RouteID"
        assert DEFAULT_CONFIG.in_sr == 4326
        assert DEFAULT_CONFIG.out_sr == 4326
        assert DEFAULT_CONFIG.search_distance_ft == 50.0
        assert DEFAULT_CONFIG.max_retries == 0
        assert DEFAULT_CONFIG.measure_units == "miles"

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_CONFIG.timeout = 5


class TestLoadConfig:
    def test_no_overrides(self, tmp_path):
        assert load_config(env_file=str(tmp_path / "missing.env")) == LocatorConfig()

    def test_env_overrides_parsed(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ROUTE_LOCATOR_ROUTE_ID_FIELD", "RTE_ID")
        monkeypatch.setenv("ROUTE_LOCATOR_TIMEOUT", "12")
        monkeypatch.setenv("ROUTE_LOCATOR_SEARCH_DISTANCE_FT", "75.5")
        monkeypatch.setenv("ROUTE_LOCATOR_RETRY_BACKOFF", "1, 3")

        config = load_config(env_file=str(tmp_path / "missing.env"))

        assert config.route_id_field == "RTE_ID"
        assert config.timeout == 12
        assert config.search_distance_ft == 75.5
        assert config.retry_backoff == (1.0, 3.0)
        assert config.out_sr == 4326

    def test_env_file_loaded(self, monkeypatch, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("ROUTE_LOCATOR_MAX_RETRIES=2\nROUTE_LOCATOR_MEASURE_UNITS=kilometers\n")
        monkeypatch.setattr("os.environ", dict())

        config = load_config(env_file=str(env_file))

        assert config.max_retries == 2
        assert config.measure_units == "kilometers"

    def test_invalid_value(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ROUTE_LOCATOR_OUT_SR", "wgs84")

        with pytest.raises(ValueError, match="ROUTE_LOCATOR_OUT_SR"):
            load_config(env_file=str(tmp_path / "missing.env"))
