"""Tests for configuration loading and validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from quantrisk.config import (
    BacktestConfig,
    ComparisonConfig,
    FactorBound,
    HedgingConfig,
    MonitorConfig,
    RiskParityConfig,
    SimulationConfig,
    WeightConstraints,
)
from quantrisk.exceptions import DataError
from quantrisk.utils.config import EngineSettings, load_env_file

ENV_KEYS = ("QUANTRISK_SEED", "QUANTRISK_MAX_WORKERS", "QUANTRISK_LOG_LEVEL")


def test_risk_parity_defaults():
    """Test RiskParityConfig default values."""
    config = RiskParityConfig()
    assert config.target_volatility == 0.10
    assert config.constraints.max_weight == 1.0
    assert config.constraints.max_leverage == 2.0


def test_weight_constraints_validation():
    """Test bound ordering and the short-selling switch."""
    with pytest.raises(ValidationError, match="exceeds max_weight"):
        WeightConstraints(min_weight=0.5, max_weight=0.2)
    with pytest.raises(ValidationError, match="allow_short"):
        WeightConstraints(min_weight=-0.1)
    with pytest.raises(ValidationError, match="allow_short"):
        WeightConstraints(asset_bounds={"AAA": (-0.2, 0.5)})

    config = WeightConstraints(min_weight=-0.2, allow_short=True, asset_bounds={"AAA": (0.1, 0.4)})
    assert config.bounds_for(["AAA", "BBB"]) == [(0.1, 0.4), (-0.2, 1.0)]


def test_factor_bound_order():
    with pytest.raises(ValidationError):
        FactorBound(min=0.5, max=0.1)


def test_simulation_config_sorts_levels():
    config = SimulationConfig(confidence_levels=[0.99, 0.95], band_percentiles=[95, 5, 50])
    assert config.confidence_levels == [0.95, 0.99]
    assert config.band_percentiles == [5, 50, 95]

    with pytest.raises(ValidationError):
        SimulationConfig(confidence_levels=[1.0])
    with pytest.raises(ValidationError):
        SimulationConfig(chunk_size=0)


def test_hedging_config_validation():
    with pytest.raises(ValidationError):
        HedgingConfig(rebalance_frequency="hourly")
    with pytest.raises(ValidationError):
        HedgingConfig(hedging_cost=-0.01)


def test_monitor_thresholds_positive():
    with pytest.raises(ValidationError, match="Threshold must be positive"):
        MonitorConfig(drawdown_threshold=0.0)


class TestBacktestConfig:
    def test_defaults(self):
        config = BacktestConfig(symbols=["AAPL"])
        assert config.initial_capital == 100_000.0
        assert config.position_sizing == "fixed"
        assert config.benchmark_symbol == "SPY"

    def test_frozen(self):
        config = BacktestConfig(symbols=["AAPL"])
        with pytest.raises(ValidationError):
            config.initial_capital = 5.0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"symbols": []},
            {"symbols": ["AAPL", "AAPL"]},
            {"initial_capital": 0},
            {"commission": -0.001},
            {"min_commission": -1.0},
            {"stop_loss": 1.5},
            {"max_positions": 0},
            {"confidence_threshold": 1.2},
            {"position_sizing": "risk_per_trade", "stop_loss": None},
        ],
    )
    def test_invalid(self, overrides):
        settings = {"symbols": ["AAPL"]} | overrides
        with pytest.raises(ValidationError):
            BacktestConfig(**settings)

    def test_yaml_round_trip(self, tmp_path):
        config = BacktestConfig(
            name="trend",
            symbols=["AAPL", "MSFT"],
            start_date="2023-01-01",
            stop_loss=None,
            walk_forward=True,
        )
        path = tmp_path / "configs" / "trend.yaml"
        config.to_yaml(path)

        assert BacktestConfig.from_yaml(path) == config

    def test_missing_yaml(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            BacktestConfig.from_yaml(tmp_path / "nope.yaml")


def test_comparison_weights_validation():
    with pytest.raises(ValidationError):
        ComparisonConfig(score_weights={})
    with pytest.raises(ValidationError):
        ComparisonConfig(score_weights={"sharpe_ratio": -1.0})


# ============================================================================
# Environment settings
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_load_env_file(tmp_path):
    env = tmp_path / ".env"
    env.write_text("# comment\nQUANTRISK_SEED=7\nQUANTRISK_LOG_LEVEL='debug'\n\nnot a pair\n")
    assert load_env_file(env) == {"QUANTRISK_SEED": "7", "QUANTRISK_LOG_LEVEL": "debug"}
    assert load_env_file(tmp_path / "missing.env") == {}


def test_settings_from_env_file(tmp_path, clean_env):
    env = tmp_path / ".env"
    env.write_text("QUANTRISK_SEED=7\nQUANTRISK_MAX_WORKERS=3\nQUANTRISK_LOG_LEVEL=debug\n")

    settings = EngineSettings(env)
    assert settings.seed == 7
    assert settings.max_workers == 3
    assert settings.log_level == "DEBUG"


def test_environment_overrides_file(tmp_path, clean_env):
    env = tmp_path / ".env"
    env.write_text("QUANTRISK_SEED=7\n")
    clean_env.setenv("QUANTRISK_SEED", "11")
    assert EngineSettings(env).seed == 11


def test_settings_defaults(tmp_path, clean_env):
    settings = EngineSettings(tmp_path / "missing.env")
    assert settings.seed is None
    assert settings.max_workers is None
    assert settings.log_level == "INFO"


@pytest.mark.parametrize(
    "key, value",
    [
        ("QUANTRISK_SEED", "abc"),
        ("QUANTRISK_MAX_WORKERS", "0"),
        ("QUANTRISK_LOG_LEVEL", "chatty"),
    ],
)
def test_invalid_settings(tmp_path, clean_env, key, value):
    clean_env.setenv(key, value)
    with pytest.raises(DataError, match=key):
        EngineSettings(tmp_path / "missing.env")
