"""Unit tests for configuration classes."""
from decimal import Decimal

import pytest

from agent_arena.core.config import (
    ArenaConfig,
    ArenaLoopConfig,
    DatabaseConfig,
    DecisionLoopConfig,
    LedgerConfig,
    OracleConfig,
    SandboxConfig,
    SystemConfig,
    ToolConfig,
)


# =============================================================================
# SystemConfig Tests
# =============================================================================

class TestSystemConfig:
    """Test SystemConfig configuration."""

    def test_environment_validation(self):
        assert SystemConfig(environment="staging").environment == "staging"

        with pytest.raises(ValueError):
            SystemConfig(environment="invalid")

    def test_log_level_validation(self):
        with pytest.raises(ValueError):
            SystemConfig(log_level="VERBOSE")


# =============================================================================
# OracleConfig Tests
# =============================================================================

class TestOracleConfig:
    """Test OracleConfig configuration."""

    def test_provider_validation(self):
        assert OracleConfig(provider="grok").provider == "grok"

        with pytest.raises(ValueError):
            OracleConfig(provider="other")

    @pytest.mark.parametrize("temperature", [-0.1, 2.1])
    def test_temperature_range(self, temperature):
        with pytest.raises(ValueError):
            OracleConfig(temperature=temperature)

    def test_placeholder_key_not_configured(self):
        assert not OracleConfig(api_key="your_api_key").is_configured
        assert OracleConfig(api_key="real-key").is_configured


# =============================================================================
# Loop / Tool / Sandbox Tests
# =============================================================================

class TestLimits:
    """Round budget, tool and sandbox limits."""

    def test_decision_loop_defaults(self):
        config = DecisionLoopConfig(max_rounds=5)

        assert config.max_rounds == 5
        assert config.max_prompt_chars > 0

    @pytest.mark.parametrize("max_rounds", [0, 21])
    def test_max_rounds_range(self, max_rounds):
        with pytest.raises(ValueError):
            DecisionLoopConfig(max_rounds=max_rounds)

    def test_timeouts_positive(self):
        with pytest.raises(ValueError):
            DecisionLoopConfig(round_timeout_seconds=0)
        with pytest.raises(ValueError):
            ToolConfig(tool_timeout_seconds=-1)
        with pytest.raises(ValueError):
            SandboxConfig(evaluation_timeout_seconds=0)

    def test_sandbox_limits_at_least_one(self):
        with pytest.raises(ValueError):
            SandboxConfig(max_simulations=0)


# =============================================================================
# LedgerConfig Tests
# =============================================================================

class TestLedgerConfig:
    """Test LedgerConfig validation."""

    def test_explicit_values(self, ledger_config):
        assert ledger_config.fee_rate == Decimal("0.03")
        assert ledger_config.max_leverage == Decimal("25")
        assert ledger_config.cooldown_seconds == 1800

    def test_fee_basis_validation(self):
        assert LedgerConfig(fee_basis="margin").fee_basis == "margin"

        with pytest.raises(ValueError):
            LedgerConfig(fee_basis="volume")

    @pytest.mark.parametrize("rate", [Decimal("-0.01"), Decimal("1")])
    def test_rates_bounded(self, rate):
        with pytest.raises(ValueError):
            LedgerConfig(fee_rate=rate)

    def test_leverage_bounds(self):
        with pytest.raises(ValueError):
            LedgerConfig(min_leverage=Decimal("0.5"))
        with pytest.raises(ValueError):
            LedgerConfig(max_leverage=Decimal("200"))


# =============================================================================
# Arena / Database Tests
# =============================================================================

class TestArenaConfig:
    """Arena scheduling and the global container."""

    def test_symbols_parsed(self):
        config = ArenaLoopConfig(symbols_str="BTCUSDT, ETHUSDT,,SOLUSDT ")

        assert config.symbols == ["BTCUSDT", "ETHUSDT", "SOLUSDT"]

    def test_database_defaults(self):
        config = DatabaseConfig(database_url="sqlite:///./data/test.db")

        assert config.database_url == "sqlite:///./data/test.db"
        assert config.snapshots_enabled is True

    def test_validate_configuration_reports_issues(self):
        config = ArenaConfig()
        config.oracle = OracleConfig(api_key="")
        config.ledger = LedgerConfig(min_leverage=Decimal("30"), max_leverage=Decimal("25"))
        config.arena = ArenaLoopConfig(symbols_str="")

        result = config.validate_configuration()

        assert result["valid"] is False
        assert any("API key" in issue for issue in result["issues"])
        assert "Minimum leverage exceeds maximum leverage" in result["issues"]
        assert "No trading symbols configured" in result["issues"]

    def test_validate_configuration_valid(self):
        config = ArenaConfig()
        config.oracle = OracleConfig(api_key="real-key")
        config.decision_loop = DecisionLoopConfig(round_timeout_seconds=60, cycle_timeout_seconds=240)
        config.tools = ToolConfig(tool_timeout_seconds=10)
        config.sandbox = SandboxConfig(evaluation_timeout_seconds=2)
        config.ledger = LedgerConfig(min_leverage=Decimal("1"), max_leverage=Decimal("25"))
        config.arena = ArenaLoopConfig(symbols_str="BTCUSDT")

        assert config.validate_configuration() == {"valid": True, "issues": []}
