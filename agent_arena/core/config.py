"""Configuration management for the Agent Arena trading system."""

from decimal import Decimal
from typing import List, Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Agent Arena", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")
    timezone: str = Field(default="UTC", validation_alias="TIMEZONE")

    # Operational settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )


# =============================================================================
# Reasoning Oracle Configuration
# =============================================================================


class OracleConfig(BaseSettings):
    """Connection settings for the external reasoning oracle."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # "openai" and "grok" speak the chat-completions protocol
    provider: Literal["openai", "grok", "gemini"] = Field(
        default="openai", validation_alias="ORACLE_PROVIDER"
    )
    api_endpoint: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        validation_alias="ORACLE_API_ENDPOINT",
    )
    api_key: str = Field(default="", validation_alias="ORACLE_API_KEY")
    model_name: str = Field(default="gpt-4o-mini", validation_alias="ORACLE_MODEL_NAME")
    temperature: float = Field(default=0.9, validation_alias="ORACLE_TEMPERATURE")
    request_timeout_seconds: float = Field(
        default=60.0, validation_alias="ORACLE_REQUEST_TIMEOUT_SECONDS"
    )

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v):
        """Validate temperature is within the range providers accept."""
        if v < 0 or v > 2:
            raise ValueError("Temperature must be between 0 and 2")
        return v

    @computed_field
    @property
    def is_configured(self) -> bool:
        """True when an API key has been supplied."""
        return bool(self.api_key) and not self.api_key.startswith("your_")


# =============================================================================
# Decision Loop Configuration
# =============================================================================


class DecisionLoopConfig(BaseSettings):
    """Round budget and timeouts for one agent decision cycle."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    max_rounds: int = Field(default=5, validation_alias="DECISION_MAX_ROUNDS")
    round_timeout_seconds: float = Field(
        default=60.0, validation_alias="DECISION_ROUND_TIMEOUT_SECONDS"
    )
    cycle_timeout_seconds: float = Field(
        default=240.0, validation_alias="DECISION_CYCLE_TIMEOUT_SECONDS"
    )
    max_prompt_chars: int = Field(
        default=500_000, validation_alias="DECISION_MAX_PROMPT_CHARS"
    )
    history_depth: int = Field(default=5, validation_alias="DECISION_HISTORY_DEPTH")
    recent_orders_depth: int = Field(
        default=10, validation_alias="DECISION_RECENT_ORDERS_DEPTH"
    )

    @field_validator("max_rounds")
    @classmethod
    def validate_max_rounds(cls, v):
        """At least one round is needed to reach a decision."""
        if v < 1 or v > 20:
            raise ValueError("max_rounds must be between 1 and 20")
        return v

    @field_validator("round_timeout_seconds", "cycle_timeout_seconds")
    @classmethod
    def validate_timeouts(cls, v):
        if v <= 0:
            raise ValueError("Timeouts must be positive")
        return v


# =============================================================================
# Tool Dispatcher Configuration
# =============================================================================


class ToolConfig(BaseSettings):
    """Tool dispatcher configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    tool_timeout_seconds: float = Field(
        default=10.0, validation_alias="TOOL_TIMEOUT_SECONDS"
    )
    price_history_points: int = Field(
        default=100, validation_alias="TOOL_PRICE_HISTORY_POINTS"
    )

    @field_validator("tool_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("Tool timeout must be positive")
        return v


# =============================================================================
# Sandbox Configuration
# =============================================================================


class SandboxConfig(BaseSettings):
    """Limits for the expression sandbox and simulation registry."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    max_expression_length: int = Field(
        default=500, validation_alias="SANDBOX_MAX_EXPRESSION_LENGTH"
    )
    max_nesting_depth: int = Field(
        default=64, validation_alias="SANDBOX_MAX_NESTING_DEPTH"
    )
    evaluation_timeout_seconds: float = Field(
        default=2.0, validation_alias="SANDBOX_EVALUATION_TIMEOUT_SECONDS"
    )
    max_simulation_equations: int = Field(
        default=10, validation_alias="SANDBOX_MAX_SIMULATION_EQUATIONS"
    )
    simulation_ttl_seconds: int = Field(
        default=1800, validation_alias="SANDBOX_SIMULATION_TTL_SECONDS"
    )
    max_simulations: int = Field(default=256, validation_alias="SANDBOX_MAX_SIMULATIONS")

    @field_validator(
        "max_expression_length",
        "max_nesting_depth",
        "max_simulation_equations",
        "max_simulations",
    )
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Sandbox limits must be at least 1")
        return v

    @field_validator("evaluation_timeout_seconds")
    @classmethod
    def validate_evaluation_timeout(cls, v):
        if v <= 0:
            raise ValueError("Evaluation timeout must be positive")
        return v


# =============================================================================
# Ledger Configuration
# =============================================================================


class LedgerConfig(BaseSettings):
    """Margin, leverage, fee and cooldown rules for the position ledger."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    initial_balance_usd: Decimal = Field(
        default=Decimal("10000"), validation_alias="LEDGER_INITIAL_BALANCE_USD"
    )
    min_margin_usd: Decimal = Field(
        default=Decimal("50"), validation_alias="LEDGER_MIN_MARGIN_USD"
    )
    min_leverage: Decimal = Field(default=Decimal("1"), validation_alias="LEDGER_MIN_LEVERAGE")
    max_leverage: Decimal = Field(default=Decimal("25"), validation_alias="LEDGER_MAX_LEVERAGE")

    # Charged on the entry leg and again on the exit leg
    fee_rate: Decimal = Field(default=Decimal("0.03"), validation_alias="LEDGER_FEE_RATE")
    fee_basis: Literal["notional", "margin"] = Field(
        default="notional", validation_alias="LEDGER_FEE_BASIS"
    )

    # 0 reproduces entry * (1 -/+ 1/leverage)
    maintenance_margin_rate: Decimal = Field(
        default=Decimal("0"), validation_alias="LEDGER_MAINTENANCE_MARGIN_RATE"
    )
    cooldown_seconds: int = Field(default=1800, validation_alias="LEDGER_COOLDOWN_SECONDS")

    @field_validator("min_margin_usd", "initial_balance_usd")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Balances and margins cannot be negative")
        return v

    @field_validator("min_leverage")
    @classmethod
    def validate_min_leverage(cls, v):
        if v < 1:
            raise ValueError("Minimum leverage must be at least 1")
        return v

    @field_validator("max_leverage")
    @classmethod
    def validate_max_leverage(cls, v):
        if v < 1 or v > 125:
            raise ValueError("Maximum leverage must be between 1 and 125")
        return v

    @field_validator("fee_rate", "maintenance_margin_rate")
    @classmethod
    def validate_rate(cls, v):
        if v < 0 or v >= 1:
            raise ValueError("Rates must be in [0, 1)")
        return v


# =============================================================================
# Arena Loop Configuration
# =============================================================================


class ArenaLoopConfig(BaseSettings):
    """Scheduling and bookkeeping for the multi-agent arena."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    turn_interval_seconds: int = Field(default=300, validation_alias="ARENA_TURN_INTERVAL_SECONDS")
    tick_interval_seconds: int = Field(default=10, validation_alias="ARENA_TICK_INTERVAL_SECONDS")
    max_value_history: int = Field(default=300, validation_alias="ARENA_MAX_VALUE_HISTORY")
    max_decision_logs: int = Field(default=50, validation_alias="ARENA_MAX_DECISION_LOGS")

    # Stored as comma-separated string, parsed to list
    symbols_str: str = Field(
        default="BTCUSDT,ETHUSDT,SOLUSDT,XRPUSDT,BNBUSDT,DOGEUSDT",
        validation_alias="ARENA_SYMBOLS",
    )

    @property
    def symbols(self) -> List[str]:
        """Parse symbols string into list."""
        return [s.strip() for s in self.symbols_str.split(",") if s.strip()]


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Snapshot store configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./data/agent_arena.db", validation_alias="DATABASE_URL"
    )
    snapshots_enabled: bool = Field(default=True, validation_alias="DATABASE_SNAPSHOTS_ENABLED")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: str = Field(default="logs/agent_arena.log", validation_alias="LOG_FILE")


# =============================================================================
# Global Configuration Container
# =============================================================================


class ArenaConfig:
    """
    Container for all Agent Arena configurations.

    Usage:
        from agent_arena.core.config import arena_config

        max_rounds = arena_config.decision_loop.max_rounds
        if arena_config.oracle.is_configured:
            ...
    """

    def __init__(self):
        self.system = SystemConfig()
        self.oracle = OracleConfig()
        self.decision_loop = DecisionLoopConfig()
        self.tools = ToolConfig()
        self.sandbox = SandboxConfig()
        self.ledger = LedgerConfig()
        self.arena = ArenaLoopConfig()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    def validate_configuration(self) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues = []

        if not self.oracle.is_configured:
            issues.append(f"Missing or invalid API key for oracle provider {self.oracle.provider}")

        if self.ledger.min_leverage > self.ledger.max_leverage:
            issues.append("Minimum leverage exceeds maximum leverage")

        if self.sandbox.evaluation_timeout_seconds >= self.tools.tool_timeout_seconds:
            issues.append("Sandbox evaluation timeout must be tighter than the tool timeout")

        if self.tools.tool_timeout_seconds >= self.decision_loop.cycle_timeout_seconds:
            issues.append("Tool timeout must be shorter than the cycle budget")

        if self.decision_loop.round_timeout_seconds > self.decision_loop.cycle_timeout_seconds:
            issues.append("Round timeout exceeds the whole-cycle budget")

        if not self.arena.symbols:
            issues.append("No trading symbols configured")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

ledger_config = LedgerConfig()
sandbox_config = SandboxConfig()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

arena_config = ArenaConfig()


__all__ = [
    "ArenaConfig",
    "arena_config",
    "ledger_config",
    "sandbox_config",
    "database_config",
    "logging_config",
    "SystemConfig",
    "OracleConfig",
    "DecisionLoopConfig",
    "ToolConfig",
    "SandboxConfig",
    "LedgerConfig",
    "ArenaLoopConfig",
    "DatabaseConfig",
    "LoggingConfig",
]
