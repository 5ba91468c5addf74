"""
Configuration Management for Plan Ledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_COLOR_PALETTE = "#007AFF,#FF3B30,#34C759,#FF9500,#AF52DE,#FF2D55"


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Worksheet names within the spreadsheet
    plans_sheet_name: str = Field(
        default="Plans",
        description="Name of the sheet for plans"
    )
    participants_sheet_name: str = Field(
        default="Participants",
        description="Name of the sheet for plan participants"
    )
    contributions_sheet_name: str = Field(
        default="Contributions",
        description="Name of the sheet for ledger entries"
    )
    settlements_sheet_name: str = Field(
        default="Settlements",
        description="Name of the sheet for confirmed settlements"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class LedgerSettings(BaseSettings):
    """
    Ledger behaviour settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLAN_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Numeric policy
    balance_tolerance: Decimal = Field(
        default=Decimal("0.000001"),
        gt=0,
        description="Net positions within this distance of zero are settled"
    )
    money_quantum: Decimal = Field(
        default=Decimal("0.01"),
        gt=0,
        description="Smallest stored monetary unit (used when rescaling entries)"
    )
    max_contribution_amount: Decimal = Field(
        default=Decimal("1000000"),
        gt=0,
        description="Entries above this absolute amount are flagged by the health check"
    )

    # Participants
    color_palette: str = Field(
        default=DEFAULT_COLOR_PALETTE,
        description="Comma-separated list of participant colors, in assignment order"
    )

    # Settlement confirmation
    mirror_settlements: bool = Field(
        default=False,
        description="Post mirrored personal transactions when a settlement is confirmed"
    )

    # Removal
    removal_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="How often a removal is retried after a concurrent ledger change"
    )

    # Invitations
    invite_code_length: int = Field(
        default=6,
        ge=4,
        le=16,
        description="Length of generated plan invite codes"
    )

    @property
    def palette(self) -> list[str]:
        """Get the color palette as a list."""
        return [c.strip().upper() for c in self.color_palette.split(",") if c.strip()]


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    try:
        _ = settings.google_sheets
        results["google_sheets"] = True
    except Exception as e:
        results["google_sheets"] = False
        results["google_sheets_error"] = str(e)

    try:
        _ = settings.ledger
        results["ledger"] = True
    except Exception as e:
        results["ledger"] = False
        results["ledger_error"] = str(e)

    return results
