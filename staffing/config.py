"""
Runtime settings, read from STAFFING_* environment variables.
"""

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "STAFFING_"


class Settings(BaseModel):
    app_url: str = "http://localhost:3000"
    email_from: str = "TherapistConnect <notifications@therapistconnect.app>"
    email_api_key: str | None = None
    email_api_url: str = "https://api.resend.com/emails"
    dispatch_timeout_seconds: float = Field(default=10.0, gt=0)
    platform_fee_percent: float = Field(default=20.0, ge=0)
    reminder_tiers_hours: list[int] = Field(default_factory=lambda: [24, 1])
    max_hours_per_booking: float = Field(default=24.0, gt=0)
    outcome_history: int = Field(default=1000, gt=0)
    notify_booking_confirmed: bool = False
    log_level: str = "INFO"

    @field_validator("reminder_tiers_hours", mode="before")
    @classmethod
    def _split_tiers(cls, value):
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("reminder_tiers_hours")
    @classmethod
    def _positive_unique_tiers(cls, value: list[int]) -> list[int]:
        if not value or any(tier <= 0 for tier in value):
            raise ValueError("reminder tiers must be positive hours")
        return sorted(set(value), reverse=True)

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        return cls(**values)
