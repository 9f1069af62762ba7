"""
Runtime configuration.

Environment configuration:
- OPENAI_API_BASE / OPENAI_API_KEY / LLM_FAST_MODEL: customer-facing backend
- ANTHROPIC_API_BASE / ANTHROPIC_API_KEY / ANTHROPIC_VERSION / LLM_REASONING_MODEL:
  reasoning backend
- LLM_MAX_ATTEMPTS: attempt budget per dispatch (default: 3)
- LLM_ATTEMPT_TIMEOUT_SECONDS: timeout of a single attempt (default: 30)
- LLM_BACKOFF_BASE_SECONDS / LLM_BACKOFF_MAX_SECONDS: exponential backoff
- ENABLE_DEEP_ANALYSIS: run the reasoning backend on quoting/planning turns
- BUSINESS_PROFILE_PATH: JSON file with the business profile, or the
  BUSINESS_* variables below when no file is given

The business profile is never defaulted: a deployment without a business name
is misconfigured and must fail loudly rather than answer customers on behalf
of a demo company.
"""
import json
import os
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from dispatch_ai.core.logging import get_logger

logger = get_logger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


class BusinessProfile(BaseModel):
    """Business the assistant answers for. Injected into the orchestrator."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    service_area: str = ""
    specialties: List[str] = Field(default_factory=list)
    standard_rate: float = Field(75.0, gt=0)
    emergency_rate: float = Field(98.0, gt=0)
    business_hours: str = ""
    languages: List[str] = Field(default_factory=lambda: ["Nederlands", "English"])
    contact_phone: Optional[str] = None
    currency: str = "EUR"
    vat_rate: float = Field(0.21, ge=0, le=1)

    @field_validator("emergency_rate")
    @classmethod
    def emergency_not_below_standard(cls, value: float, info) -> float:
        standard = info.data.get("standard_rate")
        if standard is not None and value < standard:
            raise ValueError("emergency_rate must not be lower than standard_rate")
        return value

    def contact_line(self, language: str) -> str:
        """Localised 'call us directly' instruction used on terminal failures."""
        phone = f" ({self.contact_phone})" if self.contact_phone else ""
        if language == "nl":
            return f"Bel direct met {self.name}{phone} voor hulp."
        return f"Please call {self.name}{phone} directly for help."


class Settings(BaseModel):
    """Process settings, read once from the environment."""

    model_config = ConfigDict(frozen=True)

    openai_api_base: str = "https://api.openai.com/v1"
    openai_api_key: Optional[str] = None
    fast_model: str = "gpt-4o"
    anthropic_api_base: str = "https://api.anthropic.com/v1"
    anthropic_api_key: Optional[str] = None
    anthropic_version: str = "2023-06-01"
    reasoning_model: str = "claude-sonnet-4-20250514"
    max_attempts: int = Field(3, ge=1)
    attempt_timeout_seconds: float = Field(30.0, gt=0)
    backoff_base_seconds: float = Field(0.5, ge=0)
    backoff_max_seconds: float = Field(4.0, ge=0)
    enable_deep_analysis: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_base=os.getenv("OPENAI_API_BASE", "https://api.openai.com/v1"),
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            fast_model=os.getenv("LLM_FAST_MODEL", "gpt-4o"),
            anthropic_api_base=os.getenv("ANTHROPIC_API_BASE", "https://api.anthropic.com/v1"),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            anthropic_version=os.getenv("ANTHROPIC_VERSION", "2023-06-01"),
            reasoning_model=os.getenv("LLM_REASONING_MODEL", "claude-sonnet-4-20250514"),
            max_attempts=int(os.getenv("LLM_MAX_ATTEMPTS", "3") or "3"),
            attempt_timeout_seconds=float(os.getenv("LLM_ATTEMPT_TIMEOUT_SECONDS", "30") or "30"),
            backoff_base_seconds=float(os.getenv("LLM_BACKOFF_BASE_SECONDS", "0.5") or "0.5"),
            backoff_max_seconds=float(os.getenv("LLM_BACKOFF_MAX_SECONDS", "4") or "4"),
            enable_deep_analysis=os.getenv("ENABLE_DEEP_ANALYSIS", "true").lower() == "true",
        )


def _split_env_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_business_profile() -> BusinessProfile:
    """
    Load the business profile from BUSINESS_PROFILE_PATH or BUSINESS_* vars.

    Raises:
        ConfigurationError if no business name is configured or the profile
        does not validate.
    """
    path = os.getenv("BUSINESS_PROFILE_PATH")
    try:
        if path:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
            profile = BusinessProfile.model_validate(raw)
            logger.info("business_profile_loaded", source="file", path=path, name=profile.name)
            return profile

        name = os.getenv("BUSINESS_NAME")
        if not name:
            raise ConfigurationError(
                "BUSINESS_NAME or BUSINESS_PROFILE_PATH must be set"
            )
        payload = {
            "name": name,
            "service_area": os.getenv("BUSINESS_SERVICE_AREA", ""),
            "specialties": _split_env_list(os.getenv("BUSINESS_SPECIALTIES")),
            "business_hours": os.getenv("BUSINESS_HOURS", ""),
            "contact_phone": os.getenv("BUSINESS_PHONE") or None,
        }
        languages = _split_env_list(os.getenv("BUSINESS_LANGUAGES"))
        if languages:
            payload["languages"] = languages
        if os.getenv("BUSINESS_STANDARD_RATE"):
            payload["standard_rate"] = float(os.getenv("BUSINESS_STANDARD_RATE"))
        if os.getenv("BUSINESS_EMERGENCY_RATE"):
            payload["emergency_rate"] = float(os.getenv("BUSINESS_EMERGENCY_RATE"))
        if os.getenv("BUSINESS_VAT_RATE"):
            payload["vat_rate"] = float(os.getenv("BUSINESS_VAT_RATE"))
        profile = BusinessProfile.model_validate(payload)
        logger.info("business_profile_loaded", source="env", name=profile.name)
        return profile
    except (OSError, ValueError, ValidationError) as exc:
        # pydantic's ValidationError is a ValueError; both end up here.
        raise ConfigurationError(f"Invalid business profile: {exc}") from exc


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Global settings accessor."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
