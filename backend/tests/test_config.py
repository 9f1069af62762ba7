"""
Tests for business profile and settings loading.
"""
import json

import pytest

from dispatch_ai.core.config import BusinessProfile, ConfigurationError, Settings, load_business_profile

BUSINESS_VARS = [
    "BUSINESS_PROFILE_PATH",
    "BUSINESS_NAME",
    "BUSINESS_SERVICE_AREA",
    "BUSINESS_SPECIALTIES",
    "BUSINESS_HOURS",
    "BUSINESS_PHONE",
    "BUSINESS_LANGUAGES",
    "BUSINESS_STANDARD_RATE",
    "BUSINESS_EMERGENCY_RATE",
    "BUSINESS_VAT_RATE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in BUSINESS_VARS:
        monkeypatch.delenv(name, raising=False)


def test_missing_business_name_fails(monkeypatch):
    with pytest.raises(ConfigurationError):
        load_business_profile()


def test_profile_from_environment(monkeypatch):
    monkeypatch.setenv("BUSINESS_NAME", "Loodgietersbedrijf Jansen")
    monkeypatch.setenv("BUSINESS_SPECIALTIES", "lekkages, cv-ketels ,")
    monkeypatch.setenv("BUSINESS_PHONE", "010-7654321")
    monkeypatch.setenv("BUSINESS_STANDARD_RATE", "80")
    monkeypatch.setenv("BUSINESS_EMERGENCY_RATE", "110")

    profile = load_business_profile()

    assert profile.name == "Loodgietersbedrijf Jansen"
    assert profile.specialties == ["lekkages", "cv-ketels"]
    assert profile.contact_phone == "010-7654321"
    assert profile.standard_rate == 80
    assert profile.emergency_rate == 110
    assert profile.vat_rate == pytest.approx(0.21)


def test_profile_from_file(monkeypatch, tmp_path):
    path = tmp_path / "profile.json"
    path.write_text(json.dumps({
        "name": "Loodgieter Utrecht",
        "service_area": "Utrecht",
        "languages": ["Nederlands"],
    }), encoding="utf-8")
    monkeypatch.setenv("BUSINESS_PROFILE_PATH", str(path))
    monkeypatch.setenv("BUSINESS_NAME", "ignored")

    profile = load_business_profile()

    assert profile.name == "Loodgieter Utrecht"
    assert profile.languages == ["Nederlands"]


def test_unreadable_profile_file_fails(monkeypatch, tmp_path):
    monkeypatch.setenv("BUSINESS_PROFILE_PATH", str(tmp_path / "missing.json"))

    with pytest.raises(ConfigurationError):
        load_business_profile()


def test_emergency_rate_below_standard_fails(monkeypatch):
    monkeypatch.setenv("BUSINESS_NAME", "Loodgieter")
    monkeypatch.setenv("BUSINESS_STANDARD_RATE", "90")
    monkeypatch.setenv("BUSINESS_EMERGENCY_RATE", "60")

    with pytest.raises(ConfigurationError):
        load_business_profile()


def test_contact_line_is_localised():
    profile = BusinessProfile(name="De Vries", contact_phone="020-1234567")

    assert profile.contact_line("nl") == "Bel direct met De Vries (020-1234567) voor hulp."
    assert profile.contact_line("en") == "Please call De Vries (020-1234567) directly for help."
    assert "()" not in BusinessProfile(name="De Vries").contact_line("en")


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.setenv("LLM_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("LLM_ATTEMPT_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("ENABLE_DEEP_ANALYSIS", "false")

    settings = Settings.from_env()

    assert settings.openai_api_key == "sk-test"
    assert settings.anthropic_api_key is None
    assert settings.max_attempts == 5
    assert settings.attempt_timeout_seconds == 12.5
    assert settings.enable_deep_analysis is False


def test_settings_reject_zero_attempts():
    with pytest.raises(ValueError):
        Settings(max_attempts=0)
