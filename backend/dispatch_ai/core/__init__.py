"""
Core application modules.
Contains configuration, logging, metrics, tracing and resilience helpers.
"""
from .config import BusinessProfile, ConfigurationError, Settings, get_settings, load_business_profile

__all__ = ["BusinessProfile", "ConfigurationError", "Settings", "get_settings", "load_business_profile"]
