"""
Environment Configuration Utility

ENVIRONMENT values:
- production: webhooks must be signed, db init needs explicit confirmation
- development: unsigned webhooks accepted with a warning
- test: automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}


def get_environment() -> str:
    """Current environment, read on every call so tests can override it."""
    environment = os.environ.get("ENVIRONMENT", "development").lower()
    if environment not in VALID_ENVIRONMENTS:
        logging.warning(f"Invalid ENVIRONMENT '{environment}', defaulting to 'development'")
        return "development"
    return environment


def is_production() -> bool:
    """Check if running in production environment."""
    return get_environment() == "production"


def is_development() -> bool:
    """Check if running in development environment."""
    return get_environment() == "development"


def is_test() -> bool:
    """Check if running in test environment."""
    return get_environment() == "test"
