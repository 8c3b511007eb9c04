"""Configuration module for the billing workflow engine."""

from billing_workflow.config.logging import configure_logging
from billing_workflow.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings", "configure_logging"]
