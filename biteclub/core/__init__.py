"""
Core module initialization.
Exports configuration, logging utilities and domain errors.
"""

from biteclub.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from biteclub.core.exceptions import BiteClubError

__all__ = ["get_settings", "setup_logging", "Settings", "EnvironmentMode", "BiteClubError"]
