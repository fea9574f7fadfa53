"""
relay-agent - drives a conversation between model backends and local tools.
"""

from .logging_config import configure_logging

__version__ = "0.1.0"

__all__ = ["configure_logging", "__version__"]
