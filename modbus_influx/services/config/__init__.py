"""
Config Service

Responsibilities:
- Load the configuration document (TOML or YAML)
- Validate its shape and cross-references, reporting every violation
- Resolve templates and devices into the poll target table
"""

from .loader import load_config, load_document, parse_document
from .registry import build_app_config, build_poll_targets

__all__ = [
    "load_config",
    "load_document",
    "parse_document",
    "build_app_config",
    "build_poll_targets",
]
