"""Slideforge: multi-agent presentation content orchestration."""

__version__ = "0.1.0"
