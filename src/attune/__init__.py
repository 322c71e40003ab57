"""Attune - extraction and tuning pipeline for grounded chat assistants."""

__version__ = "0.1.0"
