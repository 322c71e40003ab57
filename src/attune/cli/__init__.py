"""Attune CLI - command-line interface.

Subcommand groups:
- brand: Brand detection and drift review
- db: Database operations
- gate: Confidence gate inspection and reset
"""

from attune.cli.main import app, main

__all__ = ["app", "main"]
