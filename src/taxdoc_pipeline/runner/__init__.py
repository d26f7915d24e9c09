"""
CLI runner module.

Provides commands:
- init-config: Write a default config file
- process: Extract tax fields from documents
- aggregate: Sum a spreadsheet tax report
- correct: Submit reviewer feedback
- stats / health: Inspect the pipeline
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
