"""Command-line interface for pmsheet maintenance tasks."""

from pmsheet.cli.main import build_parser, main

__all__ = ["build_parser", "main"]
