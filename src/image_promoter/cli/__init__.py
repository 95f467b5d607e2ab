"""Command-line interface for the image promotion service."""

from __future__ import annotations

from image_promoter.cli.main import cli, main

__all__ = ["cli", "main"]
