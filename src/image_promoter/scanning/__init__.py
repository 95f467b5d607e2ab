"""Vulnerability scan gate: scanner adapters, report parsers and SARIF export."""

from __future__ import annotations

from image_promoter.scanning.gate import (
    CachingScanGate,
    CommandScanGate,
    ScanGate,
    evaluate_findings,
)
from image_promoter.scanning.parsers import parse_grype_output, parse_trivy_output
from image_promoter.scanning.sarif import build_sarif_document, export_sarif

__all__ = [
    "CachingScanGate",
    "CommandScanGate",
    "ScanGate",
    "build_sarif_document",
    "evaluate_findings",
    "export_sarif",
    "parse_grype_output",
    "parse_trivy_output",
]
