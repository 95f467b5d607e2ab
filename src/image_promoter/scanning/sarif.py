"""SARIF 2.1.0 exporter for scan results.

Exports a ScanResult to SARIF (Static Analysis Results Interchange Format)
version 2.1.0 so a promotion's findings can be uploaded to a code-scanning
dashboard. One rule is emitted per vulnerability ID.

SARIF Specification: https://docs.oasis-open.org/sarif/sarif/v2.1.0/sarif-v2.1.0.html

Example:
    >>> export_sarif(outcome.scan_result, Path("output/scan.sarif"))
    PosixPath('output/scan.sarif')
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from image_promoter.schemas.promotion import Severity

if TYPE_CHECKING:
    from image_promoter.schemas.promotion import Finding, ScanResult

logger = structlog.get_logger(__name__)

SARIF_SCHEMA = (
    "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"
)
SARIF_VERSION = "2.1.0"

TOOL_NAME = "image-promoter-scan-gate"
TOOL_VERSION = "1.0.0"

SEVERITY_LEVELS: dict[Severity, str] = {
    Severity.CRITICAL: "error",
    Severity.HIGH: "error",
    Severity.MEDIUM: "warning",
    Severity.LOW: "note",
    Severity.UNKNOWN: "note",
}

# GitHub code scanning ranks findings by this numeric property
SECURITY_SEVERITY_SCORES: dict[Severity, str] = {
    Severity.CRITICAL: "9.5",
    Severity.HIGH: "8.0",
    Severity.MEDIUM: "5.5",
    Severity.LOW: "2.0",
    Severity.UNKNOWN: "0.0",
}


def export_sarif(scan_result: ScanResult, output_path: Path) -> Path:
    """Export a ScanResult to a SARIF 2.1.0 file.

    Args:
        scan_result: Verdict and findings from the scan gate.
        output_path: Path where the SARIF file should be written.

    Returns:
        The output path where the file was written.

    Raises:
        OSError: If the file cannot be written.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    document = build_sarif_document(scan_result)
    output_path.write_text(json.dumps(document, indent=2, ensure_ascii=False), encoding="utf-8")

    logger.info(
        "sarif_export_complete",
        output_path=str(output_path),
        findings_count=len(scan_result.findings),
        blocking_count=len(scan_result.blocking_vulnerabilities),
        verdict=scan_result.verdict.value,
    )
    return output_path


def build_sarif_document(scan_result: ScanResult) -> dict[str, Any]:
    """Build the SARIF document structure for a ScanResult."""
    blocking = set(scan_result.blocking_vulnerabilities)
    return {
        "$schema": SARIF_SCHEMA,
        "version": SARIF_VERSION,
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": TOOL_NAME,
                        "version": TOOL_VERSION,
                        "rules": _build_rules(scan_result.findings),
                    }
                },
                "invocations": [
                    {
                        "executionSuccessful": True,
                        "endTimeUtc": scan_result.scanned_at.isoformat().replace("+00:00", "Z"),
                    }
                ],
                "properties": {
                    "scanner": scan_result.scanner,
                    "verdict": scan_result.verdict.value,
                    "imageReference": str(scan_result.image_reference),
                },
                "results": [
                    _build_result(finding, str(scan_result.image_reference), blocking)
                    for finding in scan_result.findings
                ],
            }
        ],
    }


def _build_rules(findings: list[Finding]) -> list[dict[str, Any]]:
    rules: list[dict[str, Any]] = []
    seen: set[str] = set()
    for finding in findings:
        if finding.vulnerability_id in seen:
            continue
        seen.add(finding.vulnerability_id)
        rules.append({
            "id": finding.vulnerability_id,
            "name": finding.vulnerability_id.replace("-", ""),
            "shortDescription": {
                "text": finding.description or f"{finding.vulnerability_id} in {finding.package}",
            },
            "properties": {
                "security-severity": SECURITY_SEVERITY_SCORES[finding.severity],
                "tags": ["security", "vulnerability"],
            },
        })
    return rules


def _build_result(finding: Finding, image: str, blocking: set[str]) -> dict[str, Any]:
    installed = finding.installed_version or ""
    text = f"{finding.package} {installed} is affected by {finding.vulnerability_id}"
    if finding.has_fix:
        text += f" (fixed in {finding.fixed_version})"
    return {
        "ruleId": finding.vulnerability_id,
        "level": SEVERITY_LEVELS[finding.severity],
        "message": {"text": " ".join(text.split())},
        "locations": [
            {
                "physicalLocation": {
                    "artifactLocation": {"uri": image},
                }
            }
        ],
        "properties": {
            "severity": finding.severity.value,
            "package": finding.package,
            "blocking": finding.vulnerability_id in blocking,
        },
    }


__all__ = ["build_sarif_document", "export_sarif"]
