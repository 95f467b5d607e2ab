"""Scanner output parsers.

Converts the JSON reports of supported vulnerability scanners into ordered,
de-duplicated lists of Finding models. Verdicts are decided separately by
evaluate_findings() in image_promoter.scanning.gate.

Supported formats:
    - Trivy: ``trivy image --format json``
    - Grype: ``grype <image> -o json``

Example:
    >>> findings = parse_trivy_output('{"Results": []}')
    >>> findings
    []
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from image_promoter.errors import ScanOutputParseError
from image_promoter.schemas.promotion import Finding, Severity

logger = structlog.get_logger(__name__)


def _load_json(output: str, scanner: str) -> Any:
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        logger.error(f"{scanner}_parse_failed", error=str(e))
        raise ScanOutputParseError(
            f"Invalid {scanner.capitalize()} JSON: {e}",
            scanner_format=scanner,
            raw_output=output,
        ) from e


def parse_trivy_output(output: str) -> list[Finding]:
    """Parse Trivy JSON output into findings.

    The same vulnerability ID reported for several targets (OS packages,
    language lockfiles) is kept once, at its first position.

    Args:
        output: Raw JSON string from Trivy.

    Returns:
        Findings in report order.

    Raises:
        ScanOutputParseError: If output is not valid Trivy JSON.
    """
    data = _load_json(output, "trivy")
    if not isinstance(data, dict) or "Results" not in data:
        logger.error("trivy_missing_results_key")
        raise ScanOutputParseError(
            "Missing 'Results' key in Trivy output",
            scanner_format="trivy",
            raw_output=output,
        )

    findings: list[Finding] = []
    seen: set[str] = set()
    for result in data.get("Results") or []:
        for vuln in result.get("Vulnerabilities") or []:
            vuln_id = vuln.get("VulnerabilityID") or "UNKNOWN"
            if vuln_id in seen:
                continue
            seen.add(vuln_id)
            findings.append(
                Finding(
                    severity=Severity.parse(vuln.get("Severity")),
                    package=vuln.get("PkgName") or "unknown",
                    description=vuln.get("Title") or vuln.get("Description") or "",
                    vulnerability_id=vuln_id,
                    installed_version=vuln.get("InstalledVersion"),
                    fixed_version=vuln.get("FixedVersion") or None,
                )
            )

    logger.debug("trivy_parse_complete", findings=len(findings))
    return findings


def parse_grype_output(output: str) -> list[Finding]:
    """Parse Grype JSON output into findings.

    Grype reports mixed-case severities ("Critical", "Negligible"); they are
    normalized with Severity.parse(). A finding has a fix only when Grype's
    fix state is ``fixed``.

    Raises:
        ScanOutputParseError: If output is not valid Grype JSON.
    """
    data = _load_json(output, "grype")
    if not isinstance(data, dict) or "matches" not in data:
        logger.error("grype_missing_matches_key")
        raise ScanOutputParseError(
            "Missing 'matches' key in Grype output",
            scanner_format="grype",
            raw_output=output,
        )

    findings: list[Finding] = []
    seen: set[str] = set()
    for match in data.get("matches") or []:
        vulnerability = match.get("vulnerability") or {}
        artifact = match.get("artifact") or {}
        vuln_id = vulnerability.get("id") or "UNKNOWN"
        if vuln_id in seen:
            continue
        seen.add(vuln_id)

        fix_info = vulnerability.get("fix") or {}
        fixed_version = None
        if fix_info.get("state") == "fixed":
            versions = fix_info.get("versions") or []
            fixed_version = versions[0] if versions else "fixed"

        findings.append(
            Finding(
                severity=Severity.parse(vulnerability.get("severity")),
                package=artifact.get("name") or "unknown",
                description=vulnerability.get("description") or "",
                vulnerability_id=vuln_id,
                installed_version=artifact.get("version"),
                fixed_version=fixed_version,
            )
        )

    logger.debug("grype_parse_complete", findings=len(findings))
    return findings


PARSERS = {
    "trivy": parse_trivy_output,
    "grype": parse_grype_output,
}


__all__ = ["PARSERS", "parse_grype_output", "parse_trivy_output"]
