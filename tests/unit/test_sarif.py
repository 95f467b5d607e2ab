"""Unit tests for the SARIF exporter."""

from __future__ import annotations

import json
from pathlib import Path

from image_promoter.scanning.gate import evaluate_findings
from image_promoter.scanning.sarif import (
    SARIF_VERSION,
    TOOL_NAME,
    build_sarif_document,
    export_sarif,
)
from image_promoter.schemas.promotion import Finding, ImageReference, ScanResult, Severity

REF = ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234")


def _scan_result() -> ScanResult:
    return evaluate_findings(
        REF,
        [
            Finding(
                severity=Severity.CRITICAL,
                package="openssl",
                vulnerability_id="CVE-2024-0001",
                installed_version="3.0.11",
                fixed_version="3.0.13",
                description="buffer overflow",
            ),
            Finding(severity=Severity.LOW, package="zlib", vulnerability_id="CVE-2024-0002"),
        ],
        scanner="trivy",
    )


class TestBuildSarifDocument:
    """Tests for build_sarif_document."""

    def test_document_header(self) -> None:
        document = build_sarif_document(_scan_result())
        assert document["version"] == SARIF_VERSION
        assert "$schema" in document
        run = document["runs"][0]
        assert run["tool"]["driver"]["name"] == TOOL_NAME
        assert run["properties"] == {
            "scanner": "trivy",
            "verdict": "fail",
            "imageReference": "ghcr.io/acme/web:abc1234",
        }

    def test_one_rule_per_vulnerability(self) -> None:
        rules = build_sarif_document(_scan_result())["runs"][0]["tool"]["driver"]["rules"]
        assert [rule["id"] for rule in rules] == ["CVE-2024-0001", "CVE-2024-0002"]
        assert rules[0]["properties"]["security-severity"] == "9.5"
        assert rules[1]["shortDescription"]["text"] == "CVE-2024-0002 in zlib"

    def test_results_mark_blocking_findings(self) -> None:
        results = build_sarif_document(_scan_result())["runs"][0]["results"]

        critical, low = results
        assert critical["level"] == "error"
        assert critical["properties"]["blocking"] is True
        assert critical["message"]["text"] == (
            "openssl 3.0.11 is affected by CVE-2024-0001 (fixed in 3.0.13)"
        )
        assert low["level"] == "note"
        assert low["properties"]["blocking"] is False
        assert low["message"]["text"] == "zlib is affected by CVE-2024-0002"
        assert (
            critical["locations"][0]["physicalLocation"]["artifactLocation"]["uri"]
            == "ghcr.io/acme/web:abc1234"
        )

    def test_passing_scan_has_no_results(self) -> None:
        document = build_sarif_document(evaluate_findings(REF, []))
        assert document["runs"][0]["results"] == []
        assert document["runs"][0]["properties"]["verdict"] == "pass"


class TestExportSarif:
    def test_writes_json_file(self, tmp_path: Path) -> None:
        output = tmp_path / "nested" / "scan.sarif"

        written = export_sarif(_scan_result(), output)

        assert written == output
        data = json.loads(output.read_text(encoding="utf-8"))
        assert len(data["runs"][0]["results"]) == 2
        assert data["runs"][0]["invocations"][0]["endTimeUtc"].endswith("Z")
