"""Scan gate: obtain a pass/fail vulnerability verdict for an image.

The gate never analyzes images itself. CommandScanGate runs an external
scanner and evaluates its findings against the configured severity
threshold; CachingScanGate memoizes verdicts per reference, since a build
tag always names the same immutable image.

Example:
    >>> gate = CachingScanGate(CommandScanGate(config.scanner))
    >>> result = gate.scan(source_ref)
    >>> result.verdict
    <ScanVerdict.PASS: 'pass'>
"""

from __future__ import annotations

import subprocess
import threading
from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

from image_promoter.errors import ScannerError, ScanTimeoutError
from image_promoter.schemas.promotion import (
    Finding,
    ImageReference,
    ScanResult,
    ScanVerdict,
    Severity,
)
from image_promoter.scanning.parsers import PARSERS
from image_promoter.telemetry.sanitization import sanitize_error_message
from image_promoter.telemetry.tracing import create_span

if TYPE_CHECKING:
    from image_promoter.schemas.config import ScannerConfig

logger = structlog.get_logger(__name__)

DEFAULT_BLOCK_ON_SEVERITY: tuple[Severity, ...] = (Severity.CRITICAL, Severity.HIGH)


@runtime_checkable
class ScanGate(Protocol):
    """Produces a verdict for one immutable image reference."""

    def scan(self, image_reference: ImageReference) -> ScanResult:
        """Scan the image and return its verdict.

        Raises:
            ScanGateError: If no verdict could be produced.
        """
        ...


def evaluate_findings(
    image_reference: ImageReference,
    findings: Iterable[Finding],
    block_on_severity: Iterable[Severity] = DEFAULT_BLOCK_ON_SEVERITY,
    ignore_unfixed: bool = False,
    scanner: str = "unknown",
) -> ScanResult:
    """Decide the verdict for a set of findings.

    A finding blocks when its severity is in ``block_on_severity``, unless
    ``ignore_unfixed`` is set and no fixed version exists. Lower severities
    are recorded on the result but never block.

    Args:
        image_reference: The scanned reference.
        findings: Findings in scanner order.
        block_on_severity: Severities that fail the gate. Empty means never fail.
        ignore_unfixed: Skip findings without a fix when deciding.
        scanner: Scanner name recorded on the result.

    Returns:
        ScanResult with verdict FAIL if any finding blocks.
    """
    findings = list(findings)
    blocking_set = set(block_on_severity)
    blocking: list[str] = []
    ignored_unfixed = 0

    for finding in findings:
        if finding.severity not in blocking_set:
            continue
        if ignore_unfixed and not finding.has_fix:
            ignored_unfixed += 1
            continue
        blocking.append(finding.vulnerability_id)

    verdict = ScanVerdict.FAIL if blocking else ScanVerdict.PASS
    result = ScanResult(
        image_reference=image_reference,
        verdict=verdict,
        findings=findings,
        blocking_vulnerabilities=blocking,
        ignored_unfixed=ignored_unfixed,
        scanner=scanner,
    )
    logger.info(
        "scan_gate_evaluated",
        reference=str(image_reference),
        verdict=verdict.value,
        blocking=len(blocking),
        ignored_unfixed=ignored_unfixed,
        **{k.lower(): v for k, v in result.severity_counts().items()},
    )
    return result


class CommandScanGate:
    """ScanGate that runs Trivy or Grype as a subprocess.

    Args:
        config: Scanner section of the service configuration.
    """

    def __init__(self, config: ScannerConfig) -> None:
        self._config = config

    @property
    def scanner(self) -> str:
        return self._config.tool

    def build_command(self, image_reference: ImageReference) -> list[str]:
        """Return the scanner command line for ``image_reference``."""
        binary = self._config.binary or self._config.tool
        if self._config.tool == "trivy":
            return [binary, "image", "--format", "json", "--quiet", str(image_reference)]
        return [binary, str(image_reference), "-o", "json"]

    def scan(self, image_reference: ImageReference) -> ScanResult:
        command = self.build_command(image_reference)
        log = logger.bind(scanner=self.scanner, reference=str(image_reference))

        with create_span(
            "promoter.scanner.run",
            attributes={"scanner": self.scanner, "reference": str(image_reference)},
        ):
            log.info("scanner_started")
            try:
                completed = subprocess.run(
                    command,
                    check=False,
                    text=True,
                    capture_output=True,
                    timeout=self._config.timeout_seconds,
                )
            except subprocess.TimeoutExpired as e:
                log.warning("scanner_timed_out", timeout_seconds=self._config.timeout_seconds)
                raise ScanTimeoutError(str(image_reference), self._config.timeout_seconds) from e
            except FileNotFoundError as e:
                raise ScannerError(self.scanner, f"executable not found: {command[0]}") from e

            if completed.returncode != 0:
                details = sanitize_error_message(
                    (completed.stderr or completed.stdout or "").strip()
                    or f"exit code {completed.returncode}"
                )
                log.error("scanner_failed", returncode=completed.returncode)
                raise ScannerError(self.scanner, details)

            findings = PARSERS[self.scanner](completed.stdout)

        return evaluate_findings(
            image_reference,
            findings,
            block_on_severity=self._config.block_on_severity,
            ignore_unfixed=self._config.ignore_unfixed,
            scanner=self.scanner,
        )


class CachingScanGate:
    """Memoize verdicts per image reference.

    Errors are not cached, so a scanner failure can be retried by a later
    request. Thread-safe; concurrent scans of the same reference may both run
    but the first stored result wins.
    """

    def __init__(self, inner: ScanGate) -> None:
        self._inner = inner
        self._results: dict[ImageReference, ScanResult] = {}
        self._lock = threading.Lock()

    def scan(self, image_reference: ImageReference) -> ScanResult:
        with self._lock:
            cached = self._results.get(image_reference)
        if cached is not None:
            logger.debug("scan_cache_hit", reference=str(image_reference))
            return cached

        result = self._inner.scan(image_reference)
        with self._lock:
            return self._results.setdefault(image_reference, result)

    def clear(self) -> None:
        with self._lock:
            self._results.clear()


__all__ = [
    "DEFAULT_BLOCK_ON_SEVERITY",
    "CachingScanGate",
    "CommandScanGate",
    "ScanGate",
    "evaluate_findings",
]
