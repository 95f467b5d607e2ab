"""Exception hierarchy for the image promotion service.

All exceptions inherit from PromoterError. Domain errors raised by the
resolver, policy engine, scan gate and registry adapter never escape the
orchestrator: they are converted into terminal PromotionOutcome records.
The exit codes are used by the CLI.

Exception Hierarchy:
    PromoterError (base)
    ├── ConfigError                  # Config file missing or invalid
    ├── InvalidReferenceError        # Image reference could not be parsed
    ├── SourceImageNotFoundError     # Source build tag absent from registry
    ├── PolicyViolationError         # Tag naming / versioning rule broken
    ├── ScanGateError                # Scanner could not produce a verdict
    │   ├── ScannerError             # Scanner process failed
    │   ├── ScanOutputParseError     # Scanner output unreadable
    │   └── ScanTimeoutError         # Scanner exceeded its time budget
    ├── RegistryError                # Registry call failed (transient or not)
    └── InvalidTransitionError       # State machine misuse (programming error)

Exit Codes:
    0 - Promoted
    1 - General error (PromoterError)
    2 - Usage / configuration error
    3 - Source image not found
    4 - Policy violation
    5 - Registry error
    6 - Scan gate failed
    7 - Approval rejected or timed out
    8 - Conflicting in-flight promotion
    9 - Cancelled

Example:
    >>> from image_promoter.errors import SourceImageNotFoundError
    >>> raise SourceImageNotFoundError("abc1234", "ghcr.io/acme/web")
    Traceback (most recent call last):
        ...
    SourceImageNotFoundError: Source image not found: ghcr.io/acme/web:abc1234
"""

from __future__ import annotations


class PromoterError(Exception):
    """Base exception for all promotion service errors.

    Attributes:
        exit_code: CLI exit code for this error type (default: 1).
    """

    exit_code: int = 1


class ConfigError(PromoterError):
    """Raised when the service configuration cannot be loaded."""

    exit_code: int = 2


class InvalidReferenceError(PromoterError):
    """Raised when an image reference string cannot be parsed.

    Attributes:
        reference: The offending reference text.
        reason: Why the reference was rejected.
    """

    exit_code: int = 2

    def __init__(self, reference: str, reason: str) -> None:
        self.reference = reference
        self.reason = reason
        super().__init__(f"Invalid image reference '{reference}': {reason}")


class SourceImageNotFoundError(PromoterError):
    """Raised when no image exists for the requested build tag.

    Attributes:
        source_sha: Build tag that was looked up.
        repository: Full repository path that was queried.
    """

    exit_code: int = 3

    def __init__(self, source_sha: str, repository: str) -> None:
        self.source_sha = source_sha
        self.repository = repository
        super().__init__(f"Source image not found: {repository}:{source_sha}")


class PolicyViolationError(PromoterError):
    """Raised when a promotion request breaks a naming or versioning rule.

    Attributes:
        code: Machine-readable rule code (e.g. "InvalidVersionTag").
        reason: Human-readable explanation.

    Example:
        >>> raise PolicyViolationError(
        ...     "InvalidVersionTag",
        ...     "production tags must match vMAJOR.MINOR.PATCH, got 'latest'",
        ... )
        Traceback (most recent call last):
            ...
        PolicyViolationError: InvalidVersionTag: production tags must match ...
    """

    exit_code: int = 4

    def __init__(self, code: str, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"{code}: {reason}")


class ScanGateError(PromoterError):
    """Raised when the scan gate cannot produce a verdict."""

    exit_code: int = 6


class ScannerError(ScanGateError):
    """Raised when the external scanner process fails.

    Attributes:
        scanner: Scanner name (trivy, grype).
        details: stderr or stdout of the failed run.
    """

    def __init__(self, scanner: str, details: str) -> None:
        self.scanner = scanner
        self.details = details
        super().__init__(f"{scanner} scan failed: {details}")


class ScanOutputParseError(ScanGateError):
    """Raised when scanner output cannot be parsed.

    Attributes:
        message: Description of the parse error.
        scanner_format: Scanner format that failed (trivy, grype).
        raw_output: First 500 chars of the problematic output.
    """

    def __init__(
        self,
        message: str,
        scanner_format: str = "unknown",
        raw_output: str | None = None,
    ) -> None:
        self.message = message
        self.scanner_format = scanner_format
        self.raw_output = raw_output[:500] if raw_output else None
        super().__init__(f"{scanner_format}: {message}")


class ScanTimeoutError(ScanGateError):
    """Raised when a scan does not finish within its time budget."""

    def __init__(self, reference: str, timeout_seconds: float) -> None:
        self.reference = reference
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Scan of {reference} timed out after {timeout_seconds}s")


class RegistryError(PromoterError):
    """Raised when a registry operation fails.

    Attributes:
        operation: Registry operation that failed (inspect, copy).
        reference: Image reference involved.
        details: Error output from the registry tool.
        transient: Whether the failure looks transient (network, rate limit).
            Transient failures may be retried by the caller with a new request.
    """

    exit_code: int = 5

    def __init__(
        self,
        operation: str,
        reference: str,
        details: str,
        *,
        transient: bool = False,
    ) -> None:
        self.operation = operation
        self.reference = reference
        self.details = details
        self.transient = transient
        kind = "transient" if transient else "permanent"
        super().__init__(f"Registry {operation} failed for {reference} ({kind}): {details}")


class InvalidTransitionError(PromoterError):
    """Raised when the promotion state machine is driven along an illegal edge."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid promotion transition: {from_state} -> {to_state}")


__all__: list[str] = [
    "ConfigError",
    "InvalidReferenceError",
    "InvalidTransitionError",
    "PolicyViolationError",
    "PromoterError",
    "RegistryError",
    "ScanGateError",
    "ScanOutputParseError",
    "ScanTimeoutError",
    "ScannerError",
    "SourceImageNotFoundError",
]
