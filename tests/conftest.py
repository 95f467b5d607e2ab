"""Shared test fixtures for the image promotion service.

Fixtures provide in-memory stand-ins for the external systems (registry,
scanner) so the orchestrator can be exercised end to end without network
access or subprocesses.

Key Fixtures:
- registry_client: FakeRegistryClient holding ``abc1234`` in ghcr.io/acme/web
- scan_gate: FakeScanGate returning configurable findings per tag
- approval_gate: ApprovalGate over an in-memory store with fast polling
- audit_log: InMemoryAuditLog
- orchestrator: PromotionOrchestrator wired to all of the above
- make_request: factory for PromotionRequest
- wait_for_pending: await until an attempt is suspended in Gating
- span_exporter: in-memory OpenTelemetry span exporter
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Awaitable, Callable, Generator
from uuid import UUID

import pytest
import structlog

from image_promoter.approval import ApprovalGate, InMemoryApprovalStore
from image_promoter.audit import InMemoryAuditLog
from image_promoter.errors import RegistryError
from image_promoter.orchestrator import PromotionOrchestrator
from image_promoter.registry.reference import ImageReferenceResolver
from image_promoter.scanning.gate import evaluate_findings
from image_promoter.schemas.promotion import (
    Environment,
    Finding,
    ImageReference,
    PromotionRequest,
    ScanResult,
)
from image_promoter.telemetry.tracing import reset_tracer

REGISTRY = "ghcr.io"
REPOSITORY = "acme/web"
SOURCE_DIGEST = "sha256:" + "a" * 64


class FakeRegistryClient:
    """In-memory registry: a tag -> digest map for one repository."""

    def __init__(self, images: dict[str, str] | None = None) -> None:
        self.tags: dict[str, str] = dict(images or {})
        # Manifests stay addressable by digest after their tag moves
        self.manifests: set[str] = set(self.tags.values())
        self.retag_calls: list[tuple[ImageReference, str]] = []
        self.exists_error: Exception | None = None
        self.retag_error: Exception | None = None
        self.retag_delay = 0.0
        self._lock = threading.Lock()

    def exists(self, reference: ImageReference) -> bool:
        if self.exists_error is not None:
            raise self.exists_error
        with self._lock:
            return reference.tag in self.tags

    def digest(self, reference: ImageReference) -> str:
        with self._lock:
            if reference.tag not in self.tags:
                raise RegistryError("inspect", str(reference), "manifest unknown")
            return self.tags[reference.tag]

    def retag(self, source: ImageReference, new_tag: str) -> ImageReference:
        if self.retag_delay:
            time.sleep(self.retag_delay)
        if self.retag_error is not None:
            raise self.retag_error
        with self._lock:
            if source.digest is not None:
                if source.digest not in self.manifests | set(self.tags.values()):
                    raise RegistryError("copy", str(source), "manifest unknown")
                digest = source.digest
            else:
                digest = self.tags[source.tag or ""]
            self.tags[new_tag] = digest
            self.retag_calls.append((source, new_tag))
        return source.with_tag(new_tag)


class FakeScanGate:
    """Scan gate returning preset findings per tag, with default thresholds."""

    def __init__(self) -> None:
        self.findings: dict[str, list[Finding]] = {}
        self.calls: list[ImageReference] = []
        self.error: Exception | None = None
        self.delay = 0.0
        self._lock = threading.Lock()

    def scan(self, image_reference: ImageReference) -> ScanResult:
        with self._lock:
            self.calls.append(image_reference)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return evaluate_findings(
            image_reference,
            self.findings.get(image_reference.tag or "", []),
            scanner="fake",
        )


@pytest.fixture(autouse=True)
def _reset_tracer() -> Generator[None, None, None]:
    """Isolate cached tracers between tests."""
    reset_tracer()
    yield
    reset_tracer()


@pytest.fixture(autouse=True)
def _reset_structlog() -> Generator[None, None, None]:
    """Drop logging configuration bound to a test's (possibly closed) stderr."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def registry_client() -> FakeRegistryClient:
    return FakeRegistryClient({"abc1234": SOURCE_DIGEST})


@pytest.fixture
def scan_gate() -> FakeScanGate:
    return FakeScanGate()


@pytest.fixture
def approval_gate() -> ApprovalGate:
    return ApprovalGate(InMemoryApprovalStore(), poll_interval_seconds=0.01)


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def orchestrator(
    registry_client: FakeRegistryClient,
    scan_gate: FakeScanGate,
    approval_gate: ApprovalGate,
    audit_log: InMemoryAuditLog,
) -> PromotionOrchestrator:
    """Orchestrator over in-memory collaborators with short timeouts."""
    return PromotionOrchestrator(
        resolver=ImageReferenceResolver(registry_client, REGISTRY, REPOSITORY),
        registry_client=registry_client,
        scan_gate=scan_gate,
        approval_gate=approval_gate,
        audit_log=audit_log,
        approval_timeout_seconds=5.0,
        scan_timeout_seconds=5.0,
    )


@pytest.fixture
def make_request() -> Callable[..., PromotionRequest]:
    """Factory for promotion requests (defaults: abc1234 -> staging)."""

    def _make(
        source_sha: str = "abc1234",
        target_tag: str = "staging",
        environment: Environment = Environment.STAGING,
        requested_by: str | None = "ci",
    ) -> PromotionRequest:
        return PromotionRequest(
            source_sha=source_sha,
            target_tag=target_tag,
            environment=environment,
            requested_by=requested_by,
        )

    return _make


@pytest.fixture
def wait_for_pending(approval_gate: ApprovalGate) -> Callable[[UUID], Awaitable[None]]:
    """Return a coroutine function that waits until a request is gated."""

    async def _wait(request_id: UUID, timeout: float = 2.0) -> None:
        async def _poll() -> None:
            while approval_gate.store.get(request_id) is None:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout=timeout)

    return _wait


@pytest.fixture
def span_exporter() -> Generator[object, None, None]:
    """Route promotion spans to an in-memory exporter."""
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import SimpleSpanProcessor
    from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

    from image_promoter.telemetry.tracing import set_tracer

    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    set_tracer(provider.get_tracer("test"))
    yield exporter
    set_tracer(None)
    provider.shutdown()
