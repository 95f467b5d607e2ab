"""Registry client adapters.

The promotion workflow talks to the registry through the small RegistryClient
protocol. SkopeoRegistryClient implements it by shelling out to ``skopeo``,
which reads manifests and copies tags registry-to-registry without pulling
images into a local daemon.

Retagging is non-destructive: ``skopeo copy`` with ``--preserve-digests``
adds a tag pointing at the source manifest and never removes the source tag.
"""

from __future__ import annotations

import json
import re
import subprocess
from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import structlog

from image_promoter.errors import RegistryError
from image_promoter.telemetry.sanitization import sanitize_error_message
from image_promoter.telemetry.tracing import traced

if TYPE_CHECKING:
    from image_promoter.schemas.config import RegistryConfig
    from image_promoter.schemas.promotion import ImageReference

logger = structlog.get_logger(__name__)

_NOT_FOUND_PATTERN = re.compile(
    r"manifest unknown|not found|name unknown|no such image",
    re.IGNORECASE,
)
_TRANSIENT_PATTERN = re.compile(
    r"timeout|timed out|connection (?:reset|refused)|temporary failure|"
    r"too many requests|\b429\b|\b50[234]\b|\beof\b",
    re.IGNORECASE,
)


@runtime_checkable
class RegistryClient(Protocol):
    """Registry operations needed by the promotion workflow."""

    def exists(self, reference: ImageReference) -> bool:
        """Return True if the reference resolves to a manifest."""
        ...

    def digest(self, reference: ImageReference) -> str:
        """Return the manifest digest the reference points at."""
        ...

    def retag(self, source: ImageReference, new_tag: str) -> ImageReference:
        """Point ``new_tag`` at the manifest of ``source`` and return the new reference."""
        ...


def is_transient(details: str) -> bool:
    """Whether registry tool output looks like a retryable failure."""
    return bool(_TRANSIENT_PATTERN.search(details))


class SkopeoRegistryClient:
    """RegistryClient backed by the ``skopeo`` CLI.

    Args:
        config: Registry section of the service configuration. Credentials
            are read from the environment variables it names at call time.

    Example:
        >>> client = SkopeoRegistryClient(config.registry)
        >>> client.retag(source_ref, "staging")
        ImageReference(registry='ghcr.io', repository='acme/web', tag='staging', digest=None)
    """

    def __init__(self, config: RegistryConfig) -> None:
        self._config = config

    def _base_command(self, subcommand: str) -> list[str]:
        command = [
            self._config.skopeo_binary,
            subcommand,
            "--retry-times",
            str(self._config.retry_times),
        ]
        if not self._config.tls_verify:
            if subcommand == "copy":
                command.extend(["--src-tls-verify=false", "--dest-tls-verify=false"])
            else:
                command.append("--tls-verify=false")
        return command

    def _run(self, args: Sequence[str], *, operation: str, reference: ImageReference) -> str:
        """Run a skopeo command, returning stdout.

        Raises:
            RegistryError: On non-zero exit, timeout, or missing binary.
        """
        try:
            result = subprocess.run(
                list(args),
                check=True,
                text=True,
                capture_output=True,
                timeout=self._config.command_timeout_seconds,
            )
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            stdout = (exc.stdout or "").strip()
            details = sanitize_error_message(stderr or stdout or str(exc))
            raise RegistryError(
                operation, str(reference), details, transient=is_transient(details)
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise RegistryError(
                operation,
                str(reference),
                f"skopeo did not finish within {self._config.command_timeout_seconds}s",
                transient=True,
            ) from exc
        except FileNotFoundError as exc:
            raise RegistryError(
                operation,
                str(reference),
                f"skopeo is not installed or not on PATH: {self._config.skopeo_binary}",
            ) from exc
        return result.stdout

    def _inspect(self, reference: ImageReference) -> dict:
        command = self._base_command("inspect")
        creds = self._config.credentials()
        if creds:
            command.extend(["--creds", creds])
        command.append(reference.transport_ref())
        output = self._run(command, operation="inspect", reference=reference)
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise RegistryError(
                "inspect", str(reference), "expected JSON from skopeo inspect"
            ) from exc

    @traced(name="promoter.registry.exists", attributes={"tool": "skopeo"})
    def exists(self, reference: ImageReference) -> bool:
        """True when the reference exists; registry failures other than "not found" raise."""
        try:
            self._inspect(reference)
        except RegistryError as e:
            if _NOT_FOUND_PATTERN.search(e.details):
                return False
            raise
        return True

    @traced(name="promoter.registry.digest", attributes={"tool": "skopeo"})
    def digest(self, reference: ImageReference) -> str:
        inspect_json = self._inspect(reference)
        digest = str(inspect_json.get("Digest") or "")
        if not digest:
            raise RegistryError("inspect", str(reference), "missing digest in skopeo output")
        return digest

    @traced(name="promoter.registry.retag", attributes={"tool": "skopeo"})
    def retag(self, source: ImageReference, new_tag: str) -> ImageReference:
        target = source.with_tag(new_tag)
        command = self._base_command("copy")
        command.append("--preserve-digests")
        creds = self._config.credentials()
        if creds:
            command.extend(["--src-creds", creds, "--dest-creds", creds])
        command.extend([source.transport_ref(), target.transport_ref()])

        log = logger.bind(source=str(source), target=str(target))
        log.info("registry_retag_started", retry_times=self._config.retry_times)
        self._run(command, operation="copy", reference=target)
        log.info("registry_retag_completed")
        return target


__all__ = ["RegistryClient", "SkopeoRegistryClient", "is_transient"]
