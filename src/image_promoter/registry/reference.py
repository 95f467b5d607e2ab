"""Image reference parsing and resolution.

The resolver turns a build tag (git short-SHA) into a concrete source
ImageReference after checking that the image exists, and builds target
references in the same repository.

Example:
    >>> parse_reference("docker://ghcr.io/acme/web:abc1234")
    ImageReference(registry='ghcr.io', repository='acme/web', tag='abc1234', digest=None)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from image_promoter.errors import InvalidReferenceError, SourceImageNotFoundError
from image_promoter.schemas.promotion import TAG_PATTERN, ImageReference

if TYPE_CHECKING:
    from image_promoter.registry.client import RegistryClient

logger = structlog.get_logger(__name__)

TRANSPORT_PREFIX = "docker://"
DEFAULT_REGISTRY = "docker.io"


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def parse_reference(text: str) -> ImageReference:
    """Parse ``[docker://][registry/]repository(:tag|@digest)``.

    The first path component is treated as a registry host when it contains
    a dot or a port, or is ``localhost`` (the Docker convention).

    Args:
        text: Reference text.

    Returns:
        Parsed ImageReference.

    Raises:
        InvalidReferenceError: If the text is not a valid reference.
    """
    raw = text.strip()
    if raw.startswith(TRANSPORT_PREFIX):
        raw = raw[len(TRANSPORT_PREFIX) :]
    if not raw:
        raise InvalidReferenceError(text, "empty reference")

    tag: str | None = None
    digest: str | None = None
    if "@" in raw:
        raw, digest = raw.split("@", 1)
    else:
        last_slash = raw.rfind("/")
        last_colon = raw.rfind(":")
        if last_colon > last_slash:
            raw, tag = raw[:last_colon], raw[last_colon + 1 :]

    if tag is None and digest is None:
        raise InvalidReferenceError(text, "reference needs a tag or a digest")

    parts = raw.split("/")
    if len(parts) > 1 and _looks_like_registry(parts[0]):
        registry, repository = parts[0], "/".join(parts[1:])
    else:
        registry, repository = DEFAULT_REGISTRY, raw

    if not repository or any(not part for part in repository.split("/")):
        raise InvalidReferenceError(text, "empty repository path")

    try:
        return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)
    except ValidationError as e:
        reasons = "; ".join(str(err["msg"]) for err in e.errors())
        raise InvalidReferenceError(text, reasons) from e


class ImageReferenceResolver:
    """Resolve build tags against one registry repository.

    Args:
        registry_client: Adapter used for existence queries.
        registry: Registry host, e.g. ghcr.io.
        repository: Repository path, e.g. acme/web.
    """

    def __init__(self, registry_client: RegistryClient, registry: str, repository: str) -> None:
        self._client = registry_client
        self.registry = registry
        self.repository = repository

    @property
    def repository_path(self) -> str:
        """Registry and repository, the key for per-tag locking."""
        return f"{self.registry}/{self.repository}"

    def build(self, target_tag: str) -> ImageReference:
        """Return the reference for ``target_tag`` in this repository. No I/O.

        Raises:
            InvalidReferenceError: If the tag is not registry-safe.
        """
        if not TAG_PATTERN.fullmatch(target_tag or ""):
            raise InvalidReferenceError(f"{self.repository_path}:{target_tag}", "invalid tag")
        return ImageReference(registry=self.registry, repository=self.repository, tag=target_tag)

    def resolve(self, source_sha: str) -> ImageReference:
        """Return the source reference for a build tag, after checking it exists.

        Raises:
            SourceImageNotFoundError: If no image carries the build tag.
            RegistryError: If the registry cannot be queried.
        """
        reference = self.build(source_sha)
        log = logger.bind(reference=str(reference))
        if not self._client.exists(reference):
            log.info("source_image_missing")
            raise SourceImageNotFoundError(source_sha, self.repository_path)
        log.debug("source_image_resolved")
        return reference


__all__ = [
    "DEFAULT_REGISTRY",
    "TAG_PATTERN",
    "ImageReferenceResolver",
    "parse_reference",
]
