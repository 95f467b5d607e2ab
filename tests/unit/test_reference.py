"""Unit tests for image reference parsing and resolution."""

from __future__ import annotations

from typing import Any

import pytest

from image_promoter.errors import InvalidReferenceError, RegistryError, SourceImageNotFoundError
from image_promoter.registry.reference import ImageReferenceResolver, parse_reference
from image_promoter.schemas.promotion import ImageReference

SOURCE_DIGEST = "sha256:" + "a" * 64


class TestParseReference:
    """Tests for parse_reference."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            (
                "docker://ghcr.io/acme/web:abc1234",
                ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234"),
            ),
            (
                "ghcr.io/acme/web:abc1234",
                ImageReference(registry="ghcr.io", repository="acme/web", tag="abc1234"),
            ),
            (
                "localhost:5000/web:v1.0.0",
                ImageReference(registry="localhost:5000", repository="web", tag="v1.0.0"),
            ),
            (
                "library/nginx:1.25",
                ImageReference(registry="docker.io", repository="library/nginx", tag="1.25"),
            ),
            (
                f"ghcr.io/acme/web@{SOURCE_DIGEST}",
                ImageReference(registry="ghcr.io", repository="acme/web", digest=SOURCE_DIGEST),
            ),
        ],
    )
    def test_parses_valid_references(self, text: str, expected: ImageReference) -> None:
        assert parse_reference(text) == expected

    def test_port_is_not_mistaken_for_tag(self) -> None:
        with pytest.raises(InvalidReferenceError, match="tag or a digest"):
            parse_reference("localhost:5000/web")

    @pytest.mark.parametrize(
        "text",
        ["", "docker://", "ghcr.io/acme/web", "ghcr.io//web:tag", "ghcr.io/acme/web:bad tag"],
    )
    def test_rejects_invalid_references(self, text: str) -> None:
        with pytest.raises(InvalidReferenceError):
            parse_reference(text)

    def test_invalid_digest_is_reported(self) -> None:
        with pytest.raises(InvalidReferenceError, match="invalid digest"):
            parse_reference("ghcr.io/acme/web@sha256:nothex")


class TestImageReferenceResolver:
    """Tests for ImageReferenceResolver."""

    @pytest.fixture
    def resolver(self, registry_client: Any) -> ImageReferenceResolver:
        return ImageReferenceResolver(registry_client, "ghcr.io", "acme/web")

    def test_resolves_existing_build_tag(self, resolver: ImageReferenceResolver) -> None:
        assert resolver.resolve("abc1234") == ImageReference(
            registry="ghcr.io", repository="acme/web", tag="abc1234"
        )

    def test_missing_build_tag_raises_not_found(self, resolver: ImageReferenceResolver) -> None:
        with pytest.raises(SourceImageNotFoundError) as exc_info:
            resolver.resolve("zzzzzzz")
        assert exc_info.value.source_sha == "zzzzzzz"
        assert exc_info.value.repository == "ghcr.io/acme/web"
        assert exc_info.value.exit_code == 3

    def test_registry_errors_propagate(
        self, resolver: ImageReferenceResolver, registry_client: Any
    ) -> None:
        registry_client.exists_error = RegistryError("inspect", "x", "boom", transient=True)
        with pytest.raises(RegistryError):
            resolver.resolve("abc1234")

    def test_build_does_not_touch_registry(self, resolver: ImageReferenceResolver) -> None:
        ref = resolver.build("v2.0.0")
        assert str(ref) == "ghcr.io/acme/web:v2.0.0"

    def test_build_rejects_invalid_tag(self, resolver: ImageReferenceResolver) -> None:
        with pytest.raises(InvalidReferenceError):
            resolver.build("not a tag")

    def test_repository_path(self, resolver: ImageReferenceResolver) -> None:
        assert resolver.repository_path == "ghcr.io/acme/web"
