"""Registry access: reference parsing, resolution and the skopeo adapter."""

from __future__ import annotations

from image_promoter.registry.client import RegistryClient, SkopeoRegistryClient, is_transient
from image_promoter.registry.reference import ImageReferenceResolver, parse_reference

__all__ = [
    "ImageReferenceResolver",
    "RegistryClient",
    "SkopeoRegistryClient",
    "is_transient",
    "parse_reference",
]
