"""Tag naming and versioning policy.

Rules are plain callables evaluated in order; the first violation wins and
later rules are not run. A rule returns an optional warning and raises
PolicyViolationError to reject a request.

Rules (in order):
    1. require_valid_tag: target tag is non-empty and registry-safe
       (code ``InvalidTagFormat``)
    2. require_semver_for_production: production tags match vMAJOR.MINOR.PATCH
       (code ``InvalidVersionTag``)
    3. warn_on_nonstandard_staging_tag: staging tags other than ``staging``
       pass with a warning

Example:
    >>> engine = PolicyEngine()
    >>> engine.validate(request).warnings
    []
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import structlog

from image_promoter.errors import PolicyViolationError
from image_promoter.schemas.promotion import TAG_PATTERN, Environment, PromotionRequest

logger = structlog.get_logger(__name__)

SEMVER_TAG_PATTERN = re.compile(r"v[0-9]+\.[0-9]+\.[0-9]+")
"""Release tag required for production: vMAJOR.MINOR.PATCH, nothing else."""

STAGING_TAG = "staging"

PolicyRule = Callable[[PromotionRequest], "str | None"]


def require_valid_tag(request: PromotionRequest) -> str | None:
    tag = request.target_tag
    if not tag:
        raise PolicyViolationError("InvalidTagFormat", "target tag must not be empty")
    if not TAG_PATTERN.fullmatch(tag):
        raise PolicyViolationError(
            "InvalidTagFormat",
            f"target tag '{tag}' contains characters a registry does not accept "
            "or exceeds 128 characters",
        )
    return None


def require_semver_for_production(request: PromotionRequest) -> str | None:
    if request.environment is Environment.PRODUCTION and not SEMVER_TAG_PATTERN.fullmatch(
        request.target_tag
    ):
        raise PolicyViolationError(
            "InvalidVersionTag",
            f"production tags must match vMAJOR.MINOR.PATCH, got '{request.target_tag}'",
        )
    return None


def warn_on_nonstandard_staging_tag(request: PromotionRequest) -> str | None:
    if request.environment is Environment.STAGING and request.target_tag != STAGING_TAG:
        return f"staging promotion uses non-standard tag '{request.target_tag}'"
    return None


DEFAULT_RULES: tuple[PolicyRule, ...] = (
    require_valid_tag,
    require_semver_for_production,
    warn_on_nonstandard_staging_tag,
)


@dataclass(frozen=True)
class PolicyResult:
    """Outcome of a passing policy check."""

    warnings: list[str] = field(default_factory=list)


class PolicyEngine:
    """Evaluate naming and versioning rules against a promotion request.

    Args:
        rules: Rules to evaluate, in order. Defaults to DEFAULT_RULES.
        extra_rules: Rules appended after ``rules``.
    """

    def __init__(
        self,
        rules: Sequence[PolicyRule] | None = None,
        extra_rules: Sequence[PolicyRule] = (),
    ) -> None:
        self._rules: tuple[PolicyRule, ...] = tuple(
            DEFAULT_RULES if rules is None else rules
        ) + tuple(extra_rules)

    @property
    def rules(self) -> tuple[PolicyRule, ...]:
        return self._rules

    def validate(self, request: PromotionRequest) -> PolicyResult:
        """Run every rule in order.

        Raises:
            PolicyViolationError: On the first violated rule.
        """
        log = logger.bind(
            request_id=str(request.request_id),
            environment=request.environment.value,
            target_tag=request.target_tag,
        )
        warnings: list[str] = []
        for rule in self._rules:
            try:
                warning = rule(request)
            except PolicyViolationError as e:
                log.info("policy_violation", code=e.code, rule=getattr(rule, "__name__", "rule"))
                raise
            if warning:
                warnings.append(warning)

        log.debug("policy_check_passed", warnings=len(warnings))
        return PolicyResult(warnings=warnings)


__all__ = [
    "DEFAULT_RULES",
    "SEMVER_TAG_PATTERN",
    "PolicyEngine",
    "PolicyResult",
    "PolicyRule",
    "require_semver_for_production",
    "require_valid_tag",
    "warn_on_nonstandard_staging_tag",
]
