"""Fallback orchestration exceptions."""

from collections.abc import Mapping
from types import MappingProxyType

from resilience_core.errors import ResilienceError


class AllStrategiesFailedError(ResilienceError):
    """Raised when every live tier and the template (if any) failed.

    Attributes:
        dependency: Dependency whose request could not be satisfied.
        errors: Failure per attempted tier, keyed by tier name.
    """

    def __init__(self, dependency: str, errors: Mapping[str, BaseException]) -> None:
        self.dependency = dependency
        self.errors = MappingProxyType(dict(errors))
        tiers = ", ".join(self.errors) or "none"
        super().__init__(
            f"All fallback strategies failed for {dependency} (attempted: {tiers})"
        )
