"""Registry of installable applications."""

from typing import Callable

from addonctl.application import Application
from addonctl.applications import karpenter
from addonctl.errors import ConfigurationError

_APPLICATIONS: dict[str, Callable[[], Application]] = {
    "karpenter": karpenter.new_app,
}


def get_application(name: str) -> Application:
    """Build a fresh Application for ``name``."""
    try:
        factory = _APPLICATIONS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown application '{name}'. Available: {', '.join(sorted(_APPLICATIONS))}"
        ) from None
    return factory()


def list_applications() -> list[Application]:
    return [_APPLICATIONS[name]() for name in sorted(_APPLICATIONS)]
