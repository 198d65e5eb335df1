from addonctl.resources.backend import LookupResult, ResourceBackend, ResourceHandler
from addonctl.resources.resource import (
    PreparedResource,
    Resource,
    ensure_all,
    flatten,
    prepare_all,
    teardown_all,
)

__all__ = [
    "LookupResult",
    "PreparedResource",
    "Resource",
    "ResourceBackend",
    "ResourceHandler",
    "ensure_all",
    "flatten",
    "prepare_all",
    "teardown_all",
]
