from abc import ABC, abstractmethod
from typing import NamedTuple, Optional

from addonctl.errors import ConfigurationError
from addonctl.models import ResourceKind


class LookupResult(NamedTuple):
    exists: bool
    identifier: Optional[str] = None


class ResourceHandler(ABC):
    """Lookup/create/delete contract for a single resource kind."""

    @abstractmethod
    def lookup(self, key: str) -> LookupResult:
        """Check whether the resource identified by key exists."""
        pass

    @abstractmethod
    def create(self, params: dict) -> str:
        """Create the resource and return its identifier."""
        pass

    @abstractmethod
    def delete(self, identifier: str) -> None:
        """Delete the resource. Must tolerate an already-absent resource."""
        pass

    def reconcile(self, identifier: str, params: dict) -> None:
        """Bring an existing resource in line with params.

        Runs on every ensure that finds the resource, so a create that failed
        partway is completed by the next run. Must be idempotent.
        """


class ResourceBackend:
    """Dispatches resource operations to the handler registered for each kind."""

    def __init__(self, handlers: Optional[dict[ResourceKind, ResourceHandler]] = None):
        self._handlers: dict[ResourceKind, ResourceHandler] = dict(handlers or {})

    def supports(self, kind: ResourceKind) -> bool:
        return kind in self._handlers

    def _handler(self, kind: ResourceKind) -> ResourceHandler:
        handler = self._handlers.get(kind)
        if handler is None:
            raise ConfigurationError(f"No handler registered for resource kind '{kind.value}'")
        return handler

    def lookup(self, kind: ResourceKind, key: str) -> LookupResult:
        return self._handler(kind).lookup(key)

    def create(self, kind: ResourceKind, params: dict) -> str:
        return self._handler(kind).create(params)

    def delete(self, kind: ResourceKind, identifier: str) -> None:
        self._handler(kind).delete(identifier)

    def reconcile(self, kind: ResourceKind, identifier: str, params: dict) -> None:
        self._handler(kind).reconcile(identifier, params)
