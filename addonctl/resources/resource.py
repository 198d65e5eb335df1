"""Declared resources and the dependency resolver.

Resources are ensured in declared order (nested dependencies before their
parent) and torn down in exact reverse order. Declaration order is the
dependency contract; nothing is re-sorted.
"""

import logging
from dataclasses import dataclass, field

from addonctl.errors import (
    ConfigurationError,
    ProvisionerError,
    ResourceCreateError,
    ResourceDeleteError,
    ResourceLookupError,
    ResourceUpdateError,
    TeardownError,
)
from addonctl.models import (
    ClusterContext,
    ResourceAction,
    ResourceKind,
    ResourceOptions,
    ResourceOutcome,
)
from addonctl.resources.backend import ResourceBackend
from addonctl.template import Renderer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resource:
    """A named unit of cloud state with optional nested dependencies."""

    name: str
    options: ResourceOptions
    dependencies: tuple["Resource", ...] = field(default_factory=tuple)

    @property
    def kind(self) -> ResourceKind:
        return self.options.kind

    def prepare(self, context: ClusterContext, renderer: Renderer) -> "PreparedResource":
        """Render everything this resource needs. Pure; raises TemplateError."""
        key, params = self.options.prepare(context, renderer)
        return PreparedResource(name=self.name, kind=self.kind, key=key, params=params)

    def ensure(self, context: ClusterContext, backend: ResourceBackend, renderer: Renderer) -> ResourceOutcome:
        """Ensure nested dependencies, then this resource (create if absent)."""
        for dependency in self.dependencies:
            dependency.ensure(context, backend, renderer)
        return self.prepare(context, renderer).ensure(backend)

    def teardown(self, context: ClusterContext, backend: ResourceBackend, renderer: Renderer) -> ResourceOutcome:
        """Delete this resource, then its nested dependencies in reverse order."""
        prepared = [r.prepare(context, renderer) for r in flatten([self])]
        outcomes = teardown_all(prepared, backend)
        return outcomes[0]


@dataclass(frozen=True)
class PreparedResource:
    """A resource with its lookup key and fully rendered creation parameters."""

    name: str
    kind: ResourceKind
    key: str
    params: dict

    def ensure(self, backend: ResourceBackend) -> ResourceOutcome:
        try:
            found = backend.lookup(self.kind, self.key)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ResourceLookupError(self.name, self.kind.value, e) from e

        if found.exists:
            identifier = found.identifier or self.key
            logger.info("%s '%s' already exists (%s)", self.kind.value, self.name, identifier)
            try:
                backend.reconcile(self.kind, identifier, self.params)
            except ConfigurationError:
                raise
            except Exception as e:
                raise ResourceUpdateError(self.name, self.kind.value, e) from e
            return ResourceOutcome(
                name=self.name, kind=self.kind, action=ResourceAction.EXISTING, identifier=found.identifier
            )

        logger.info("Creating %s '%s'...", self.kind.value, self.name)
        try:
            identifier = backend.create(self.kind, self.params)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ResourceCreateError(self.name, self.kind.value, e) from e

        logger.info("Created %s '%s' (%s)", self.kind.value, self.name, identifier)
        return ResourceOutcome(name=self.name, kind=self.kind, action=ResourceAction.CREATED, identifier=identifier)

    def teardown(self, backend: ResourceBackend) -> ResourceOutcome:
        try:
            found = backend.lookup(self.kind, self.key)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ResourceLookupError(self.name, self.kind.value, e) from e

        if not found.exists:
            logger.info("%s '%s' is already absent", self.kind.value, self.name)
            return ResourceOutcome(name=self.name, kind=self.kind, action=ResourceAction.ABSENT)

        identifier = found.identifier or self.key
        logger.info("Deleting %s '%s' (%s)...", self.kind.value, self.name, identifier)
        try:
            backend.delete(self.kind, identifier)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ResourceDeleteError(self.name, self.kind.value, e) from e

        return ResourceOutcome(name=self.name, kind=self.kind, action=ResourceAction.DELETED, identifier=identifier)


def flatten(resources: list[Resource]) -> list[Resource]:
    """Walk resources in declared order, nested dependencies before their parent.

    Raises ConfigurationError on duplicate names or dependency cycles.
    """
    ordered: list[Resource] = []
    seen: dict[str, Resource] = {}
    visiting: list[str] = []

    def visit(resource: Resource) -> None:
        if resource.name in visiting:
            cycle = " -> ".join(visiting[visiting.index(resource.name):] + [resource.name])
            raise ConfigurationError(f"Dependency cycle detected: {cycle}")
        if resource.name in seen:
            raise ConfigurationError(f"Duplicate resource name '{resource.name}'")

        visiting.append(resource.name)
        for dependency in resource.dependencies:
            visit(dependency)
        visiting.pop()

        seen[resource.name] = resource
        ordered.append(resource)

    for resource in resources:
        visit(resource)

    return ordered


def prepare_all(resources: list[Resource], context: ClusterContext, renderer: Renderer) -> list[PreparedResource]:
    """Flatten and render every resource. No collaborator is called."""
    return [resource.prepare(context, renderer) for resource in flatten(resources)]


def ensure_all(prepared: list[PreparedResource], backend: ResourceBackend) -> list[ResourceOutcome]:
    """Ensure each resource in order, stopping at the first failure.

    Resources ensured before the failure are left in place; re-running is safe.
    """
    return [resource.ensure(backend) for resource in prepared]


def teardown_all(prepared: list[PreparedResource], backend: ResourceBackend) -> list[ResourceOutcome]:
    """Tear resources down in reverse order, attempting every one.

    Raises TeardownError with every individual failure if any deletion failed.
    """
    outcomes: list[ResourceOutcome] = []
    errors: list[ProvisionerError] = []

    for resource in reversed(prepared):
        try:
            outcomes.append(resource.teardown(backend))
        except ConfigurationError:
            raise
        except ProvisionerError as e:
            logger.error("Teardown of '%s' failed: %s", resource.name, e)
            errors.append(e)

    if errors:
        raise TeardownError(errors)

    return outcomes
