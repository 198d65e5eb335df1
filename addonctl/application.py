"""Top-level add-on descriptor: dependencies, installer, options, post-install resources."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol

from pydantic import ValidationError

from addonctl.context import ClusterInfo
from addonctl.errors import ConfigurationError
from addonctl.installer import HelmClient, HelmInstaller
from addonctl.models import (
    ApplicationOptions,
    ClusterContext,
    InstallReport,
    UninstallReport,
)
from addonctl.resources import (
    PreparedResource,
    Resource,
    ResourceBackend,
    ensure_all,
    flatten,
    prepare_all,
    teardown_all,
)
from addonctl.template import Renderer

logger = logging.getLogger(__name__)


class ContextSource(Protocol):
    def read(self, cluster_name: str) -> ClusterInfo: ...


@dataclass
class Clients:
    """External collaborators used by a single invocation."""

    context_source: ContextSource
    backend: ResourceBackend
    helm: HelmClient


@dataclass(frozen=True)
class InstallPlan:
    """Every document an install needs, rendered before anything is mutated."""

    context: ClusterContext
    dependencies: list[PreparedResource]
    values: str
    post_install: list[PreparedResource]


@dataclass
class Application:
    name: str
    description: str
    installer: HelmInstaller
    options: ApplicationOptions
    dependencies: list[Resource] = field(default_factory=list)
    post_install_resources: list[Resource] = field(default_factory=list)

    def validate(self, backend: Optional[ResourceBackend] = None) -> None:
        """Check names, cycles and handler coverage before any cloud call."""
        resources = flatten([*self.dependencies, *self.post_install_resources])
        if backend is None:
            return
        missing = sorted({r.kind.value for r in resources if not backend.supports(r.kind)})
        if missing:
            raise ConfigurationError(
                f"Application '{self.name}' uses resource kinds with no handler: {', '.join(missing)}"
            )

    def resolve_options(self, overrides: Optional[dict] = None) -> ApplicationOptions:
        """Merge user overrides over the defaults, validating the result."""
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        try:
            return type(self.options).model_validate({**self.options.model_dump(), **overrides})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid options for '{self.name}': {e}") from e

    def build_context(self, cluster: ClusterInfo, overrides: Optional[dict] = None) -> ClusterContext:
        options = self.resolve_options(overrides)
        try:
            return ClusterContext(
                partition=cluster.partition,
                region=cluster.region,
                account=cluster.account,
                cluster_name=cluster.cluster_name,
                oidc_issuer=cluster.oidc_issuer,
                options=options,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid cluster context: {e}") from e

    def plan(self, context: ClusterContext, renderer: Optional[Renderer] = None) -> InstallPlan:
        """Render every resource and the values document. Raises TemplateError."""
        renderer = renderer or Renderer()
        return InstallPlan(
            context=context,
            dependencies=prepare_all(self.dependencies, context, renderer),
            values=self.installer.render_values(context, renderer),
            post_install=prepare_all(self.post_install_resources, context, renderer),
        )

    def install(
        self,
        clients: Clients,
        cluster_name: str,
        overrides: Optional[dict] = None,
        cancel: Optional[threading.Event] = None,
        poll_seconds: float = 5.0,
    ) -> InstallReport:
        """Ensure dependencies, apply the package, then ensure post-install resources.

        The first error on this path propagates immediately; resources already
        ensured stay in place and a re-run picks up where this one stopped.
        """
        self.validate(clients.backend)
        cluster = clients.context_source.read(cluster_name)
        context = self.build_context(cluster, overrides)
        plan = self.plan(context)

        logger.info("Ensuring %d dependencies for %s", len(plan.dependencies), self.name)
        dependencies = ensure_all(plan.dependencies, clients.backend)

        result = self.installer.apply(
            plan.values,
            context.options,
            clients.helm,
            cancel=cancel,
            poll_seconds=poll_seconds,
        )

        post_install = []
        if plan.post_install:
            logger.info("Ensuring %d post-install resources for %s", len(plan.post_install), self.name)
            post_install = ensure_all(plan.post_install, clients.backend)

        return InstallReport(
            application=self.name,
            cluster_name=context.cluster_name,
            state=result.state,
            release_action=result.action,
            dependencies=dependencies,
            post_install=post_install,
        )

    def uninstall(
        self,
        clients: Clients,
        cluster_name: str,
        overrides: Optional[dict] = None,
    ) -> UninstallReport:
        """Remove the release, then tear every resource down in reverse order.

        Teardown attempts every resource and raises a TeardownError listing all
        failures.
        """
        self.validate(clients.backend)
        cluster = clients.context_source.read(cluster_name)
        context = self.build_context(cluster, overrides)
        plan = self.plan(context)

        removed = self.installer.remove(context.options, clients.helm)
        resources = teardown_all([*plan.dependencies, *plan.post_install], clients.backend)

        return UninstallReport(
            application=self.name,
            cluster_name=context.cluster_name,
            release_removed=removed,
            resources=resources,
        )
