"""Helm installer descriptor and the helm collaborator it drives."""

import json
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import yaml

from addonctl.errors import CommandError, InstallError, ReadinessTimeoutError
from addonctl.models import ApplicationOptions, ClusterContext, InstallState, ReleaseAction
from addonctl.resources.kubernetes import KubectlClient
from addonctl.template import Renderer, TextTemplate

logger = logging.getLogger(__name__)


class HelmClient:
    """subprocess wrapper around the helm binary.

    Readiness is read through kubectl from the deployments labelled with the
    release instance name.
    """

    def __init__(
        self,
        binary: str = "helm",
        kubectl: Optional[KubectlClient] = None,
        timeout: int = 300,
        runner=subprocess.run,
    ):
        self.binary = binary
        self.kubectl = kubectl or KubectlClient()
        self.timeout = timeout
        self._run = runner

    def run(self, args: list[str], input: Optional[str] = None) -> str:
        cmd = [self.binary, *args]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = self._run(cmd, input=input, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise CommandError(cmd, -1, f"timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise CommandError(cmd, 127, f"{self.binary} is not installed") from e
        if result.returncode != 0:
            raise CommandError(cmd, result.returncode, result.stderr)
        return result.stdout

    def release_status(self, release: str, namespace: str) -> Optional[dict]:
        """Return the release as a dict, or None if it is not installed."""
        try:
            output = self.run(["status", release, "--namespace", namespace, "--output", "json"])
        except CommandError as e:
            if "not found" in e.stderr.lower():
                return None
            raise
        return json.loads(output)

    def get_values(self, release: str, namespace: str) -> dict:
        output = self.run(["get", "values", release, "--namespace", namespace, "--output", "json"])
        return json.loads(output or "null") or {}

    def install_or_upgrade(
        self,
        repository_url: str,
        chart: str,
        release: str,
        namespace: str,
        values_doc: str,
        version: str,
    ) -> None:
        args = ["upgrade", "--install", release]
        if repository_url.startswith("oci://"):
            args.append(repository_url)
        else:
            args += [chart, "--repo", repository_url]
        args += [
            "--version", version,
            "--namespace", namespace,
            "--create-namespace",
            "--values", "-",
        ]
        self.run(args, input=values_doc)

    def uninstall(self, release: str, namespace: str) -> bool:
        """Uninstall the release. Returns False if it was not installed."""
        try:
            self.run(["uninstall", release, "--namespace", namespace])
        except CommandError as e:
            if "not found" in e.stderr.lower():
                return False
            raise
        return True

    def release_ready(self, release: str, namespace: str) -> bool:
        deployments = self.kubectl.list_objects(
            "deployments", namespace, selector=f"app.kubernetes.io/instance={release}"
        )
        if not deployments:
            return False
        for deployment in deployments:
            desired = deployment.get("spec", {}).get("replicas", 1)
            ready = deployment.get("status", {}).get("readyReplicas", 0)
            if ready < desired:
                return False
        return True


@dataclass(frozen=True)
class InstallResult:
    state: InstallState
    action: ReleaseAction


@dataclass(frozen=True)
class HelmInstaller:
    """Package coordinates and values template. Holds no state between calls."""

    chart_name: str
    release_name: str
    repository_url: str
    values_template: TextTemplate
    wait: bool = True

    def render_values(self, context: ClusterContext, renderer: Renderer) -> str:
        return renderer.render(self.values_template, context)

    def apply(
        self,
        values_doc: str,
        options: ApplicationOptions,
        helm: HelmClient,
        cancel: Optional[threading.Event] = None,
        poll_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> InstallResult:
        """Install or upgrade the release, then optionally wait until it is ready.

        Raises InstallError if the apply fails and ReadinessTimeoutError if the
        workload is not ready before the deadline or waiting is cancelled.
        """
        namespace = options.namespace
        state = InstallState.NOT_INSTALLED

        try:
            existing = helm.release_status(self.release_name, namespace)
        except CommandError as e:
            raise InstallError(self.release_name, f"could not read release status: {e}") from e

        state = self._transition(state, InstallState.INSTALLING)

        if existing and self._unchanged(existing, values_doc, options, helm):
            logger.info("Release '%s' is up to date, nothing to apply", self.release_name)
            action = ReleaseAction.UNCHANGED
        else:
            action = ReleaseAction.UPGRADED if existing else ReleaseAction.INSTALLED
            logger.info(
                "%s release '%s' (chart %s %s)...",
                "Upgrading" if existing else "Installing",
                self.release_name,
                self.chart_name,
                options.version,
            )
            try:
                helm.install_or_upgrade(
                    self.repository_url,
                    self.chart_name,
                    self.release_name,
                    namespace,
                    values_doc,
                    options.version,
                )
            except CommandError as e:
                self._transition(state, InstallState.FAILED)
                raise InstallError(self.release_name, str(e)) from e

        if not (self.wait and options.wait):
            state = self._transition(state, InstallState.INSTALLED)
            return InstallResult(state, action)

        self._wait_ready(helm, namespace, options.timeout_seconds, cancel, poll_seconds, clock)
        state = self._transition(state, InstallState.READY)
        return InstallResult(state, action)

    def remove(self, options: ApplicationOptions, helm: HelmClient) -> bool:
        """Uninstall the release. Returns False if it was already absent."""
        try:
            removed = helm.uninstall(self.release_name, options.namespace)
        except CommandError as e:
            raise InstallError(self.release_name, f"uninstall failed: {e}") from e
        if removed:
            logger.info("Uninstalled release '%s'", self.release_name)
        else:
            logger.info("Release '%s' is not installed", self.release_name)
        return removed

    def _unchanged(self, existing: dict, values_doc: str, options: ApplicationOptions, helm: HelmClient) -> bool:
        if existing.get("info", {}).get("status") != "deployed":
            return False
        chart_version = existing.get("chart", {}).get("metadata", {}).get("version")
        if chart_version != options.version.lstrip("v"):
            return False
        try:
            current = helm.get_values(self.release_name, options.namespace)
        except CommandError as e:
            logger.warning("Could not read values of release '%s': %s", self.release_name, e)
            return False
        return current == (yaml.safe_load(values_doc) or {})

    def _wait_ready(
        self,
        helm: HelmClient,
        namespace: str,
        timeout_seconds: float,
        cancel: Optional[threading.Event],
        poll_seconds: float,
        clock: Callable[[], float],
    ) -> None:
        cancel = cancel or threading.Event()
        deadline = clock() + timeout_seconds
        logger.info("Waiting up to %ss for release '%s' to be ready...", timeout_seconds, self.release_name)

        while True:
            if cancel.is_set():
                raise ReadinessTimeoutError(self.release_name, timeout_seconds, cancelled=True)
            try:
                if helm.release_ready(self.release_name, namespace):
                    logger.info("Release '%s' is ready", self.release_name)
                    return
            except CommandError as e:
                logger.warning("Readiness check for '%s' failed: %s", self.release_name, e)
            if clock() >= deadline:
                raise ReadinessTimeoutError(self.release_name, timeout_seconds)
            cancel.wait(poll_seconds)

    def _transition(self, current: InstallState, new: InstallState) -> InstallState:
        logger.debug("Release '%s': %s -> %s", self.release_name, current.value, new.value)
        return new
