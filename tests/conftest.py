"""Shared fakes for the collaborators an Application drives."""

import yaml
import pytest

from addonctl.application import Clients
from addonctl.applications.karpenter import KarpenterOptions
from addonctl.context import ClusterInfo
from addonctl.errors import CommandError
from addonctl.models import ClusterContext
from addonctl.resources import LookupResult, ResourceBackend

OIDC_ISSUER = "https://oidc.eks.us-east-1.amazonaws.com/id/EXAMPLED539D4633E53DE1B71EXAMPLE"


class FakeBackend(ResourceBackend):
    """Records every call. ``existing`` holds lookup keys that already exist."""

    def __init__(self, existing=(), fail_on=None):
        super().__init__()
        self.existing = set(existing)
        self.fail_on = dict(fail_on or {})
        self.calls = []

    def supports(self, kind):
        return True

    def _maybe_fail(self, op, key):
        error = self.fail_on.get((op, key))
        if error is not None:
            raise error

    def lookup(self, kind, key):
        self.calls.append(("lookup", kind, key))
        self._maybe_fail("lookup", key)
        if key in self.existing:
            return LookupResult(True, key)
        return LookupResult(False)

    def create(self, kind, params):
        identifier = created_identifier(params)
        self.calls.append(("create", kind, identifier))
        self._maybe_fail("create", identifier)
        self.existing.add(identifier)
        return identifier

    def reconcile(self, kind, identifier, params):
        self.calls.append(("reconcile", kind, identifier))
        self._maybe_fail("reconcile", identifier)

    def delete(self, kind, identifier):
        self.calls.append(("delete", kind, identifier))
        self._maybe_fail("delete", identifier)
        self.existing.discard(identifier)

    def ops(self, op):
        return [call for call in self.calls if call[0] == op]


def created_identifier(params):
    """The lookup key a created resource answers to."""
    if "queue_name" in params:
        return params["queue_name"]
    if "rolearn" in params:
        return params["rolearn"]
    if "role_name" in params:
        return params["role_name"]
    if "refs" in params:
        return ",".join(params["refs"])
    return params["policy_name"]


class FakeHelm:
    """Stands in for HelmClient, keeping one release per name."""

    def __init__(self, ready=True, install_error=None, uninstall_error=None):
        self.releases = {}
        self.ready = ready
        self.install_error = install_error
        self.uninstall_error = uninstall_error
        self.calls = []

    def release_status(self, release, namespace):
        self.calls.append(("status", release))
        entry = self.releases.get(release)
        if entry is None:
            return None
        return {
            "name": release,
            "info": {"status": "deployed"},
            "chart": {"metadata": {"version": entry["version"]}},
        }

    def get_values(self, release, namespace):
        return yaml.safe_load(self.releases[release]["values"]) or {}

    def install_or_upgrade(self, repository_url, chart, release, namespace, values_doc, version):
        self.calls.append(("install", release, version))
        if self.install_error is not None:
            raise self.install_error
        self.releases[release] = {"version": version, "values": values_doc, "namespace": namespace}

    def uninstall(self, release, namespace):
        self.calls.append(("uninstall", release))
        if self.uninstall_error is not None:
            raise self.uninstall_error
        return self.releases.pop(release, None) is not None

    def release_ready(self, release, namespace):
        self.calls.append(("ready", release))
        if isinstance(self.ready, Exception):
            raise self.ready
        if callable(self.ready):
            return self.ready()
        return self.ready

    @property
    def install_calls(self):
        return [call for call in self.calls if call[0] == "install"]


class FakeContextSource:
    def __init__(self, cluster):
        self.cluster = cluster
        self.reads = 0

    def read(self, cluster_name):
        self.reads += 1
        return self.cluster


@pytest.fixture
def demo_cluster():
    return ClusterInfo(
        partition="aws",
        region="us-east-1",
        account="111111111111",
        cluster_name="demo",
        oidc_issuer=OIDC_ISSUER,
    )


@pytest.fixture
def demo_context(demo_cluster):
    return ClusterContext(
        partition=demo_cluster.partition,
        region=demo_cluster.region,
        account=demo_cluster.account,
        cluster_name=demo_cluster.cluster_name,
        oidc_issuer=demo_cluster.oidc_issuer,
        options=KarpenterOptions(),
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def helm():
    return FakeHelm()


@pytest.fixture
def clients(demo_cluster, backend, helm):
    return Clients(context_source=FakeContextSource(demo_cluster), backend=backend, helm=helm)


def command_failed(stderr="boom"):
    return CommandError(["helm", "upgrade", "--install"], 1, stderr)
