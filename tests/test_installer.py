"""Helm installer state machine and the helm/kubectl subprocess wrappers."""

import json
import subprocess
import threading

import pytest

from addonctl.applications.karpenter import KarpenterOptions
from addonctl.errors import CommandError, InstallError, ReadinessTimeoutError
from addonctl.installer import HelmClient, HelmInstaller
from addonctl.models import InstallState, ReleaseAction
from addonctl.resources.kubernetes import KubectlClient
from addonctl.template import TextTemplate
from tests.conftest import FakeHelm, command_failed

VALUES = "replicas: 1\nsettings:\n  clusterName: demo\n"


@pytest.fixture
def installer():
    return HelmInstaller(
        chart_name="karpenter",
        release_name="karpenter",
        repository_url="oci://public.ecr.aws/karpenter/karpenter",
        values_template=TextTemplate("replicas: {{ replicas }}\n"),
    )


class FakeClock:
    def __init__(self, step=10.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        now = self.now
        self.now += self.step
        return now


class TestApply:

    def test_fresh_install_waits_until_ready(self, installer):
        helm = FakeHelm()
        result = installer.apply(VALUES, KarpenterOptions(), helm, poll_seconds=0)

        assert result.state == InstallState.READY
        assert result.action == ReleaseAction.INSTALLED
        assert helm.install_calls == [("install", "karpenter", "1.5.0")]
        assert helm.releases["karpenter"]["values"] == VALUES

    def test_same_version_and_values_is_a_no_op(self, installer):
        helm = FakeHelm()
        installer.apply(VALUES, KarpenterOptions(), helm, poll_seconds=0)
        helm.calls.clear()

        result = installer.apply(VALUES, KarpenterOptions(), helm, poll_seconds=0)
        assert result.action == ReleaseAction.UNCHANGED
        assert helm.install_calls == []

    def test_changed_values_upgrade(self, installer):
        helm = FakeHelm()
        installer.apply(VALUES, KarpenterOptions(), helm, poll_seconds=0)

        result = installer.apply(VALUES.replace("replicas: 1", "replicas: 2"), KarpenterOptions(), helm, poll_seconds=0)
        assert result.action == ReleaseAction.UPGRADED
        assert len(helm.install_calls) == 2

    def test_changed_version_upgrades(self, installer):
        helm = FakeHelm()
        installer.apply(VALUES, KarpenterOptions(), helm, poll_seconds=0)

        result = installer.apply(VALUES, KarpenterOptions(version="1.6.0"), helm, poll_seconds=0)
        assert result.action == ReleaseAction.UPGRADED
        assert helm.install_calls[-1] == ("install", "karpenter", "1.6.0")

    def test_no_wait_skips_readiness(self, installer):
        helm = FakeHelm(ready=False)
        result = installer.apply(VALUES, KarpenterOptions(wait=False), helm)

        assert result.state == InstallState.INSTALLED
        assert ("ready", "karpenter") not in helm.calls

    def test_installer_without_wait_skips_readiness(self):
        installer = HelmInstaller("chart", "release", "https://charts.example.com", TextTemplate("{}"), wait=False)
        helm = FakeHelm(ready=False)
        assert installer.apply("{}", KarpenterOptions(), helm).state == InstallState.INSTALLED

    def test_apply_failure_raises_retryable_install_error(self, installer):
        helm = FakeHelm(install_error=command_failed("context deadline exceeded"))

        with pytest.raises(InstallError, match="context deadline exceeded") as exc_info:
            installer.apply(VALUES, KarpenterOptions(), helm)
        assert exc_info.value.retryable
        assert exc_info.value.release == "karpenter"

    def test_readiness_timeout(self, installer):
        helm = FakeHelm(ready=False)

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            installer.apply(
                VALUES, KarpenterOptions(timeout_seconds=30), helm, poll_seconds=0, clock=FakeClock()
            )
        assert not exc_info.value.cancelled
        assert exc_info.value.timeout_seconds == 30
        assert "karpenter" in helm.releases

    def test_cancelled_wait(self, installer):
        helm = FakeHelm(ready=False)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(ReadinessTimeoutError, match="cancelled") as exc_info:
            installer.apply(VALUES, KarpenterOptions(), helm, cancel=cancel, poll_seconds=0)
        assert exc_info.value.cancelled

    def test_readiness_errors_are_retried(self, installer):
        answers = iter([command_failed("connection refused"), False, True])

        def ready():
            answer = next(answers)
            if isinstance(answer, Exception):
                raise answer
            return answer

        helm = FakeHelm(ready=ready)
        result = installer.apply(VALUES, KarpenterOptions(), helm, poll_seconds=0, clock=FakeClock(step=1))
        assert result.state == InstallState.READY

    def test_status_failure_raises_install_error(self, installer):
        class UnreachableHelm(FakeHelm):
            def release_status(self, release, namespace):
                raise command_failed("cluster unreachable")

        helm = UnreachableHelm()

        with pytest.raises(InstallError, match="release status"):
            installer.apply(VALUES, KarpenterOptions(), helm)


class TestRemove:

    def test_removes_installed_release(self, installer):
        helm = FakeHelm()
        installer.apply(VALUES, KarpenterOptions(), helm, poll_seconds=0)
        assert installer.remove(KarpenterOptions(), helm) is True
        assert helm.releases == {}

    def test_absent_release(self, installer):
        assert installer.remove(KarpenterOptions(), FakeHelm()) is False

    def test_failure_raises_install_error(self, installer):
        helm = FakeHelm(uninstall_error=command_failed("timed out"))
        with pytest.raises(InstallError, match="uninstall failed"):
            installer.remove(KarpenterOptions(), helm)


class FakeRunner:
    """Replaces subprocess.run, answering from a list of (returncode, stdout, stderr)."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, cmd, input=None, capture_output=True, text=True, timeout=None):
        self.calls.append({"cmd": cmd, "input": input})
        returncode, stdout, stderr = self.results.pop(0) if self.results else (0, "", "")
        return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)


class TestHelmClient:

    def test_release_status_not_found(self):
        runner = FakeRunner((1, "", "Error: release: not found"))
        assert HelmClient(runner=runner).release_status("karpenter", "karpenter") is None

    def test_release_status_parses_json(self):
        runner = FakeRunner((0, json.dumps({"info": {"status": "deployed"}}), ""))
        status = HelmClient(runner=runner).release_status("karpenter", "karpenter")
        assert status["info"]["status"] == "deployed"
        assert runner.calls[0]["cmd"][:3] == ["helm", "status", "karpenter"]

    def test_other_failures_raise(self):
        runner = FakeRunner((1, "", "Kubernetes cluster unreachable"))
        with pytest.raises(CommandError, match="unreachable") as exc_info:
            HelmClient(runner=runner).release_status("karpenter", "karpenter")
        assert exc_info.value.returncode == 1

    def test_install_from_oci_repository(self):
        runner = FakeRunner()
        HelmClient(runner=runner).install_or_upgrade(
            "oci://public.ecr.aws/karpenter/karpenter", "karpenter", "karpenter", "karpenter", VALUES, "1.5.0"
        )
        call = runner.calls[0]
        assert call["cmd"][:4] == ["helm", "upgrade", "--install", "karpenter"]
        assert call["cmd"][4] == "oci://public.ecr.aws/karpenter/karpenter"
        assert "--create-namespace" in call["cmd"]
        assert call["cmd"][call["cmd"].index("--version") + 1] == "1.5.0"
        assert call["input"] == VALUES

    def test_install_from_http_repository(self):
        runner = FakeRunner()
        HelmClient(runner=runner).install_or_upgrade(
            "https://charts.example.com", "metrics", "metrics", "kube-system", "{}", "3.0.0"
        )
        cmd = runner.calls[0]["cmd"]
        assert cmd[4:7] == ["metrics", "--repo", "https://charts.example.com"]

    def test_get_values_empty(self):
        runner = FakeRunner((0, "null\n", ""))
        assert HelmClient(runner=runner).get_values("karpenter", "karpenter") == {}

    def test_uninstall_not_found(self):
        runner = FakeRunner((1, "", 'Error: uninstall: Release not loaded: karpenter: release: not found'))
        assert HelmClient(runner=runner).uninstall("karpenter", "karpenter") is False

    def test_missing_binary(self):
        def runner(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        with pytest.raises(CommandError, match="not installed"):
            HelmClient(binary="helm3", runner=runner).run(["version"])

    def test_timeout(self):
        def runner(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, 5)

        with pytest.raises(CommandError, match="timed out"):
            HelmClient(timeout=5, runner=runner).run(["version"])

    @pytest.mark.parametrize(
        "deployments, expected",
        [
            ([], False),
            ([{"spec": {"replicas": 2}, "status": {"readyReplicas": 1}}], False),
            ([{"spec": {"replicas": 2}, "status": {"readyReplicas": 2}}], True),
        ],
    )
    def test_release_ready(self, deployments, expected):
        runner = FakeRunner((0, json.dumps({"items": deployments}), ""))
        helm = HelmClient(kubectl=KubectlClient(runner=runner))

        assert helm.release_ready("karpenter", "karpenter") is expected
        assert "app.kubernetes.io/instance=karpenter" in runner.calls[0]["cmd"]
