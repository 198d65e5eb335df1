"""In-cluster resources managed through kubectl."""

import json
import logging
import subprocess
from typing import Optional

import yaml

from addonctl.errors import CommandError
from addonctl.models import ResourceKind
from addonctl.resources.backend import LookupResult, ResourceHandler

logger = logging.getLogger(__name__)

AWS_AUTH_NAME = "aws-auth"
AWS_AUTH_NAMESPACE = "kube-system"


class KubectlClient:
    """Thin subprocess wrapper around kubectl."""

    def __init__(self, binary: str = "kubectl", timeout: int = 120, runner=subprocess.run):
        self.binary = binary
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

    def get(self, resource: str, namespace: Optional[str] = None) -> Optional[dict]:
        """Return the object as a dict, or None if it does not exist."""
        args = ["get", resource, "--ignore-not-found", "-o", "json"]
        if namespace:
            args += ["-n", namespace]
        output = self.run(args).strip()
        if not output:
            return None
        return json.loads(output)

    def list_objects(self, resource: str, namespace: Optional[str] = None, selector: Optional[str] = None) -> list[dict]:
        args = ["get", resource, "-o", "json"]
        if namespace:
            args += ["-n", namespace]
        if selector:
            args += ["-l", selector]
        return json.loads(self.run(args) or "{}").get("items", [])

    def apply(self, manifest: str) -> None:
        self.run(["apply", "-f", "-"], input=manifest)

    def delete(self, resource: str, namespace: Optional[str] = None) -> None:
        args = ["delete", resource, "--ignore-not-found", "--wait=false"]
        if namespace:
            args += ["-n", namespace]
        self.run(args)


def parse_ref(ref: str) -> tuple[str, Optional[str]]:
    """Split 'kind/name@namespace' into ('kind/name', 'namespace')."""
    resource, _, namespace = ref.partition("@")
    return resource, namespace or None


class AwsAuthHandler(ResourceHandler):
    """Role mappings in the aws-auth ConfigMap, keyed by role ARN."""

    def __init__(self, kubectl: KubectlClient):
        self.kubectl = kubectl

    def _load(self) -> tuple[dict, list[dict]]:
        configmap = self.kubectl.get(f"configmap/{AWS_AUTH_NAME}", AWS_AUTH_NAMESPACE)
        if configmap is None:
            configmap = {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": AWS_AUTH_NAME, "namespace": AWS_AUTH_NAMESPACE},
                "data": {},
            }
        roles = yaml.safe_load(configmap.get("data", {}).get("mapRoles") or "") or []
        return configmap, roles

    def _save(self, configmap: dict, roles: list[dict]) -> None:
        metadata = configmap.get("metadata", {})
        document = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": metadata.get("name", AWS_AUTH_NAME), "namespace": AWS_AUTH_NAMESPACE},
            "data": {
                **configmap.get("data", {}),
                "mapRoles": yaml.safe_dump(roles, default_flow_style=False, sort_keys=False),
            },
        }
        self.kubectl.apply(json.dumps(document))

    def lookup(self, key: str) -> LookupResult:
        _, roles = self._load()
        if any(role.get("rolearn") == key for role in roles):
            return LookupResult(True, key)
        return LookupResult(False)

    def create(self, params: dict) -> str:
        configmap, roles = self._load()
        roles = [role for role in roles if role.get("rolearn") != params["rolearn"]]
        roles.append(
            {
                "rolearn": params["rolearn"],
                "username": params["username"],
                "groups": list(params["groups"]),
            }
        )
        self._save(configmap, roles)
        return params["rolearn"]

    def delete(self, identifier: str) -> None:
        configmap, roles = self._load()
        remaining = [role for role in roles if role.get("rolearn") != identifier]
        if len(remaining) == len(roles):
            return
        self._save(configmap, remaining)


class ManifestHandler(ResourceHandler):
    """Objects from a rendered manifest, keyed by 'kind/name[@namespace]' references."""

    def __init__(self, kubectl: KubectlClient):
        self.kubectl = kubectl

    def lookup(self, key: str) -> LookupResult:
        for ref in key.split(","):
            resource, namespace = parse_ref(ref)
            if self.kubectl.get(resource, namespace) is None:
                return LookupResult(False)
        return LookupResult(True, key)

    def create(self, params: dict) -> str:
        self.kubectl.apply(params["manifest"])
        return ",".join(params["refs"])

    def delete(self, identifier: str) -> None:
        for ref in reversed(identifier.split(",")):
            resource, namespace = parse_ref(ref)
            self.kubectl.delete(resource, namespace)


def kubernetes_handlers(kubectl: KubectlClient) -> dict[ResourceKind, ResourceHandler]:
    return {
        ResourceKind.IAM_BINDING: AwsAuthHandler(kubectl),
        ResourceKind.MANIFEST: ManifestHandler(kubectl),
    }
