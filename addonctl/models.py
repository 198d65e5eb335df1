import json
from enum import Enum
from typing import Annotated, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator

from addonctl.errors import TemplateError
from addonctl.policies import (
    managed_policy_arn,
    queue_policy,
    trust_policy_for_service,
    trust_policy_for_service_account,
)
from addonctl.template import Renderer, TextTemplate

PARTITIONS = ("aws", "aws-cn", "aws-us-gov", "aws-iso", "aws-iso-b")

K8S_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


class ResourceKind(str, Enum):
    """Capability of a declared resource."""

    SERVICE_LINKED_ROLE = "service_linked_role"
    FEDERATED_IDENTITY = "federated_identity"
    IAM_ROLE = "iam_role"
    IAM_BINDING = "iam_binding"
    MANAGED_QUEUE = "managed_queue"
    CUSTOM_POLICY = "custom_policy"
    MANIFEST = "manifest"


class InstallState(str, Enum):
    """Installer state machine."""

    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    INSTALLED = "installed"
    READY = "ready"
    FAILED = "failed"


class ResourceAction(str, Enum):
    CREATED = "created"
    EXISTING = "existing"
    DELETED = "deleted"
    ABSENT = "absent"


class ReleaseAction(str, Enum):
    INSTALLED = "installed"
    UPGRADED = "upgraded"
    UNCHANGED = "unchanged"


# -- Application options --


class ApplicationOptions(BaseModel):
    """User-settable options shared by every application."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(..., pattern=r"^v?\d+\.\d+\.\d+(-[0-9A-Za-z.]+)?$")
    replicas: int = Field(default=1, ge=1, le=10)
    service_account: str = Field(..., pattern=K8S_NAME_PATTERN, max_length=63)
    namespace: str = Field(..., pattern=K8S_NAME_PATTERN, max_length=63)
    wait: bool = True
    timeout_seconds: int = Field(default=300, ge=1)


# -- Cluster context --


class ClusterContext(BaseModel):
    """Immutable substitution variables for a single invocation."""

    model_config = ConfigDict(frozen=True)

    partition: str
    region: str = Field(..., pattern=r"^[a-z]{2}(-[a-z]+)+-\d+$")
    account: str = Field(..., pattern=r"^\d{12}$")
    cluster_name: str = Field(..., pattern=r"^[0-9A-Za-z][A-Za-z0-9_-]{0,99}$")
    oidc_issuer: Optional[str] = Field(
        default=None, pattern=r"^https://[A-Za-z0-9.-]+(/[A-Za-z0-9._-]+)*$"
    )
    options: SerializeAsAny[ApplicationOptions]

    @field_validator("partition")
    @classmethod
    def validate_partition(cls, v: str) -> str:
        if v not in PARTITIONS:
            raise ValueError(f"Unknown partition '{v}'. Expected one of: {', '.join(PARTITIONS)}")
        return v

    @property
    def irsa_role_name(self) -> str:
        name = f"{self.cluster_name}.{self.options.namespace}.{self.options.service_account}"
        return name[:64]

    @property
    def irsa_role_arn(self) -> str:
        return self.role_arn(self.irsa_role_name)

    @property
    def oidc_provider(self) -> Optional[str]:
        if not self.oidc_issuer:
            return None
        return self.oidc_issuer.removeprefix("https://")

    @property
    def oidc_provider_arn(self) -> Optional[str]:
        if not self.oidc_provider:
            return None
        return f"arn:{self.partition}:iam::{self.account}:oidc-provider/{self.oidc_provider}"

    def role_arn(self, role_name: str) -> str:
        return f"arn:{self.partition}:iam::{self.account}:role/{role_name}"

    def template_vars(self) -> dict:
        """Fresh dict of every variable a template may reference."""
        variables = {
            "partition": self.partition,
            "region": self.region,
            "account": self.account,
            "cluster_name": self.cluster_name,
            "irsa_role_name": self.irsa_role_name,
            "irsa_role_arn": self.irsa_role_arn,
            **self.options.model_dump(),
        }
        # Left undefined when the cluster has no OIDC issuer so templates fail loudly
        if self.oidc_issuer:
            variables["oidc_issuer"] = self.oidc_issuer
            variables["oidc_provider"] = self.oidc_provider
            variables["oidc_provider_arn"] = self.oidc_provider_arn
        return variables


# -- Kind-specific resource options --


def _render_name(template: TextTemplate, context: ClusterContext, renderer: Renderer) -> str:
    return renderer.render(template, context).strip()


class ServiceLinkedRoleOptions(BaseModel):
    """An AWS service-linked role, e.g. AWSServiceRoleForEC2Spot."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[ResourceKind.SERVICE_LINKED_ROLE] = ResourceKind.SERVICE_LINKED_ROLE
    role_name: str
    service_name: str
    description: str = ""

    def prepare(self, context: ClusterContext, renderer: Renderer) -> tuple[str, dict]:
        params = {
            "role_name": self.role_name,
            "service_name": self.service_name,
            "description": self.description,
        }
        return self.role_name, params


class IamRoleOptions(BaseModel):
    """IAM role assumed by an AWS service, with managed policies attached."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[ResourceKind.IAM_ROLE] = ResourceKind.IAM_ROLE
    role_name: TextTemplate
    assume_role_service: str = "ec2.amazonaws.com"
    managed_policies: list[str] = Field(default_factory=list)
    description: str = ""

    def prepare(self, context: ClusterContext, renderer: Renderer) -> tuple[str, dict]:
        role_name = _render_name(self.role_name, context, renderer)
        params = {
            "role_name": role_name,
            "assume_role_policy": trust_policy_for_service(self.assume_role_service),
            "managed_policy_arns": [managed_policy_arn(context.partition, p) for p in self.managed_policies],
            "inline_policies": {},
            "description": self.description,
        }
        return role_name, params


class FederatedIdentityOptions(BaseModel):
    """IAM role for a Kubernetes service account (IRSA)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[ResourceKind.FEDERATED_IDENTITY] = ResourceKind.FEDERATED_IDENTITY
    role_name: TextTemplate = TextTemplate("{{ irsa_role_name }}", "text", "irsa-role-name")
    policy_document: Optional[TextTemplate] = None
    policy_arns: list[TextTemplate] = Field(default_factory=list)
    inline_policy_name: str = "irsa-policy"
    description: str = ""

    def prepare(self, context: ClusterContext, renderer: Renderer) -> tuple[str, dict]:
        if not context.oidc_issuer:
            raise TemplateError(
                f"cluster '{context.cluster_name}' has no OIDC issuer; IRSA requires one"
            )
        role_name = _render_name(self.role_name, context, renderer)
        inline_policies = {}
        if self.policy_document:
            inline_policies[self.inline_policy_name] = renderer.render_policy(self.policy_document, context)
        params = {
            "role_name": role_name,
            "assume_role_policy": trust_policy_for_service_account(
                context.oidc_provider_arn,
                context.oidc_provider,
                context.options.namespace,
                context.options.service_account,
            ),
            "managed_policy_arns": [_render_name(t, context, renderer) for t in self.policy_arns],
            "inline_policies": inline_policies,
            "description": self.description,
        }
        return role_name, params


class CustomPolicyOptions(BaseModel):
    """Customer managed IAM policy rendered from a template."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[ResourceKind.CUSTOM_POLICY] = ResourceKind.CUSTOM_POLICY
    policy_name: TextTemplate
    document: TextTemplate
    description: str = ""

    def prepare(self, context: ClusterContext, renderer: Renderer) -> tuple[str, dict]:
        policy_name = _render_name(self.policy_name, context, renderer)
        policy_arn = f"arn:{context.partition}:iam::{context.account}:policy/{policy_name}"
        params = {
            "policy_name": policy_name,
            "policy_document": renderer.render_policy(self.document, context),
            "description": self.description,
        }
        return policy_arn, params


class EventRule(BaseModel):
    """EventBridge rule forwarding matching events to a queue."""

    model_config = ConfigDict(frozen=True)

    name: TextTemplate
    source: list[str]
    detail_type: list[str]


class ManagedQueueOptions(BaseModel):
    """SQS queue fed by EventBridge rules."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[ResourceKind.MANAGED_QUEUE] = ResourceKind.MANAGED_QUEUE
    queue_name: TextTemplate
    message_retention_seconds: int = Field(default=300, ge=60, le=1209600)
    sse_enabled: bool = True
    principals: list[str] = Field(default_factory=lambda: ["events.amazonaws.com", "sqs.amazonaws.com"])
    event_rules: list[EventRule] = Field(default_factory=list)

    def prepare(self, context: ClusterContext, renderer: Renderer) -> tuple[str, dict]:
        queue_name = _render_name(self.queue_name, context, renderer)
        queue_arn = f"arn:{context.partition}:sqs:{context.region}:{context.account}:{queue_name}"
        rules = [
            {
                "name": _render_name(rule.name, context, renderer),
                "event_pattern": json.dumps({"source": rule.source, "detail-type": rule.detail_type}),
            }
            for rule in self.event_rules
        ]
        params = {
            "queue_name": queue_name,
            "queue_arn": queue_arn,
            "attributes": {
                "MessageRetentionPeriod": str(self.message_retention_seconds),
                "SqsManagedSseEnabled": "true" if self.sse_enabled else "false",
                "Policy": queue_policy(queue_arn, self.principals),
            },
            "rules": rules,
        }
        return queue_name, params


class IamBindingOptions(BaseModel):
    """Maps an IAM role to Kubernetes RBAC groups in the aws-auth ConfigMap."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[ResourceKind.IAM_BINDING] = ResourceKind.IAM_BINDING
    role_name: TextTemplate
    # Literal aws-auth syntax, not a template
    username: str
    groups: list[str] = Field(default_factory=list)

    def prepare(self, context: ClusterContext, renderer: Renderer) -> tuple[str, dict]:
        role_arn = context.role_arn(_render_name(self.role_name, context, renderer))
        params = {
            "rolearn": role_arn,
            "username": self.username,
            "groups": list(self.groups),
        }
        return role_arn, params


class ManifestOptions(BaseModel):
    """Kubernetes objects applied from a rendered manifest."""

    model_config = ConfigDict(frozen=True)

    kind: Literal[ResourceKind.MANIFEST] = ResourceKind.MANIFEST
    template: TextTemplate

    def prepare(self, context: ClusterContext, renderer: Renderer) -> tuple[str, dict]:
        manifest = renderer.render(self.template, context)
        refs = []
        for doc in yaml.safe_load_all(manifest):
            if not doc:
                continue
            try:
                ref = f"{doc['kind'].lower()}/{doc['metadata']['name']}"
            except (KeyError, TypeError, AttributeError) as e:
                raise TemplateError(f"manifest object is missing kind or metadata.name: {e}", self.template.name) from e
            namespace = doc["metadata"].get("namespace")
            refs.append(f"{ref}@{namespace}" if namespace else ref)
        if not refs:
            raise TemplateError("manifest renders no objects", self.template.name)
        return ",".join(refs), {"manifest": manifest, "refs": refs}


ResourceOptions = Annotated[
    Union[
        ServiceLinkedRoleOptions,
        IamRoleOptions,
        FederatedIdentityOptions,
        CustomPolicyOptions,
        ManagedQueueOptions,
        IamBindingOptions,
        ManifestOptions,
    ],
    Field(discriminator="kind"),
]


# -- Results --


class ResourceOutcome(BaseModel):
    """What happened to a single resource during ensure or teardown."""

    name: str
    kind: ResourceKind
    action: ResourceAction
    identifier: Optional[str] = None


class InstallReport(BaseModel):
    application: str
    cluster_name: str
    state: InstallState
    release_action: ReleaseAction
    dependencies: list[ResourceOutcome] = Field(default_factory=list)
    post_install: list[ResourceOutcome] = Field(default_factory=list)


class UninstallReport(BaseModel):
    application: str
    cluster_name: str
    release_removed: bool
    resources: list[ResourceOutcome] = Field(default_factory=list)
