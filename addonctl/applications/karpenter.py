"""Karpenter node autoscaling.

Docs:    https://karpenter.sh/docs/
Helm:    https://github.com/aws/karpenter-provider-aws/tree/main/charts/karpenter
Chart:   oci://public.ecr.aws/karpenter/karpenter
"""

from typing import Literal

from pydantic import Field

from addonctl.application import Application
from addonctl.installer import HelmInstaller
from addonctl.models import (
    ApplicationOptions,
    EventRule,
    FederatedIdentityOptions,
    IamBindingOptions,
    IamRoleOptions,
    ManagedQueueOptions,
    ManifestOptions,
    ServiceLinkedRoleOptions,
)
from addonctl.resources import Resource
from addonctl.template import TextTemplate

DEFAULT_VERSION = "1.5.0"

NODE_ROLE_NAME = "KarpenterNodeRole-{{ cluster_name }}"

NODE_ROLE_POLICIES = [
    "AmazonEKSWorkerNodePolicy",
    "AmazonEKS_CNI_Policy",
    "AmazonEC2ContainerRegistryReadOnly",
    "AmazonSSMManagedInstanceCore",
]


class KarpenterOptions(ApplicationOptions):
    version: str = Field(default=DEFAULT_VERSION, pattern=r"^\d+\.\d+\.\d+(-[0-9A-Za-z.]+)?$")
    service_account: str = Field(default="karpenter", pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    namespace: str = Field(default="karpenter", pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    enable_spot_to_spot: bool = False
    ami_family: Literal["al2023", "al2", "bottlerocket"] = "al2023"
    expire_after: str = Field(default="720h", pattern=r"^(Never|\d+[smh])$")
    cpu_limit: int = Field(default=1000, ge=1)
    capacity_types: list[Literal["on-demand", "spot"]] = Field(default_factory=lambda: ["on-demand"], min_length=1)
    instance_categories: list[str] = Field(default_factory=lambda: ["c", "m", "r"], min_length=1)


IRSA_POLICY_DOCUMENT = """\
Version: "2012-10-17"
Statement:
- Sid: AllowScopedEC2InstanceAccessActions
  Effect: Allow
  Resource:
  - arn:{{ partition }}:ec2:{{ region }}::image/*
  - arn:{{ partition }}:ec2:{{ region }}::snapshot/*
  - arn:{{ partition }}:ec2:{{ region }}:*:security-group/*
  - arn:{{ partition }}:ec2:{{ region }}:*:subnet/*
  Action:
  - ec2:RunInstances
  - ec2:CreateFleet
- Sid: AllowScopedEC2LaunchTemplateAccessActions
  Effect: Allow
  Resource: arn:{{ partition }}:ec2:{{ region }}:*:launch-template/*
  Action:
  - ec2:RunInstances
  - ec2:CreateFleet
  Condition:
    StringEquals:
      aws:ResourceTag/kubernetes.io/cluster/{{ cluster_name }}: owned
    StringLike:
      aws:ResourceTag/karpenter.sh/nodepool: "*"
- Sid: AllowScopedEC2InstanceActionsWithTags
  Effect: Allow
  Resource:
  - arn:{{ partition }}:ec2:{{ region }}:*:fleet/*
  - arn:{{ partition }}:ec2:{{ region }}:*:instance/*
  - arn:{{ partition }}:ec2:{{ region }}:*:volume/*
  - arn:{{ partition }}:ec2:{{ region }}:*:network-interface/*
  - arn:{{ partition }}:ec2:{{ region }}:*:launch-template/*
  - arn:{{ partition }}:ec2:{{ region }}:*:spot-instances-request/*
  Action:
  - ec2:RunInstances
  - ec2:CreateFleet
  - ec2:CreateLaunchTemplate
  Condition:
    StringEquals:
      aws:RequestTag/kubernetes.io/cluster/{{ cluster_name }}: owned
      aws:RequestTag/eks:eks-cluster-name: {{ cluster_name }}
    StringLike:
      aws:RequestTag/karpenter.sh/nodepool: "*"
- Sid: AllowScopedResourceCreationTagging
  Effect: Allow
  Resource:
  - arn:{{ partition }}:ec2:{{ region }}:*:fleet/*
  - arn:{{ partition }}:ec2:{{ region }}:*:instance/*
  - arn:{{ partition }}:ec2:{{ region }}:*:volume/*
  - arn:{{ partition }}:ec2:{{ region }}:*:network-interface/*
  - arn:{{ partition }}:ec2:{{ region }}:*:launch-template/*
  - arn:{{ partition }}:ec2:{{ region }}:*:spot-instances-request/*
  Action: ec2:CreateTags
  Condition:
    StringEquals:
      aws:RequestTag/kubernetes.io/cluster/{{ cluster_name }}: owned
      aws:RequestTag/eks:eks-cluster-name: {{ cluster_name }}
      ec2:CreateAction:
      - RunInstances
      - CreateFleet
      - CreateLaunchTemplate
    StringLike:
      aws:RequestTag/karpenter.sh/nodepool: "*"
- Sid: AllowScopedResourceTagging
  Effect: Allow
  Resource: arn:{{ partition }}:ec2:{{ region }}:*:instance/*
  Action: ec2:CreateTags
  Condition:
    StringEquals:
      aws:ResourceTag/kubernetes.io/cluster/{{ cluster_name }}: owned
    StringLike:
      aws:ResourceTag/karpenter.sh/nodepool: "*"
    StringEqualsIfExists:
      aws:RequestTag/eks:eks-cluster-name: {{ cluster_name }}
    ForAllValues:StringEquals:
      aws:TagKeys:
      - eks:eks-cluster-name
      - karpenter.sh/nodeclaim
      - Name
- Sid: AllowScopedDeletion
  Effect: Allow
  Resource:
  - arn:{{ partition }}:ec2:{{ region }}:*:instance/*
  - arn:{{ partition }}:ec2:{{ region }}:*:launch-template/*
  Action:
  - ec2:TerminateInstances
  - ec2:DeleteLaunchTemplate
  Condition:
    StringEquals:
      aws:ResourceTag/kubernetes.io/cluster/{{ cluster_name }}: owned
    StringLike:
      aws:ResourceTag/karpenter.sh/nodepool: "*"
- Sid: AllowRegionalReadActions
  Effect: Allow
  Resource: "*"
  Action:
  - ec2:DescribeImages
  - ec2:DescribeInstances
  - ec2:DescribeInstanceTypeOfferings
  - ec2:DescribeInstanceTypes
  - ec2:DescribeLaunchTemplates
  - ec2:DescribeSecurityGroups
  - ec2:DescribeSpotPriceHistory
  - ec2:DescribeSubnets
  Condition:
    StringEquals:
      aws:RequestedRegion: "{{ region }}"
- Sid: AllowSSMReadActions
  Effect: Allow
  Resource: arn:{{ partition }}:ssm:{{ region }}::parameter/aws/service/*
  Action:
  - ssm:GetParameter
- Sid: AllowPricingReadActions
  Effect: Allow
  Resource: "*"
  Action:
  - pricing:GetProducts
- Sid: AllowInterruptionQueueActions
  Effect: Allow
  Resource: arn:{{ partition }}:sqs:{{ region }}:{{ account }}:karpenter-{{ cluster_name }}
  Action:
  - sqs:DeleteMessage
  - sqs:GetQueueUrl
  - sqs:ReceiveMessage
- Sid: AllowPassingInstanceRole
  Effect: Allow
  Resource: arn:{{ partition }}:iam::{{ account }}:role/KarpenterNodeRole-{{ cluster_name }}
  Action: iam:PassRole
  Condition:
    StringEquals:
      iam:PassedToService:
      - ec2.amazonaws.com
      - ec2.amazonaws.com.cn
- Sid: AllowScopedInstanceProfileCreationActions
  Effect: Allow
  Resource: arn:{{ partition }}:iam::{{ account }}:instance-profile/*
  Action:
  - iam:CreateInstanceProfile
  Condition:
    StringEquals:
      aws:RequestTag/kubernetes.io/cluster/{{ cluster_name }}: owned
      aws:RequestTag/eks:eks-cluster-name: {{ cluster_name }}
      aws:RequestTag/topology.kubernetes.io/region: "{{ region }}"
    StringLike:
      aws:RequestTag/karpenter.k8s.aws/ec2nodeclass: "*"
- Sid: AllowScopedInstanceProfileTagActions
  Effect: Allow
  Resource: arn:{{ partition }}:iam::{{ account }}:instance-profile/*
  Action:
  - iam:TagInstanceProfile
  Condition:
    StringEquals:
      aws:ResourceTag/kubernetes.io/cluster/{{ cluster_name }}: owned
      aws:ResourceTag/topology.kubernetes.io/region: "{{ region }}"
      aws:RequestTag/kubernetes.io/cluster/{{ cluster_name }}: owned
      aws:RequestTag/eks:eks-cluster-name: {{ cluster_name }}
      aws:RequestTag/topology.kubernetes.io/region: "{{ region }}"
    StringLike:
      aws:ResourceTag/karpenter.k8s.aws/ec2nodeclass: "*"
      aws:RequestTag/karpenter.k8s.aws/ec2nodeclass: "*"
- Sid: AllowScopedInstanceProfileActions
  Effect: Allow
  Resource: arn:{{ partition }}:iam::{{ account }}:instance-profile/*
  Action:
  - iam:AddRoleToInstanceProfile
  - iam:RemoveRoleFromInstanceProfile
  - iam:DeleteInstanceProfile
  Condition:
    StringEquals:
      aws:ResourceTag/kubernetes.io/cluster/{{ cluster_name }}: owned
      aws:ResourceTag/topology.kubernetes.io/region: "{{ region }}"
    StringLike:
      aws:ResourceTag/karpenter.k8s.aws/ec2nodeclass: "*"
- Sid: AllowInstanceProfileReadActions
  Effect: Allow
  Resource: arn:{{ partition }}:iam::{{ account }}:instance-profile/*
  Action: iam:GetInstanceProfile
- Sid: AllowAPIServerEndpointDiscovery
  Effect: Allow
  Resource: arn:{{ partition }}:eks:{{ region }}:{{ account }}:cluster/{{ cluster_name }}
  Action: eks:DescribeCluster
"""

# https://github.com/aws/karpenter-provider-aws/blob/main/charts/karpenter/values.yaml
VALUES_TEMPLATE = """\
---
serviceAccount:
  name: {{ service_account }}
  annotations:
    eks.amazonaws.com/role-arn: {{ irsa_role_arn }}
replicas: {{ replicas }}
controller:
  image:
    tag: {{ version }}
  resources:
    requests:
      cpu: "1"
      memory: "1Gi"
settings:
  clusterName: {{ cluster_name }}
  interruptionQueue: karpenter-{{ cluster_name }}
  featureGates:
    # spotToSpotConsolidation is alpha and disabled by default
    spotToSpotConsolidation: {{ enable_spot_to_spot }}
"""

DEFAULT_NODEPOOL_TEMPLATE = """\
---
apiVersion: karpenter.k8s.aws/v1
kind: EC2NodeClass
metadata:
  name: default
spec:
  amiSelectorTerms:
  - alias: {{ ami_family }}@latest
  role: KarpenterNodeRole-{{ cluster_name }}
  subnetSelectorTerms:
  - tags:
      karpenter.sh/discovery: {{ cluster_name }}
  securityGroupSelectorTerms:
  - tags:
      aws:eks:cluster-name: {{ cluster_name }}
  tags:
    karpenter.sh/discovery: {{ cluster_name }}
---
apiVersion: karpenter.sh/v1
kind: NodePool
metadata:
  name: default
spec:
  template:
    spec:
      expireAfter: {{ expire_after }}
      nodeClassRef:
        group: karpenter.k8s.aws
        kind: EC2NodeClass
        name: default
      requirements:
      - key: kubernetes.io/arch
        operator: In
        values:
        - amd64
      - key: kubernetes.io/os
        operator: In
        values:
        - linux
      - key: karpenter.sh/capacity-type
        operator: In
        values:
{% for capacity_type in capacity_types %}
        - {{ capacity_type }}
{% endfor %}
      - key: karpenter.k8s.aws/instance-category
        operator: In
        values:
{% for category in instance_categories %}
        - {{ category }}
{% endfor %}
      - key: karpenter.k8s.aws/instance-generation
        operator: Gt
        values:
        - "2"
  limits:
    cpu: {{ cpu_limit }}
  disruption:
    consolidationPolicy: WhenEmptyOrUnderutilized
    consolidateAfter: 1m
"""


def karpenter_node_role() -> Resource:
    return Resource(
        name="karpenter-node-role",
        options=IamRoleOptions(
            role_name=TextTemplate(NODE_ROLE_NAME, "text", "karpenter-node-role-name"),
            assume_role_service="ec2.amazonaws.com",
            managed_policies=NODE_ROLE_POLICIES,
            description="Role for nodes launched by Karpenter",
        ),
    )


def karpenter_sqs_queue() -> Resource:
    return Resource(
        name="karpenter-sqs-queue",
        options=ManagedQueueOptions(
            queue_name=TextTemplate("karpenter-{{ cluster_name }}", "text", "karpenter-queue-name"),
            message_retention_seconds=300,
            event_rules=[
                EventRule(
                    name=TextTemplate("Karpenter-{{ cluster_name }}-ScheduledChange", "text"),
                    source=["aws.health"],
                    detail_type=["AWS Health Event"],
                ),
                EventRule(
                    name=TextTemplate("Karpenter-{{ cluster_name }}-SpotInterruption", "text"),
                    source=["aws.ec2"],
                    detail_type=["EC2 Spot Instance Interruption Warning"],
                ),
                EventRule(
                    name=TextTemplate("Karpenter-{{ cluster_name }}-Rebalance", "text"),
                    source=["aws.ec2"],
                    detail_type=["EC2 Instance Rebalance Recommendation"],
                ),
                EventRule(
                    name=TextTemplate("Karpenter-{{ cluster_name }}-InstanceStateChange", "text"),
                    source=["aws.ec2"],
                    detail_type=["EC2 Instance State-change Notification"],
                ),
            ],
        ),
    )


def karpenter_default_nodepool() -> Resource:
    return Resource(
        name="karpenter-default-nodepool",
        options=ManifestOptions(
            template=TextTemplate(DEFAULT_NODEPOOL_TEMPLATE, "yaml", "karpenter-default-nodepool"),
        ),
    )


def new_app() -> Application:
    return Application(
        name="karpenter",
        description="Karpenter Node Autoscaling",
        dependencies=[
            Resource(
                name="ec2-spot-service-linked-role",
                options=ServiceLinkedRoleOptions(
                    role_name="AWSServiceRoleForEC2Spot",
                    service_name="spot.amazonaws.com",
                ),
            ),
            Resource(
                name="karpenter-irsa",
                options=FederatedIdentityOptions(
                    policy_document=TextTemplate(IRSA_POLICY_DOCUMENT, "yaml", "karpenter-irsa-policy"),
                    inline_policy_name="KarpenterControllerPolicy",
                    description="Karpenter controller",
                ),
            ),
            karpenter_node_role(),
            karpenter_sqs_queue(),
            Resource(
                name="karpenter-node-iam-auth",
                options=IamBindingOptions(
                    role_name=TextTemplate(NODE_ROLE_NAME, "text", "karpenter-node-role-name"),
                    groups=["system:bootstrappers", "system:nodes"],
                    username="system:node:{{EC2PrivateDNSName}}",
                ),
            ),
        ],
        installer=HelmInstaller(
            chart_name="karpenter",
            release_name="karpenter",
            repository_url="oci://public.ecr.aws/karpenter/karpenter",
            values_template=TextTemplate(VALUES_TEMPLATE, "yaml", "karpenter-values"),
            wait=True,
        ),
        options=KarpenterOptions(),
        post_install_resources=[karpenter_default_nodepool()],
    )
