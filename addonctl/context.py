"""Reads the cluster context once at the start of an invocation."""

import logging
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from addonctl.errors import ContextLookupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClusterInfo:
    """Ambient facts about the target cluster and the calling identity."""

    partition: str
    region: str
    account: str
    cluster_name: str
    oidc_issuer: Optional[str] = None


class AwsContextSource:
    """Looks up account, partition, region and OIDC issuer with boto3."""

    def __init__(self, session: boto3.Session):
        self.session = session

    def read(self, cluster_name: str) -> ClusterInfo:
        region = self.session.region_name
        if not region:
            raise ContextLookupError(
                "No AWS region configured. Pass --region or set AWS_REGION / AWS_DEFAULT_REGION."
            )

        try:
            identity = self.session.client("sts").get_caller_identity()
        except NoCredentialsError as e:
            raise ContextLookupError(
                f"Failed to locate AWS credentials: {e}. "
                "Use env vars, a profile, or an IAM role."
            ) from e
        except (ClientError, BotoCoreError) as e:
            raise ContextLookupError(f"Failed to get caller identity: {e}") from e

        # arn:<partition>:sts::<account>:assumed-role/...
        partition = identity["Arn"].split(":")[1]
        account = identity["Account"]

        try:
            cluster = self.session.client("eks").describe_cluster(name=cluster_name)["cluster"]
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                raise ContextLookupError(f"EKS cluster '{cluster_name}' not found in {region}") from e
            raise ContextLookupError(f"Failed to describe cluster '{cluster_name}': {e}") from e
        except BotoCoreError as e:
            raise ContextLookupError(f"Failed to describe cluster '{cluster_name}': {e}") from e

        oidc_issuer = cluster.get("identity", {}).get("oidc", {}).get("issuer")
        if not oidc_issuer:
            logger.warning("Cluster '%s' has no OIDC issuer", cluster_name)

        logger.info("Cluster %s in %s (account %s, partition %s)", cluster_name, region, account, partition)
        return ClusterInfo(
            partition=partition,
            region=region,
            account=account,
            cluster_name=cluster_name,
            oidc_issuer=oidc_issuer,
        )
