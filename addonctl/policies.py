"""IAM documents built as data and serialized, never string-templated."""

import json

POLICY_VERSION = "2012-10-17"


def trust_policy_for_service(service: str) -> str:
    """Trust policy letting an AWS service principal assume the role."""
    return json.dumps(
        {
            "Version": POLICY_VERSION,
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


def trust_policy_for_service_account(
    oidc_provider_arn: str,
    oidc_provider: str,
    namespace: str,
    service_account: str,
) -> str:
    """IRSA trust policy scoped to a single Kubernetes service account."""
    return json.dumps(
        {
            "Version": POLICY_VERSION,
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Federated": oidc_provider_arn},
                    "Action": "sts:AssumeRoleWithWebIdentity",
                    "Condition": {
                        "StringEquals": {
                            f"{oidc_provider}:sub": f"system:serviceaccount:{namespace}:{service_account}",
                            f"{oidc_provider}:aud": "sts.amazonaws.com",
                        }
                    },
                }
            ],
        }
    )


def queue_policy(queue_arn: str, services: list[str]) -> str:
    """SQS resource policy allowing the given service principals to send messages."""
    return json.dumps(
        {
            "Version": POLICY_VERSION,
            "Id": "EC2InterruptionPolicy",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": services},
                    "Action": "sqs:SendMessage",
                    "Resource": queue_arn,
                },
                {
                    "Sid": "DenyHTTP",
                    "Effect": "Deny",
                    "Action": "sqs:*",
                    "Resource": queue_arn,
                    "Condition": {"Bool": {"aws:SecureTransport": False}},
                    "Principal": "*",
                },
            ],
        }
    )


def managed_policy_arn(partition: str, name: str) -> str:
    return f"arn:{partition}:iam::aws:policy/{name}"
