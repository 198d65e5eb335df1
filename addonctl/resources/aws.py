"""boto3-backed handlers for IAM, SQS and EventBridge resources."""

import logging

import boto3
from botocore.exceptions import ClientError

from addonctl.models import ResourceKind
from addonctl.resources.backend import LookupResult, ResourceHandler

logger = logging.getLogger(__name__)

QUEUE_NOT_FOUND_CODES = ("AWS.SimpleQueueService.NonExistentQueue", "QueueDoesNotExist")

QUEUE_TARGET_ID = "InterruptionQueueTarget"


def _error_code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "")


class ServiceLinkedRoleHandler(ResourceHandler):
    def __init__(self, iam):
        self.iam = iam

    def lookup(self, key: str) -> LookupResult:
        try:
            response = self.iam.get_role(RoleName=key)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return LookupResult(False)
            raise
        return LookupResult(True, response["Role"]["Arn"])

    def create(self, params: dict) -> str:
        kwargs = {"AWSServiceName": params["service_name"]}
        if params.get("description"):
            kwargs["Description"] = params["description"]
        response = self.iam.create_service_linked_role(**kwargs)
        return response["Role"]["Arn"]

    def delete(self, identifier: str) -> None:
        role_name = identifier.rsplit("/", 1)[-1]
        try:
            response = self.iam.delete_service_linked_role(RoleName=role_name)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return
            raise
        logger.info("Service-linked role deletion task: %s", response.get("DeletionTaskId"))


class IamRoleHandler(ResourceHandler):
    """IAM role with managed and inline policies. Used for node roles and IRSA roles."""

    def __init__(self, iam):
        self.iam = iam

    def lookup(self, key: str) -> LookupResult:
        try:
            response = self.iam.get_role(RoleName=key)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return LookupResult(False)
            raise
        return LookupResult(True, response["Role"]["Arn"])

    def create(self, params: dict) -> str:
        role_name = params["role_name"]
        kwargs = {
            "RoleName": role_name,
            "AssumeRolePolicyDocument": params["assume_role_policy"],
        }
        if params.get("description"):
            kwargs["Description"] = params["description"]
        response = self.iam.create_role(**kwargs)
        self._attach_policies(role_name, params)
        return response["Role"]["Arn"]

    def reconcile(self, identifier: str, params: dict) -> None:
        # attach_role_policy and put_role_policy both overwrite in place
        self._attach_policies(params["role_name"], params)

    def _attach_policies(self, role_name: str, params: dict) -> None:
        for policy_arn in params.get("managed_policy_arns", []):
            self.iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)

        for policy_name, document in params.get("inline_policies", {}).items():
            self.iam.put_role_policy(RoleName=role_name, PolicyName=policy_name, PolicyDocument=document)

    def delete(self, identifier: str) -> None:
        role_name = identifier.rsplit("/", 1)[-1]
        try:
            self._detach_everything(role_name)
            self.iam.delete_role(RoleName=role_name)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return
            raise

    def _detach_everything(self, role_name: str) -> None:
        attached = self.iam.list_attached_role_policies(RoleName=role_name)
        for policy in attached.get("AttachedPolicies", []):
            self.iam.detach_role_policy(RoleName=role_name, PolicyArn=policy["PolicyArn"])

        inline = self.iam.list_role_policies(RoleName=role_name)
        for policy_name in inline.get("PolicyNames", []):
            self.iam.delete_role_policy(RoleName=role_name, PolicyName=policy_name)

        profiles = self.iam.list_instance_profiles_for_role(RoleName=role_name)
        for profile in profiles.get("InstanceProfiles", []):
            self.iam.remove_role_from_instance_profile(
                InstanceProfileName=profile["InstanceProfileName"], RoleName=role_name
            )


class CustomPolicyHandler(ResourceHandler):
    """Customer managed IAM policy, keyed by ARN."""

    def __init__(self, iam):
        self.iam = iam

    def lookup(self, key: str) -> LookupResult:
        try:
            response = self.iam.get_policy(PolicyArn=key)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return LookupResult(False)
            raise
        return LookupResult(True, response["Policy"]["Arn"])

    def create(self, params: dict) -> str:
        kwargs = {
            "PolicyName": params["policy_name"],
            "PolicyDocument": params["policy_document"],
        }
        if params.get("description"):
            kwargs["Description"] = params["description"]
        response = self.iam.create_policy(**kwargs)
        return response["Policy"]["Arn"]

    def delete(self, identifier: str) -> None:
        try:
            versions = self.iam.list_policy_versions(PolicyArn=identifier)
            for version in versions.get("Versions", []):
                if not version["IsDefaultVersion"]:
                    self.iam.delete_policy_version(PolicyArn=identifier, VersionId=version["VersionId"])
            self.iam.delete_policy(PolicyArn=identifier)
        except ClientError as e:
            if _error_code(e) == "NoSuchEntity":
                return
            raise


class InterruptionQueueHandler(ResourceHandler):
    """SQS queue plus the EventBridge rules that target it."""

    def __init__(self, sqs, events):
        self.sqs = sqs
        self.events = events

    def lookup(self, key: str) -> LookupResult:
        try:
            response = self.sqs.get_queue_url(QueueName=key)
        except ClientError as e:
            if _error_code(e) in QUEUE_NOT_FOUND_CODES:
                return LookupResult(False)
            raise
        return LookupResult(True, response["QueueUrl"])

    def create(self, params: dict) -> str:
        response = self.sqs.create_queue(QueueName=params["queue_name"], Attributes=params["attributes"])
        queue_url = response["QueueUrl"]
        self._put_rules(params)
        return queue_url

    def reconcile(self, identifier: str, params: dict) -> None:
        self.sqs.set_queue_attributes(QueueUrl=identifier, Attributes=params["attributes"])
        self._put_rules(params)

    def _put_rules(self, params: dict) -> None:
        for rule in params.get("rules", []):
            logger.info("Putting EventBridge rule %s", rule["name"])
            self.events.put_rule(Name=rule["name"], EventPattern=rule["event_pattern"], State="ENABLED")
            self.events.put_targets(
                Rule=rule["name"],
                Targets=[{"Id": QUEUE_TARGET_ID, "Arn": params["queue_arn"]}],
            )

    def delete(self, identifier: str) -> None:
        try:
            attributes = self.sqs.get_queue_attributes(QueueUrl=identifier, AttributeNames=["QueueArn"])
        except ClientError as e:
            if _error_code(e) in QUEUE_NOT_FOUND_CODES:
                return
            raise
        queue_arn = attributes["Attributes"]["QueueArn"]

        rule_names = self.events.list_rule_names_by_target(TargetArn=queue_arn).get("RuleNames", [])
        for rule_name in rule_names:
            targets = self.events.list_targets_by_rule(Rule=rule_name).get("Targets", [])
            target_ids = [t["Id"] for t in targets if t["Arn"] == queue_arn]
            if target_ids:
                self.events.remove_targets(Rule=rule_name, Ids=target_ids)
            if len(target_ids) == len(targets):
                logger.info("Deleting EventBridge rule %s", rule_name)
                self.events.delete_rule(Name=rule_name)

        try:
            self.sqs.delete_queue(QueueUrl=identifier)
        except ClientError as e:
            if _error_code(e) in QUEUE_NOT_FOUND_CODES:
                return
            raise


def aws_handlers(session: boto3.Session) -> dict[ResourceKind, ResourceHandler]:
    """Build handlers for every AWS-side resource kind from one session."""
    iam = session.client("iam")
    role_handler = IamRoleHandler(iam)
    return {
        ResourceKind.SERVICE_LINKED_ROLE: ServiceLinkedRoleHandler(iam),
        ResourceKind.IAM_ROLE: role_handler,
        ResourceKind.FEDERATED_IDENTITY: role_handler,
        ResourceKind.CUSTOM_POLICY: CustomPolicyHandler(iam),
        ResourceKind.MANAGED_QUEUE: InterruptionQueueHandler(session.client("sqs"), session.client("events")),
    }
