"""addonctl command line.

    addonctl list
    addonctl render karpenter --cluster demo
    addonctl install karpenter --cluster demo --version 1.5.0 -y
    addonctl uninstall karpenter --cluster demo
"""

import argparse
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import boto3
from dotenv import load_dotenv

from addonctl.application import Application, Clients
from addonctl.applications import get_application, list_applications
from addonctl.console import (
    confirm,
    print_error,
    print_header,
    print_info,
    print_success,
    print_warning,
)
from addonctl.context import AwsContextSource, ClusterInfo
from addonctl.errors import ProvisionerError, ReadinessTimeoutError, TeardownError
from addonctl.installer import HelmClient
from addonctl.models import InstallReport, ResourceAction, UninstallReport
from addonctl.resources import ResourceBackend
from addonctl.resources.aws import aws_handlers
from addonctl.resources.kubernetes import KubectlClient, kubernetes_handlers
from addonctl.settings import Settings, get_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def configure_logging(settings: Settings, verbose: bool = False) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)


def parse_arguments(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="addonctl",
        description="Install cluster add-ons and the cloud resources they depend on",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List available applications")

    for name, help_text in (
        ("render", "Render every document without changing anything"),
        ("install", "Install or upgrade an application"),
        ("uninstall", "Uninstall an application and delete its resources"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("application", help="Application name, e.g. karpenter")
        sub.add_argument("--cluster", "-c", required=True, help="EKS cluster name")
        sub.add_argument("--region", help="AWS region (defaults to AWS_REGION)")
        sub.add_argument("--profile", help="AWS profile (defaults to AWS_PROFILE)")
        sub.add_argument("--version", help="Chart and image version")
        sub.add_argument("--replicas", type=int, help="Controller replicas")
        sub.add_argument("--service-account", help="Service account name")
        sub.add_argument("--namespace", "-n", help="Namespace to install into")
        sub.add_argument(
            "--enable-spot-to-spot",
            action="store_true",
            default=None,
            help="Enable spot-to-spot consolidation",
        )
        sub.add_argument("--no-wait", action="store_true", help="Do not wait for the release to be ready")
        sub.add_argument("--timeout", type=int, help="Seconds to wait for readiness")
        sub.add_argument("-y", "--yes", action="store_true", help="Skip confirmation prompts")
        if name == "render":
            sub.add_argument("--account", help="Render offline for this account id instead of calling AWS")
            sub.add_argument("--partition", default="aws", help="Partition used with --account")
            sub.add_argument("--oidc-issuer", help="OIDC issuer URL used with --account")

    return parser.parse_args(argv)


def option_overrides(args: argparse.Namespace) -> dict:
    """Option values given on the command line. Unset flags are None and ignored."""
    return {
        "version": args.version,
        "replicas": args.replicas,
        "service_account": args.service_account,
        "namespace": args.namespace,
        "enable_spot_to_spot": args.enable_spot_to_spot,
        "wait": False if args.no_wait else None,
        "timeout_seconds": args.timeout,
    }


def build_clients(args: argparse.Namespace, settings: Settings) -> Clients:
    session = boto3.Session(
        region_name=args.region or settings.aws_region or None,
        profile_name=args.profile or settings.aws_profile or None,
    )
    kubectl = KubectlClient(settings.kubectl_binary, timeout=settings.command_timeout_seconds)
    backend = ResourceBackend({**aws_handlers(session), **kubernetes_handlers(kubectl)})
    helm = HelmClient(settings.helm_binary, kubectl=kubectl, timeout=settings.command_timeout_seconds)
    return Clients(context_source=AwsContextSource(session), backend=backend, helm=helm)


def cmd_list() -> None:
    print_header("Applications")
    for app in list_applications():
        print(f"  {app.name:<20} {app.description} (default version {app.options.version})")


def cmd_render(app: Application, args: argparse.Namespace, settings: Settings) -> None:
    if args.account:
        cluster = ClusterInfo(
            partition=args.partition,
            region=args.region or settings.aws_region,
            account=args.account,
            cluster_name=args.cluster,
            oidc_issuer=args.oidc_issuer,
        )
    else:
        cluster = build_clients(args, settings).context_source.read(args.cluster)

    plan = app.plan(app.build_context(cluster, option_overrides(args)))

    for resource in [*plan.dependencies, *plan.post_install]:
        print(f"# {resource.name} ({resource.kind.value}): {resource.key}")
        for document in ("manifest", "policy_document", "assume_role_policy"):
            if document in resource.params:
                print(resource.params[document])
        for policy_name, policy in resource.params.get("inline_policies", {}).items():
            print(f"# inline policy {policy_name}")
            print(policy)
    print(f"# {app.installer.release_name} values")
    print(plan.values)


def run_install(app: Application, clients: Clients, args: argparse.Namespace, settings: Settings) -> InstallReport:
    """Run the install on a worker so Ctrl-C can cancel the readiness wait."""
    cancel = threading.Event()
    with ThreadPoolExecutor(max_workers=1) as executor:
        future = executor.submit(
            app.install,
            clients,
            args.cluster,
            option_overrides(args),
            cancel,
            settings.readiness_poll_seconds,
        )
        try:
            return future.result()
        except KeyboardInterrupt:
            print_warning("Interrupted, cancelling...")
            cancel.set()
            return future.result()


def cmd_install(app: Application, args: argparse.Namespace, settings: Settings) -> None:
    print_header(f"Installing {app.description}")
    if not args.yes and not confirm(f"Install {app.name} on cluster '{args.cluster}'?"):
        print_info("Exiting without installing.")
        return

    clients = build_clients(args, settings)
    try:
        report = run_install(app, clients, args, settings)
    except ReadinessTimeoutError as e:
        print_warning(str(e))
        print_info("Resources and release were applied. Re-run install to wait again.")
        raise

    for outcome in [*report.dependencies, *report.post_install]:
        verb = "Created" if outcome.action == ResourceAction.CREATED else "Found existing"
        print_success(f"{verb} {outcome.kind.value} '{outcome.name}'")
    print_success(
        f"{app.name} {report.release_action.value} on '{report.cluster_name}' (state: {report.state.value})"
    )


def cmd_uninstall(app: Application, args: argparse.Namespace, settings: Settings) -> None:
    print_header(f"Uninstalling {app.description}")
    if not args.yes and not confirm(f"Uninstall {app.name} and delete its resources from '{args.cluster}'?"):
        print_info("Exiting without uninstalling.")
        return

    report: UninstallReport = app.uninstall(build_clients(args, settings), args.cluster, option_overrides(args))
    if report.release_removed:
        print_success(f"Removed release '{app.installer.release_name}'")
    for outcome in report.resources:
        if outcome.action == ResourceAction.DELETED:
            print_success(f"Deleted {outcome.kind.value} '{outcome.name}'")
        else:
            print_info(f"{outcome.kind.value} '{outcome.name}' was already absent")


def main(argv: Optional[list[str]] = None) -> None:
    load_dotenv()
    args = parse_arguments(argv)
    settings = get_settings()
    configure_logging(settings, args.verbose)

    try:
        if args.command == "list":
            cmd_list()
            return

        app = get_application(args.application)
        if args.command == "render":
            cmd_render(app, args, settings)
        elif args.command == "install":
            cmd_install(app, args, settings)
        elif args.command == "uninstall":
            cmd_uninstall(app, args, settings)
    except TeardownError as e:
        for error in e.errors:
            print_error(str(error))
        print_error(f"Teardown finished with {len(e.errors)} failure(s)")
        sys.exit(1)
    except ProvisionerError as e:
        print_error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        print_warning("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
