# main.py
"""
Command line entry point.

  python main.py arc --license-type PAYG --enable-esu Yes --subscription subs.csv
  python main.py azure-sql --license-type BasePrice --force-start-on-resources
  python main.py setup-automation --subscription-id <id> --resource-group rg-lic ...

Bulk commands keep going past per-resource and per-subscription failures and report
them on the console; only invalid arguments stop a run before any work starts.
"""

import argparse
import signal
import sys
from typing import List, Optional

import config
from arc_sql_license import parse_exclusion_tags, process_arc_sql
from automation_setup import RUNBOOK_TYPES, TARGET_ARC, TARGET_AZURE_SQL, WEEK_DAYS, SetupContext, provision
from azure_sql_license import (
    process_databases,
    process_elastic_pools,
    process_instance_pools,
    process_managed_instances,
)
from license_rules import ARC_LICENSE_TYPES, AZURE_SQL_LICENSE_TYPES, LicenseRequest, parse_yes_no
from polling import CancellationToken, RetryPolicy
from report import LicenseReport, print_report, write_report
from sql_vm_license import process_sql_vms
from ssis_license import process_ssis_runtimes
from subscription_scope import resolve_subscriptions, validate_subscription
from token_credential import get_credential

YES_NO = ("Yes", "No")


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--subscription", default=None,
                   help="Subscription ID, path to a CSV of subscription IDs, or 'all' (default)")
    p.add_argument("--resource-group", default=None, help="Limit to one resource group")
    p.add_argument("--report-only", action="store_true", help="Show what would change without changing it")
    p.add_argument("--tenant-id", default=None, help="Tenant to authenticate against")
    p.add_argument("--use-managed-identity", action="store_true", help="Authenticate with the managed identity")
    p.add_argument("--output-dir", default=None, help="Also write the summary as JSON to this directory")


def _time_of_day(value: str) -> str:
    try:
        hour, minute = (int(x) for x in value.split(":", 1))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected HH:MM, got {value!r}")
    if not (0 <= hour < 24 and 0 <= minute < 60):
        raise argparse.ArgumentTypeError(f"expected HH:MM, got {value!r}")
    return f"{hour:02d}:{minute:02d}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Toggle SQL licensing settings on Azure and Arc-enabled resources")
    sub = parser.add_subparsers(dest="command", required=True)

    arc = sub.add_parser("arc", help="Arc-enabled SQL Server: license type, ESU, physical core license")
    _add_common(arc)
    arc.add_argument("--machine-name", default=None, help="Limit to one Arc machine")
    arc.add_argument("--license-type", choices=ARC_LICENSE_TYPES, default=None)
    arc.add_argument("--enable-esu", choices=YES_NO, default=None)
    arc.add_argument("--use-pcore-license", choices=YES_NO, default=None)
    arc.add_argument("--force", action="store_true", help="Overwrite a license type that is already set")
    arc.add_argument("--exclusion-tags", default=None,
                     help="Skip machines with these tags: JSON object or name=value,name2=value2")
    arc.add_argument("--no-wait", action="store_true", help="Do not wait for extension updates to finish")

    sql = sub.add_parser("azure-sql", help="Azure SQL VMs, Managed Instances, Databases, Pools, SSIS runtimes")
    _add_common(sql)
    sql.add_argument("--license-type", choices=AZURE_SQL_LICENSE_TYPES, required=True)
    sql.add_argument("--force-start-on-resources", action="store_true",
                     help="Start stopped SQL VMs / Managed Instances (and stop started SSIS runtimes) to update them")

    setup = sub.add_parser("setup-automation", help="Provision an Automation account that runs this weekly")
    setup.add_argument("--subscription-id", required=True, help="Subscription hosting the Automation account")
    setup.add_argument("--resource-group", required=True)
    setup.add_argument("--location", required=True)
    setup.add_argument("--automation-account", required=True)
    setup.add_argument("--target", choices=(TARGET_ARC, TARGET_AZURE_SQL), required=True)
    setup.add_argument("--runbook-name", default=None)
    setup.add_argument("--runbook-path", default="main.py")
    setup.add_argument("--runbook-type", choices=RUNBOOK_TYPES, default="Python3")
    setup.add_argument("--schedule-name", default=None)
    setup.add_argument("--schedule-day", choices=WEEK_DAYS, default="Sunday")
    setup.add_argument("--schedule-time", type=_time_of_day, default="02:00")
    setup.add_argument("--time-zone", default="UTC")
    setup.add_argument("--run-now", action="store_true")
    setup.add_argument("--tenant-id", default=None)
    # forwarded to the runbook
    setup.add_argument("--target-subscription", default=None,
                       help="Subscription scope for the runbook (default: all the identity can see)")
    setup.add_argument("--target-resource-group", default=None)
    setup.add_argument("--license-type", default=None)
    setup.add_argument("--enable-esu", choices=YES_NO, default=None)
    setup.add_argument("--use-pcore-license", choices=YES_NO, default=None)
    setup.add_argument("--force", action="store_true")
    setup.add_argument("--exclusion-tags", default=None)
    setup.add_argument("--force-start-on-resources", action="store_true")

    return parser


def _install_cancel_handlers(token: CancellationToken) -> None:
    def _handler(signum, frame):
        print(f"[WARN] Signal {signum} received, cancelling pending waits...")
        token.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except (ValueError, OSError):
            # not on the main thread / unsupported platform
            pass


def _finish(report: LicenseReport, args) -> LicenseReport:
    print_report(report, report_only=args.report_only)
    out_dir = args.output_dir or config.OUTPUT_DIR
    if out_dir:
        write_report(report, out_dir, prefix=f"license_report_{args.command}")
    return report


def run_arc(args, credential=None) -> LicenseReport:
    request = LicenseRequest(
        license_type=args.license_type,
        enable_esu=parse_yes_no(args.enable_esu),
        use_pcore=parse_yes_no(args.use_pcore_license),
        force=args.force,
    )
    exclusion_tags = parse_exclusion_tags(args.exclusion_tags)
    credential = credential or get_credential(args.tenant_id, args.use_managed_identity)

    report = LicenseReport()
    for subscription_id in resolve_subscriptions(args.subscription, credential):
        if not validate_subscription(subscription_id, credential):
            continue
        try:
            report = report.merge(process_arc_sql(
                subscription_id,
                credential,
                request,
                resource_group=args.resource_group,
                machine_name=args.machine_name,
                exclusion_tags=exclusion_tags,
                report_only=args.report_only,
                no_wait=args.no_wait,
            ))
        except Exception as e:
            print(f"[WARN] Arc SQL Server update failed for subscription {subscription_id}: {e}")

    return _finish(report, args)


def run_azure_sql(args, credential=None, cancel_token: Optional[CancellationToken] = None) -> LicenseReport:
    credential = credential or get_credential(args.tenant_id, args.use_managed_identity)
    policy = RetryPolicy.from_config()
    token = cancel_token or CancellationToken()
    target = args.license_type
    force_start = args.force_start_on_resources

    stages = [
        ("SQL VMs", lambda sub: process_sql_vms(
            sub, credential, target, resource_group=args.resource_group, force_start=force_start,
            report_only=args.report_only, policy=policy, cancel_token=token)),
        ("SQL Managed Instances", lambda sub: process_managed_instances(
            sub, credential, target, resource_group=args.resource_group, force_start=force_start,
            report_only=args.report_only, policy=policy, cancel_token=token)),
        ("SQL Databases", lambda sub: process_databases(
            sub, credential, target, resource_group=args.resource_group, report_only=args.report_only)),
        ("Elastic Pools", lambda sub: process_elastic_pools(
            sub, credential, target, resource_group=args.resource_group, report_only=args.report_only)),
        ("Instance Pools", lambda sub: process_instance_pools(
            sub, credential, target, resource_group=args.resource_group, report_only=args.report_only)),
        ("SSIS integration runtimes", lambda sub: process_ssis_runtimes(
            sub, credential, target, resource_group=args.resource_group, force_start=force_start,
            report_only=args.report_only, policy=policy, cancel_token=token)),
    ]

    report = LicenseReport()
    for subscription_id in resolve_subscriptions(args.subscription, credential):
        if token.cancelled:
            print("[WARN] Cancelled; remaining subscriptions not processed.")
            break
        if not validate_subscription(subscription_id, credential):
            continue
        for label, stage in stages:
            try:
                report = report.merge(stage(subscription_id))
            except Exception as e:
                print(f"[WARN] {label} update failed for subscription {subscription_id}: {e}")

    return _finish(report, args)


def runbook_arguments(args) -> List[str]:
    """The fixed argument list the scheduled runbook is started with."""
    out = [args.target, "--use-managed-identity"]
    if args.target_subscription:
        out += ["--subscription", args.target_subscription]
    if args.target_resource_group:
        out += ["--resource-group", args.target_resource_group]

    if args.target == TARGET_ARC:
        if args.license_type:
            if args.license_type not in ARC_LICENSE_TYPES:
                raise ValueError(f"--license-type for arc must be one of {', '.join(ARC_LICENSE_TYPES)}")
            out += ["--license-type", args.license_type]
        if args.enable_esu:
            out += ["--enable-esu", args.enable_esu]
        if args.use_pcore_license:
            out += ["--use-pcore-license", args.use_pcore_license]
        if args.force:
            out.append("--force")
        if args.exclusion_tags:
            out += ["--exclusion-tags", args.exclusion_tags]
    else:
        if args.license_type not in AZURE_SQL_LICENSE_TYPES:
            raise ValueError(f"--license-type for azure-sql must be one of {', '.join(AZURE_SQL_LICENSE_TYPES)}")
        out += ["--license-type", args.license_type]
        if args.force_start_on_resources:
            out.append("--force-start-on-resources")
    return out


def run_setup(args, credential=None, ctx: Optional[SetupContext] = None) -> int:
    try:
        arguments = runbook_arguments(args)
    except ValueError as e:
        print(f"[ERROR] {e}")
        return 2

    if ctx is None:
        credential = credential or get_credential(args.tenant_id)
        ctx = SetupContext.create(
            credential, args.subscription_id, args.resource_group, args.location, args.automation_account
        )

    try:
        provision(
            ctx,
            target=args.target,
            runbook_name=args.runbook_name or f"update-{args.target}-sql-license",
            runbook_path=args.runbook_path,
            runbook_arguments=arguments,
            runbook_type=args.runbook_type,
            schedule_name=args.schedule_name or f"weekly-{args.target}-sql-license",
            schedule_day=args.schedule_day,
            schedule_time=args.schedule_time,
            time_zone=args.time_zone,
            run_now=args.run_now,
        )
    except Exception as e:
        print("Aborting due to previous failure.", e)
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "arc":
        try:
            parse_exclusion_tags(args.exclusion_tags)
        except ValueError as e:
            parser.error(f"--exclusion-tags: {e}")
        run_arc(args)
        return 0

    if args.command == "azure-sql":
        token = CancellationToken()
        _install_cancel_handlers(token)
        run_azure_sql(args, cancel_token=token)
        return 0

    return run_setup(args)


if __name__ == "__main__":
    sys.exit(main())
