# ssis_license.py
"""
License type for Data Factory SSIS (Azure-SSIS / managed) integration runtimes.

Integration runtimes are not indexed by Resource Graph, so factories and their
runtimes are listed through the Data Factory SDK. A runtime only accepts
configuration changes while stopped: a started runtime is skipped unless
force_start is set, in which case it is stopped, updated and started again.
"""

from typing import Any, Dict, List, Optional

from azure.mgmt.datafactory import DataFactoryManagementClient
from azure.mgmt.datafactory.models import IntegrationRuntimeSsisProperties

from license_rules import decide_license_type
from polling import CancellationToken, RetryPolicy, finish_deferred
from report import LicenseReport

CATEGORY = "ssis-integration-runtime"
MANAGED_RUNTIME = "managed"
IDLE_STATES = ("stopped", "initial")
STARTED = "started"


def _enum_str(x) -> str:
    x = getattr(x, "value", x)
    return "" if x is None else str(x)


def _id_to_rg(resource_id: str) -> str:
    try:
        parts = resource_id.split("/")
        return parts[[p.lower() for p in parts].index("resourcegroups") + 1]
    except ValueError:
        return ""


def _ssis_license_type(ir) -> Optional[str]:
    props = getattr(ir, "properties", None)
    ssis = getattr(props, "ssis_properties", None)
    return _enum_str(getattr(ssis, "license_type", None)) or None


def list_ssis_runtimes(
    df_client: DataFactoryManagementClient, resource_group: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Returns [{id, name, rg, factory, license_type, state}] for managed (SSIS) runtimes.
    """
    if resource_group:
        factories = df_client.factories.list_by_resource_group(resource_group)
    else:
        factories = df_client.factories.list()

    out = []
    for factory in factories:
        rg = _id_to_rg(getattr(factory, "id", "") or "")
        try:
            runtimes = list(df_client.integration_runtimes.list_by_factory(rg, factory.name))
        except Exception as e:
            print(f"[WARN] Could not list integration runtimes for factory {factory.name}: {e}")
            continue

        for ir in runtimes:
            props = getattr(ir, "properties", None)
            if _enum_str(getattr(props, "type", "")).lower() != MANAGED_RUNTIME:
                continue
            out.append({
                "id": getattr(ir, "id", "") or "",
                "name": ir.name,
                "rg": rg,
                "factory": factory.name,
                "license_type": _ssis_license_type(ir),
                "state": _enum_str(getattr(props, "state", "")).lower(),
            })
    return out


def process_ssis_runtimes(
    subscription_id: str,
    credential,
    target: str,
    *,
    resource_group: Optional[str] = None,
    force_start: bool = False,
    report_only: bool = False,
    policy: Optional[RetryPolicy] = None,
    cancel_token: Optional[CancellationToken] = None,
    df_client: Optional[DataFactoryManagementClient] = None,
) -> LicenseReport:
    report = LicenseReport()
    policy = policy or RetryPolicy.from_config()
    df_client = df_client or DataFactoryManagementClient(credential, subscription_id)

    try:
        runtimes = list_ssis_runtimes(df_client, resource_group)
    except Exception as e:
        print(f"[ERROR] Could not list Data Factories: {e}")
        return report
    print(f"[INFO] SSIS integration runtimes found: {len(runtimes)}")

    def state(item: Dict[str, Any]) -> str:
        ir = df_client.integration_runtimes.get(item["rg"], item["factory"], item["name"])
        return _enum_str(getattr(ir.properties, "state", "")).lower()

    def apply(item: Dict[str, Any]) -> None:
        ir = df_client.integration_runtimes.get(item["rg"], item["factory"], item["name"])
        if ir.properties.ssis_properties is None:
            ir.properties.ssis_properties = IntegrationRuntimeSsisProperties()
        ir.properties.ssis_properties.license_type = target
        df_client.integration_runtimes.create_or_update(item["rg"], item["factory"], item["name"], ir)

    def restart(item: Dict[str, Any]) -> None:
        df_client.integration_runtimes.begin_start(item["rg"], item["factory"], item["name"])

    deferred = []
    for item in runtimes:
        rid = item["id"]
        label = f"{item['factory']}/{item['name']}"
        if not decide_license_type(item["license_type"], target).changed:
            continue

        if item["state"] and item["state"] not in IDLE_STATES:
            if item["state"] != STARTED:
                print(f"[SKIP] {label}: runtime is {item['state']}, try again later")
                report.record_skipped(CATEGORY, rid)
                continue
            if not force_start:
                print(f"[SKIP] {label}: runtime is started (use --force-start-on-resources to stop/restart it)")
                report.record_skipped(CATEGORY, rid)
                continue
            print(f"[CHANGE] {label}: {item['license_type']} -> {target} (stop, update, start)")
            if report_only:
                report.record_changed(CATEGORY, rid)
                continue
            try:
                df_client.integration_runtimes.begin_stop(item["rg"], item["factory"], item["name"])
                deferred.append((rid, label, item))
            except Exception as e:
                print(f"[ERROR] {label}: stop failed: {e}")
                report.record_failed(CATEGORY, rid)
            continue

        print(f"[CHANGE] {label}: {item['license_type']} -> {target}")
        if report_only:
            report.record_changed(CATEGORY, rid)
            continue
        try:
            apply(item)
            report.record_changed(CATEGORY, rid)
        except Exception as e:
            print(f"[ERROR] {label}: license update failed: {e}")
            report.record_failed(CATEGORY, rid)

    if deferred:
        print(f"[INFO] Waiting on {len(deferred)} SSIS runtime(s) being stopped")
        finish_deferred(
            deferred,
            is_ready=lambda it: state(it) in IDLE_STATES,
            apply=apply,
            restore=restart,
            policy=policy,
            cancel_token=cancel_token,
            report=report,
            category=CATEGORY,
        )

    return report
