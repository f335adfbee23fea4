# sql_vm_license.py
"""
License type for SQL Server on Azure VMs (SQL IaaS Agent extension resources).

The VM has to be running for the SQL IaaS extension to accept a new license type.
Stopped / deallocated VMs are skipped unless force_start is set; then they are
started, updated once running, and returned to their previous power state.
"""

from typing import Any, Dict, Optional

from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.sqlvirtualmachine import SqlVirtualMachineManagementClient

import config
from license_rules import SQL_VM_LICENSE_MAP, decide_license_type
from polling import CancellationToken, RetryPolicy, finish_deferred
from report import LicenseReport
from resource_graph import kql_quote, query_resources, scope_filters

CATEGORY = "sql-vm"
# free editions never take a paid license
FREE_IMAGE_SKUS = ("Express", "Developer")

POWER_RUNNING = "running"
POWER_DEALLOCATED = "deallocated"
POWER_STOPPED = "stopped"


def _id_to_rg(resource_id: str) -> str:
    try:
        parts = resource_id.split("/")
        return parts[[p.lower() for p in parts].index("resourcegroups") + 1]
    except ValueError:
        return ""


def _id_to_name(resource_id: str) -> str:
    return resource_id.rstrip("/").split("/")[-1] if resource_id else ""


def _get_power_state(instance_view) -> str:
    """
    Extracts PowerState from instance view statuses, e.g. 'PowerState/running' -> 'running'.
    """
    for st in getattr(instance_view, "statuses", None) or []:
        code = getattr(st, "code", None) or ""
        if code.lower().startswith("powerstate/"):
            return code.split("/", 1)[1].lower()
    return "unknown"


def build_query(subscription_id: str, target: str, resource_group: Optional[str] = None) -> str:
    skus = ", ".join(kql_quote(s) for s in FREE_IMAGE_SKUS)
    query = f"""
resources
| where type =~ 'microsoft.sqlvirtualmachine/sqlvirtualmachines'
| where subscriptionId =~ {kql_quote(subscription_id)}"""
    query += scope_filters(resource_group)
    query += f"""
| extend licenseType = tostring(properties.sqlServerLicenseType), imageSku = tostring(properties.sqlImageSku)
| where imageSku !in~ ({skus})
| where licenseType != {kql_quote(target)}
| project id, name, resourceGroup, licenseType, imageSku, vmId = tostring(properties.virtualMachineResourceId)
"""
    return query


def process_sql_vms(
    subscription_id: str,
    credential,
    license_type: str,
    *,
    resource_group: Optional[str] = None,
    force_start: bool = False,
    report_only: bool = False,
    policy: Optional[RetryPolicy] = None,
    cancel_token: Optional[CancellationToken] = None,
    graph_client=None,
    sqlvm_client: Optional[SqlVirtualMachineManagementClient] = None,
    compute_client: Optional[ComputeManagementClient] = None,
) -> LicenseReport:
    """
    license_type is the Azure SQL value (LicenseIncluded / BasePrice); it is mapped
    to the SQL VM vocabulary (PAYG / AHUB) here.
    """
    report = LicenseReport()
    policy = policy or RetryPolicy.from_config()
    target = SQL_VM_LICENSE_MAP.get(license_type, license_type)

    query = build_query(subscription_id, target, resource_group)
    config.debug(query)
    rows = query_resources(credential, [subscription_id], query, client=graph_client)
    print(f"[INFO] SQL VMs to review: {len(rows)}")

    sqlvm_client = sqlvm_client or SqlVirtualMachineManagementClient(credential, subscription_id)
    compute_client = compute_client or ComputeManagementClient(credential, subscription_id)

    def power_state(item: Dict[str, Any]) -> str:
        iv = compute_client.virtual_machines.instance_view(item["vm_rg"], item["vm_name"])
        return _get_power_state(iv)

    def apply(item: Dict[str, Any]) -> None:
        svm = sqlvm_client.sql_virtual_machines.get(item["rg"], item["name"])
        svm.sql_server_license_type = target
        sqlvm_client.sql_virtual_machines.begin_create_or_update(item["rg"], item["name"], svm).result()

    def restore(item: Dict[str, Any]) -> None:
        if item["power"] == POWER_DEALLOCATED:
            compute_client.virtual_machines.begin_deallocate(item["vm_rg"], item["vm_name"])
        else:
            compute_client.virtual_machines.begin_power_off(item["vm_rg"], item["vm_name"])

    deferred = []
    for row in rows:
        rid, name = row.get("id", ""), row.get("name", "")
        if not decide_license_type(row.get("licenseType") or None, target).changed:
            continue

        vm_id = row.get("vmId") or ""
        item = {
            "rg": row.get("resourceGroup", ""),
            "name": name,
            "vm_rg": _id_to_rg(vm_id) or row.get("resourceGroup", ""),
            "vm_name": _id_to_name(vm_id) or name,
        }

        try:
            item["power"] = power_state(item)
        except Exception as e:
            print(f"[ERROR] {name}: could not read VM power state: {e}")
            report.record_failed(CATEGORY, rid)
            continue

        if item["power"] != POWER_RUNNING:
            if item["power"] not in (POWER_DEALLOCATED, POWER_STOPPED):
                print(f"[SKIP] {name}: VM is {item['power']}, try again later")
                report.record_skipped(CATEGORY, rid)
                continue
            if not force_start:
                print(f"[SKIP] {name}: VM is {item['power']} (use --force-start-on-resources to start it)")
                report.record_skipped(CATEGORY, rid)
                continue
            print(f"[CHANGE] {name}: {row.get('licenseType')} -> {target} (start, update, {item['power']})")
            if report_only:
                report.record_changed(CATEGORY, rid)
                continue
            try:
                compute_client.virtual_machines.begin_start(item["vm_rg"], item["vm_name"])
                deferred.append((rid, name, item))
            except Exception as e:
                print(f"[ERROR] {name}: VM start failed: {e}")
                report.record_failed(CATEGORY, rid)
            continue

        print(f"[CHANGE] {name}: {row.get('licenseType')} -> {target}")
        if report_only:
            report.record_changed(CATEGORY, rid)
            continue
        try:
            apply(item)
            report.record_changed(CATEGORY, rid)
        except Exception as e:
            print(f"[ERROR] {name}: license update failed: {e}")
            report.record_failed(CATEGORY, rid)

    if deferred:
        print(f"[INFO] Waiting on {len(deferred)} SQL VM(s) being started")
        finish_deferred(
            deferred,
            is_ready=lambda it: power_state(it) == POWER_RUNNING,
            apply=apply,
            restore=restore,
            policy=policy,
            cancel_token=cancel_token,
            report=report,
            category=CATEGORY,
        )

    return report
