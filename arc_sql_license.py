# arc_sql_license.py
"""
License type / ESU / physical-core settings for Arc-enabled SQL Server.

The settings live on the SQL Server extension of each Arc machine
(WindowsAgent.SqlServer / LinuxAgent.SqlServer). Discovery uses Resource Graph;
updates go through the Hybrid Compute extension API with the full settings document.
"""

import json
from typing import Any, Dict, List, Optional

from azure.mgmt.hybridcompute import HybridComputeManagementClient
from azure.mgmt.hybridcompute.models import MachineExtensionUpdate

import config
from license_rules import ArcExtensionSettings, LicenseRequest, decide_license_change
from report import LicenseReport
from resource_graph import kql_quote, query_resources, scope_filters

CATEGORY = "arc-sql-server"
SQL_EXTENSION_TYPES = ("WindowsAgent.SqlServer", "LinuxAgent.SqlServer")


def parse_exclusion_tags(text: Optional[str]) -> Dict[str, str]:
    """
    '{"env": "prod"}' or 'env=prod,owner=dba' -> {"env": "prod", "owner": "dba"}
    """
    text = (text or "").strip()
    if not text:
        return {}
    if text.startswith("{"):
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("Exclusion tags must be a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    tags = {}
    for part in text.split(","):
        if not part.strip():
            continue
        if "=" not in part:
            raise ValueError(f"Bad exclusion tag {part!r}, expected name=value")
        k, v = part.split("=", 1)
        tags[k.strip()] = v.strip()
    return tags


def is_excluded(machine_tags: Optional[Dict[str, Any]], exclusion_tags: Dict[str, str]) -> bool:
    if not exclusion_tags or not machine_tags:
        return False
    lowered = {str(k).lower(): str(v) for k, v in machine_tags.items()}
    for name, value in exclusion_tags.items():
        if lowered.get(name.lower()) == value:
            return True
    return False


def build_query(subscription_id: str, resource_group: Optional[str] = None, machine_name: Optional[str] = None) -> str:
    types = ", ".join(kql_quote(t) for t in SQL_EXTENSION_TYPES)
    query = f"""
resources
| where type =~ 'microsoft.hybridcompute/machines/extensions'
| where properties.type in~ ({types})
| where subscriptionId =~ {kql_quote(subscription_id)}"""
    query += scope_filters(resource_group)
    query += """
| extend machineName = tostring(split(id, '/')[8])
| extend machineId = tolower(tostring(split(id, '/extensions/')[0]))"""
    if machine_name:
        query += f"\n| where machineName =~ {kql_quote(machine_name)}"
    query += """
| join kind=leftouter (
    resources
    | where type =~ 'microsoft.hybridcompute/machines'
    | project machineId = tolower(id), machineTags = tags
  ) on machineId
| project id, name, location, resourceGroup, subscriptionId, machineName, machineTags,
          settings = properties.settings, provisioningState = tostring(properties.provisioningState)
"""
    return query


def _row_settings(row: Dict[str, Any]) -> Dict[str, Any]:
    settings = row.get("settings") or {}
    if isinstance(settings, str):
        settings = json.loads(settings) if settings.strip() else {}
    return settings


def process_arc_sql(
    subscription_id: str,
    credential,
    request: LicenseRequest,
    *,
    resource_group: Optional[str] = None,
    machine_name: Optional[str] = None,
    exclusion_tags: Optional[Dict[str, str]] = None,
    report_only: bool = False,
    no_wait: bool = False,
    graph_client=None,
    hybrid_client: Optional[HybridComputeManagementClient] = None,
) -> LicenseReport:
    report = LicenseReport()
    exclusion_tags = exclusion_tags or {}

    if request.is_empty():
        print("[INFO] No license type, ESU or physical core change requested. Nothing to do.")
        return report

    query = build_query(subscription_id, resource_group, machine_name)
    config.debug(query)
    rows: List[Dict[str, Any]] = query_resources(credential, [subscription_id], query, client=graph_client)
    print(f"[INFO] Arc SQL Server extensions found: {len(rows)}")

    hybrid_client = hybrid_client or HybridComputeManagementClient(credential, subscription_id)

    for row in rows:
        rid = row.get("id", "")
        machine = row.get("machineName", "")
        if is_excluded(row.get("machineTags"), exclusion_tags):
            print(f"[SKIP] {machine}: excluded by tag")
            report.record_skipped(CATEGORY, rid)
            continue

        try:
            current = ArcExtensionSettings.from_settings(_row_settings(row))
        except Exception as e:
            print(f"[WARN] {machine}: unreadable extension settings ({e}); skipping")
            report.record_failed(CATEGORY, rid)
            continue

        decision = decide_license_change(current.license, request)
        for msg in decision.rejections:
            print(f"[SKIP] {machine}: {msg}")

        if not decision.changed:
            if decision.rejections:
                report.record_skipped(CATEGORY, rid)
            continue

        new_settings = current.with_license(decision.settings).to_settings()
        lic = decision.settings
        print(
            f"[CHANGE] {machine} ({row.get('resourceGroup', '')}): LicenseType={lic.license_type} "
            f"ESU={lic.esu_enabled} PCore={lic.pcore_enabled}"
        )

        if report_only:
            report.record_changed(CATEGORY, rid)
            continue

        try:
            poller = hybrid_client.machine_extensions.begin_update(
                row.get("resourceGroup", ""),
                machine,
                row.get("name", ""),
                MachineExtensionUpdate(settings=new_settings),
            )
            if not no_wait:
                poller.result()
            report.record_changed(CATEGORY, rid)
        except Exception as e:
            print(f"[ERROR] {machine}: extension update failed: {e}")
            report.record_failed(CATEGORY, rid)

    return report
