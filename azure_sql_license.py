# azure_sql_license.py
"""
License type for Azure SQL PaaS resources: Managed Instances, Databases,
Elastic Pools and Instance Pools.

Candidates are found with Resource Graph (only rows whose licenseType differs
from the target come back) and updated through SqlManagementClient.

Managed Instances must be running to accept the change. A stopped instance is
skipped unless force_start is set, in which case it is started without waiting,
updated once Ready, and stopped again.
"""

from typing import Any, Dict, List, Optional

from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.sql.models import DatabaseUpdate, ElasticPoolUpdate, ManagedInstanceUpdate

import config
from license_rules import decide_license_type
from polling import CancellationToken, RetryPolicy, finish_deferred
from report import LicenseReport
from resource_graph import kql_quote, query_resources, scope_filters

CATEGORY_MI = "sql-managed-instance"
CATEGORY_DB = "sql-database"
CATEGORY_POOL = "elastic-pool"
CATEGORY_INSTANCE_POOL = "instance-pool"

MI_READY = "ready"
MI_STOPPED = "stopped"


def _enum_str(x) -> str:
    x = getattr(x, "value", x)
    return "" if x is None else str(x)


def _base_query(resource_type: str, subscription_id: str, target: str, resource_group: Optional[str]) -> str:
    query = f"""
resources
| where type =~ {kql_quote(resource_type)}
| where subscriptionId =~ {kql_quote(subscription_id)}"""
    query += scope_filters(resource_group)
    query += f"""
| extend licenseType = tostring(properties.licenseType)
| where isnotempty(licenseType) and licenseType != {kql_quote(target)}"""
    return query


def build_mi_query(subscription_id: str, target: str, resource_group: Optional[str] = None) -> str:
    # instance pool members take their license type from the pool
    return _base_query("microsoft.sql/managedinstances", subscription_id, target, resource_group) + """
| where isempty(properties.instancePoolId)
| project id, name, resourceGroup, licenseType, state = tostring(properties.state)
"""


def build_db_query(subscription_id: str, target: str, resource_group: Optional[str] = None) -> str:
    # pooled databases take their license type from the elastic pool
    return _base_query("microsoft.sql/servers/databases", subscription_id, target, resource_group) + """
| where isempty(properties.elasticPoolId)
| extend serverName = tostring(split(id, '/')[8])
| project id, name, resourceGroup, serverName, licenseType
"""


def build_pool_query(subscription_id: str, target: str, resource_group: Optional[str] = None) -> str:
    return _base_query("microsoft.sql/servers/elasticpools", subscription_id, target, resource_group) + """
| extend serverName = tostring(split(id, '/')[8])
| project id, name, resourceGroup, serverName, licenseType
"""


def build_instance_pool_query(subscription_id: str, target: str, resource_group: Optional[str] = None) -> str:
    return _base_query("microsoft.sql/instancepools", subscription_id, target, resource_group) + """
| project id, name, resourceGroup, licenseType
"""


def _candidates(credential, subscription_id: str, query: str, graph_client) -> List[Dict[str, Any]]:
    config.debug(query)
    return query_resources(credential, [subscription_id], query, client=graph_client)


# -------------------------
# Managed Instances
# -------------------------

def _mi_state(sql_client: SqlManagementClient, row: Dict[str, Any]) -> str:
    mi = sql_client.managed_instances.get(row["resourceGroup"], row["name"])
    return _enum_str(getattr(mi, "state", "")).lower()


def _update_mi(sql_client: SqlManagementClient, row: Dict[str, Any], target: str) -> None:
    sql_client.managed_instances.begin_update(
        row["resourceGroup"], row["name"], ManagedInstanceUpdate(license_type=target)
    ).result()


def process_managed_instances(
    subscription_id: str,
    credential,
    target: str,
    *,
    resource_group: Optional[str] = None,
    force_start: bool = False,
    report_only: bool = False,
    policy: Optional[RetryPolicy] = None,
    cancel_token: Optional[CancellationToken] = None,
    graph_client=None,
    sql_client: Optional[SqlManagementClient] = None,
) -> LicenseReport:
    report = LicenseReport()
    policy = policy or RetryPolicy.from_config()
    rows = _candidates(credential, subscription_id, build_mi_query(subscription_id, target, resource_group), graph_client)
    print(f"[INFO] SQL Managed Instances to review: {len(rows)}")
    sql_client = sql_client or SqlManagementClient(credential, subscription_id)

    deferred = []
    for row in rows:
        rid, name = row.get("id", ""), row.get("name", "")
        decision = decide_license_type(row.get("licenseType") or None, target)
        if not decision.changed:
            continue

        state = (row.get("state") or "").lower()
        if state and state != MI_READY:
            if state != MI_STOPPED:
                print(f"[SKIP] {name}: instance is {row.get('state')}, try again later")
                report.record_skipped(CATEGORY_MI, rid)
                continue
            if not force_start:
                print(f"[SKIP] {name}: instance is stopped (use --force-start-on-resources to start it)")
                report.record_skipped(CATEGORY_MI, rid)
                continue
            print(f"[CHANGE] {name}: {row.get('licenseType')} -> {target} (start, update, stop)")
            if report_only:
                report.record_changed(CATEGORY_MI, rid)
                continue
            try:
                sql_client.managed_instances.begin_start(row["resourceGroup"], name)
                deferred.append((rid, name, row))
            except Exception as e:
                print(f"[ERROR] {name}: start failed: {e}")
                report.record_failed(CATEGORY_MI, rid)
            continue

        print(f"[CHANGE] {name}: {row.get('licenseType')} -> {target}")
        if report_only:
            report.record_changed(CATEGORY_MI, rid)
            continue
        try:
            _update_mi(sql_client, row, target)
            report.record_changed(CATEGORY_MI, rid)
        except Exception as e:
            print(f"[ERROR] {name}: license update failed: {e}")
            report.record_failed(CATEGORY_MI, rid)

    if deferred:
        print(f"[INFO] Waiting on {len(deferred)} Managed Instance(s) being started")
        finish_deferred(
            deferred,
            is_ready=lambda r: _mi_state(sql_client, r) == MI_READY,
            apply=lambda r: _update_mi(sql_client, r, target),
            restore=lambda r: sql_client.managed_instances.begin_stop(r["resourceGroup"], r["name"]),
            policy=policy,
            cancel_token=cancel_token,
            report=report,
            category=CATEGORY_MI,
        )

    return report


# -------------------------
# Databases / Elastic Pools / Instance Pools
# -------------------------

def process_databases(
    subscription_id: str,
    credential,
    target: str,
    *,
    resource_group: Optional[str] = None,
    report_only: bool = False,
    graph_client=None,
    sql_client: Optional[SqlManagementClient] = None,
) -> LicenseReport:
    report = LicenseReport()
    rows = _candidates(credential, subscription_id, build_db_query(subscription_id, target, resource_group), graph_client)
    print(f"[INFO] SQL Databases to review: {len(rows)}")
    sql_client = sql_client or SqlManagementClient(credential, subscription_id)

    for row in rows:
        rid, name, server = row.get("id", ""), row.get("name", ""), row.get("serverName", "")
        if not decide_license_type(row.get("licenseType") or None, target).changed:
            continue
        print(f"[CHANGE] {server}/{name}: {row.get('licenseType')} -> {target}")
        if report_only:
            report.record_changed(CATEGORY_DB, rid)
            continue
        try:
            sql_client.databases.begin_update(
                row["resourceGroup"], server, name, DatabaseUpdate(license_type=target)
            ).result()
            report.record_changed(CATEGORY_DB, rid)
        except Exception as e:
            print(f"[ERROR] {server}/{name}: license update failed: {e}")
            report.record_failed(CATEGORY_DB, rid)

    return report


def process_elastic_pools(
    subscription_id: str,
    credential,
    target: str,
    *,
    resource_group: Optional[str] = None,
    report_only: bool = False,
    graph_client=None,
    sql_client: Optional[SqlManagementClient] = None,
) -> LicenseReport:
    report = LicenseReport()
    rows = _candidates(credential, subscription_id, build_pool_query(subscription_id, target, resource_group), graph_client)
    print(f"[INFO] Elastic Pools to review: {len(rows)}")
    sql_client = sql_client or SqlManagementClient(credential, subscription_id)

    for row in rows:
        rid, name, server = row.get("id", ""), row.get("name", ""), row.get("serverName", "")
        if not decide_license_type(row.get("licenseType") or None, target).changed:
            continue
        print(f"[CHANGE] {server}/{name}: {row.get('licenseType')} -> {target}")
        if report_only:
            report.record_changed(CATEGORY_POOL, rid)
            continue
        try:
            sql_client.elastic_pools.begin_update(
                row["resourceGroup"], server, name, ElasticPoolUpdate(license_type=target)
            ).result()
            report.record_changed(CATEGORY_POOL, rid)
        except Exception as e:
            print(f"[ERROR] {server}/{name}: license update failed: {e}")
            report.record_failed(CATEGORY_POOL, rid)

    return report


def process_instance_pools(
    subscription_id: str,
    credential,
    target: str,
    *,
    resource_group: Optional[str] = None,
    report_only: bool = False,
    graph_client=None,
    sql_client: Optional[SqlManagementClient] = None,
) -> LicenseReport:
    report = LicenseReport()
    rows = _candidates(
        credential, subscription_id, build_instance_pool_query(subscription_id, target, resource_group), graph_client
    )
    print(f"[INFO] Instance Pools to review: {len(rows)}")
    sql_client = sql_client or SqlManagementClient(credential, subscription_id)

    for row in rows:
        rid, name = row.get("id", ""), row.get("name", "")
        if not decide_license_type(row.get("licenseType") or None, target).changed:
            continue
        print(f"[CHANGE] {name}: {row.get('licenseType')} -> {target}")
        if report_only:
            report.record_changed(CATEGORY_INSTANCE_POOL, rid)
            continue
        try:
            # InstancePoolUpdate only carries tags; license type goes through a full PUT
            pool = sql_client.instance_pools.get(row["resourceGroup"], name)
            pool.license_type = target
            sql_client.instance_pools.begin_create_or_update(row["resourceGroup"], name, pool).result()
            report.record_changed(CATEGORY_INSTANCE_POOL, rid)
        except Exception as e:
            print(f"[ERROR] {name}: license update failed: {e}")
            report.record_failed(CATEGORY_INSTANCE_POOL, rid)

    return report
