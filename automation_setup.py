# automation_setup.py
"""
Provision an Azure Automation account that runs the license tools on a weekly schedule.

Every step checks for an existing object first, so the whole thing is safe to re-run:
resource group -> Automation account (system-assigned identity) -> role assignments
-> runbook (deleted and re-imported so content is always current) -> weekly schedule
-> schedule/runbook link -> optional immediate run.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.automation import AutomationClient
from azure.mgmt.resource import ResourceManagementClient

import config

TARGET_ARC = "arc"
TARGET_AZURE_SQL = "azure-sql"

REQUIRED_ROLES = {
    TARGET_ARC: [
        "Azure Connected Machine Resource Administrator",
        "Reader",
    ],
    TARGET_AZURE_SQL: [
        "SQL Server Contributor",
        "SQL Managed Instance Contributor",
        "Data Factory Contributor",
        "Virtual Machine Contributor",
        "Reader",
    ],
}

RUNBOOK_TYPES = ("Python3", "Python")
WEEK_DAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
IDENTITY_API_VERSION = "2023-11-01"
# Automation rejects schedules starting less than 5 minutes out
MIN_LEAD = timedelta(minutes=10)


@dataclass
class SetupContext:
    subscription_id: str
    resource_group: str
    location: str
    account_name: str
    automation_client: AutomationClient
    auth_client: AuthorizationManagementClient
    resource_client: ResourceManagementClient

    @property
    def subscription_scope(self) -> str:
        return f"/subscriptions/{self.subscription_id}"

    @classmethod
    def create(cls, credential, subscription_id: str, resource_group: str, location: str, account_name: str):
        return cls(
            subscription_id=subscription_id,
            resource_group=resource_group,
            location=location,
            account_name=account_name,
            automation_client=AutomationClient(credential, subscription_id),
            auth_client=AuthorizationManagementClient(credential, subscription_id),
            resource_client=ResourceManagementClient(credential, subscription_id),
        )


def run_step(step_name: str, fn, *args, **kwargs):
    print(f"==> {step_name}")
    try:
        result = fn(*args, **kwargs)
        print(f"[OK] {step_name}")
        print(20 * "-")
        return result
    except Exception as e:
        print(f"[FAIL] {step_name}: {e}")
        print(20 * "-")
        raise


def read_file_utf8(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


# -------------------------
# Account + identity
# -------------------------

def ensure_resource_group(ctx: SetupContext) -> None:
    if ctx.resource_client.resource_groups.check_existence(ctx.resource_group):
        print(f"  [FOUND] Resource group '{ctx.resource_group}'")
        return
    print(f"  [NEW] Creating resource group '{ctx.resource_group}' in {ctx.location}")
    ctx.resource_client.resource_groups.create_or_update(ctx.resource_group, {"location": ctx.location})


def ensure_automation_account(ctx: SetupContext) -> str:
    """Returns the principal ID of the account's system-assigned identity."""
    try:
        acct = ctx.automation_client.automation_account.get(ctx.resource_group, ctx.account_name)
        print(f"  [FOUND] Automation Account '{ctx.account_name}'")
    except ResourceNotFoundError:
        print(f"  [NEW] Creating Automation Account '{ctx.account_name}'")
        acct = ctx.automation_client.automation_account.create_or_update(
            ctx.resource_group,
            ctx.account_name,
            {
                "location": ctx.location,
                "sku": {"name": "Basic"},
                "identity": {"type": "SystemAssigned"},
            },
        )

    principal_id = getattr(getattr(acct, "identity", None), "principal_id", None)
    if principal_id:
        return principal_id

    print("  [?] Enabling system-assigned identity on the Automation Account")
    poller = ctx.resource_client.resources.begin_update_by_id(
        acct.id,
        IDENTITY_API_VERSION,
        {"identity": {"type": "SystemAssigned"}},
    )
    result = poller.result()
    principal_id = getattr(getattr(result, "identity", None), "principal_id", None)
    if not principal_id:
        raise RuntimeError(f"Managed identity was not assigned properly to {acct.id}.")
    return principal_id


def find_role_definition_id(ctx: SetupContext, role_name: str) -> str:
    scope = ctx.subscription_scope
    for rd in ctx.auth_client.role_definitions.list(scope, filter=f"roleName eq '{role_name}'"):
        return rd.id
    raise RuntimeError(f"Role definition '{role_name}' not found in scope {scope}")


def ensure_role_assignment(ctx: SetupContext, principal_id: str, role_name: str) -> bool:
    """True when a new assignment was created."""
    scope = ctx.subscription_scope
    role_def_id = find_role_definition_id(ctx, role_name)

    existing = [
        ra for ra in ctx.auth_client.role_assignments.list_for_scope(scope, filter=f"principalId eq '{principal_id}'")
        if ra.principal_id == principal_id and (ra.role_definition_id or "").lower() == role_def_id.lower()
    ]
    if existing:
        print(f"  [FOUND] Role '{role_name}' already assigned on {scope}")
        return False

    print(f"  [NEW] Assigning role '{role_name}' on {scope}")
    ctx.auth_client.role_assignments.create(
        scope,
        str(uuid.uuid4()),
        {
            "principal_id": principal_id,
            "role_definition_id": role_def_id,
            "principal_type": "ServicePrincipal",
        },
    )
    return True


# -------------------------
# Runbook
# -------------------------

def import_runbook(ctx: SetupContext, runbook_name: str, file_path: str, runbook_type: str = "Python3") -> None:
    content = read_file_utf8(file_path)
    rb_client = ctx.automation_client.runbook

    try:
        rb_client.get(ctx.resource_group, ctx.account_name, runbook_name)
        print(f"  [FOUND] Runbook '{runbook_name}' exists; removing it to re-import")
        rb_client.delete(ctx.resource_group, ctx.account_name, runbook_name)
    except ResourceNotFoundError:
        pass

    print(f"  [NEW] Importing runbook '{runbook_name}' from {file_path}")
    rb_client.create_or_update(
        ctx.resource_group,
        ctx.account_name,
        runbook_name,
        {
            "location": ctx.location,
            "log_verbose": False,
            "log_progress": True,
            "runbook_type": runbook_type,
            "draft": {},
        },
    )
    ctx.automation_client.runbook_draft.begin_replace_content(
        ctx.resource_group, ctx.account_name, runbook_name, content
    ).result()

    print(f"  [?] Publishing runbook '{runbook_name}'")
    rb_client.begin_publish(ctx.resource_group, ctx.account_name, runbook_name).result()


# -------------------------
# Schedule
# -------------------------

def next_weekly_start(day: str, at: str, time_zone: str, now: Optional[datetime] = None) -> datetime:
    """
    Next occurrence of `day` at `at` (HH:MM) in `time_zone`, at least MIN_LEAD from now.
    """
    if day not in WEEK_DAYS:
        raise ValueError(f"Unknown week day {day!r}")
    hour, minute = (int(x) for x in at.split(":", 1))
    tz = ZoneInfo(time_zone)

    now = (now or datetime.now(timezone.utc)).astimezone(tz)
    days_ahead = (WEEK_DAYS.index(day) - now.weekday()) % 7
    candidate = (now + timedelta(days=days_ahead)).replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate - now < MIN_LEAD:
        candidate += timedelta(days=7)
    return candidate


def ensure_weekly_schedule(
    ctx: SetupContext,
    name: str,
    day: str,
    at: str,
    time_zone: str = "UTC",
    now: Optional[datetime] = None,
):
    try:
        schedule = ctx.automation_client.schedule.get(ctx.resource_group, ctx.account_name, name)
        print(f"  [FOUND] Schedule '{name}' already exists. Skipping...")
        return schedule
    except ResourceNotFoundError:
        pass

    start = next_weekly_start(day, at, time_zone, now)
    print(f"  [NEW] Creating weekly schedule '{name}' ({day} {at} {time_zone}, first run {start.isoformat()})")
    return ctx.automation_client.schedule.create_or_update(
        ctx.resource_group,
        ctx.account_name,
        name,
        {
            "name": name,
            "description": "Weekly SQL license update",
            "start_time": start.isoformat(),
            "frequency": "Week",
            "interval": 1,
            "time_zone": time_zone,
            "advanced_schedule": {"week_days": [day]},
        },
    )


def job_parameters(arguments: List[str]) -> Dict[str, str]:
    """Python runbooks take positional arguments: [PARAMETER 1], [PARAMETER 2], ..."""
    return {f"[PARAMETER {i}]": str(a) for i, a in enumerate(arguments, start=1)}


def ensure_schedule_link(ctx: SetupContext, schedule_name: str, runbook_name: str, parameters: Dict[str, str]) -> bool:
    existing = [
        js for js in ctx.automation_client.job_schedule.list_by_automation_account(ctx.resource_group, ctx.account_name)
        if js.schedule.name == schedule_name and js.runbook.name == runbook_name
    ]
    if existing:
        print(f"  [FOUND] Schedule '{schedule_name}' already linked to runbook '{runbook_name}'. Skipping...")
        return False

    print(f"  [NEW] Linking schedule '{schedule_name}' to runbook '{runbook_name}'")
    ctx.automation_client.job_schedule.create(
        ctx.resource_group,
        ctx.account_name,
        str(uuid.uuid4()),
        {
            "schedule": {"name": schedule_name},
            "runbook": {"name": runbook_name},
            "parameters": parameters,
        },
    )
    return True


def start_runbook(ctx: SetupContext, runbook_name: str, parameters: Dict[str, str]) -> str:
    job_name = str(uuid.uuid4())
    print(f"  [NEW] Starting runbook '{runbook_name}' now (job {job_name})")
    ctx.automation_client.job.create(
        ctx.resource_group,
        ctx.account_name,
        job_name,
        {
            "runbook": {"name": runbook_name},
            "parameters": parameters,
        },
    )
    return job_name


# -------------------------
# Entry point
# -------------------------

def provision(
    ctx: SetupContext,
    *,
    target: str,
    runbook_name: str,
    runbook_path: str,
    runbook_arguments: List[str],
    runbook_type: str = "Python3",
    schedule_name: str = "weekly-sql-license",
    schedule_day: str = "Sunday",
    schedule_time: str = "02:00",
    time_zone: str = "UTC",
    run_now: bool = False,
) -> Dict[str, Any]:
    if target not in REQUIRED_ROLES:
        raise ValueError(f"Unknown target {target!r}")
    params = job_parameters(runbook_arguments)
    config.debug(f"Runbook parameters: {params}")

    run_step("Ensure Resource Group", ensure_resource_group, ctx)
    principal_id = run_step("Ensure Automation Account", ensure_automation_account, ctx)
    for role in REQUIRED_ROLES[target]:
        run_step(f"Ensure Role '{role}'", ensure_role_assignment, ctx, principal_id, role)
    run_step(f"Import & Publish Runbook {runbook_name}", import_runbook, ctx, runbook_name, runbook_path, runbook_type)
    run_step(f"Ensure Schedule {schedule_name}", ensure_weekly_schedule, ctx, schedule_name, schedule_day, schedule_time, time_zone)
    run_step(f"Ensure Schedule Link for {schedule_name}", ensure_schedule_link, ctx, schedule_name, runbook_name, params)

    job_name = None
    if run_now:
        job_name = run_step(f"Start Runbook {runbook_name}", start_runbook, ctx, runbook_name, params)

    print("Done.")
    return {"principal_id": principal_id, "parameters": params, "job_name": job_name}
