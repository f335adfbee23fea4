from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import ResourceNotFoundError

from automation_setup import (
    REQUIRED_ROLES,
    SetupContext,
    ensure_automation_account,
    ensure_resource_group,
    ensure_role_assignment,
    ensure_schedule_link,
    ensure_weekly_schedule,
    import_runbook,
    job_parameters,
    next_weekly_start,
    provision,
)

SUB = "00000000-0000-0000-0000-000000000001"
ROLE_ID = f"/subscriptions/{SUB}/providers/Microsoft.Authorization/roleDefinitions/acdd72a7"


def _ctx() -> SetupContext:
    return SetupContext(
        subscription_id=SUB,
        resource_group="rg-lic",
        location="westeurope",
        account_name="aa-lic",
        automation_client=MagicMock(),
        auth_client=MagicMock(),
        resource_client=MagicMock(),
    )


def _not_found(*args, **kwargs):
    raise ResourceNotFoundError("not found")


def test_resource_group_created_only_when_missing() -> None:
    ctx = _ctx()
    ctx.resource_client.resource_groups.check_existence.return_value = True
    ensure_resource_group(ctx)
    ctx.resource_client.resource_groups.create_or_update.assert_not_called()

    ctx.resource_client.resource_groups.check_existence.return_value = False
    ensure_resource_group(ctx)
    ctx.resource_client.resource_groups.create_or_update.assert_called_once_with("rg-lic", {"location": "westeurope"})


def test_new_account_gets_system_identity() -> None:
    ctx = _ctx()
    ctx.automation_client.automation_account.get.side_effect = _not_found
    ctx.automation_client.automation_account.create_or_update.return_value = SimpleNamespace(
        id="/aa", identity=SimpleNamespace(principal_id="p-1")
    )
    assert ensure_automation_account(ctx) == "p-1"
    body = ctx.automation_client.automation_account.create_or_update.call_args[0][2]
    assert body["identity"] == {"type": "SystemAssigned"}


def test_existing_account_without_identity_is_patched() -> None:
    ctx = _ctx()
    ctx.automation_client.automation_account.get.return_value = SimpleNamespace(id="/aa", identity=None)
    poller = ctx.resource_client.resources.begin_update_by_id.return_value
    poller.result.return_value = SimpleNamespace(identity=SimpleNamespace(principal_id="p-2"))
    assert ensure_automation_account(ctx) == "p-2"
    assert ctx.resource_client.resources.begin_update_by_id.call_args[0][0] == "/aa"


def test_identity_never_assigned_raises() -> None:
    ctx = _ctx()
    ctx.automation_client.automation_account.get.return_value = SimpleNamespace(id="/aa", identity=None)
    ctx.resource_client.resources.begin_update_by_id.return_value.result.return_value = SimpleNamespace(identity=None)
    with pytest.raises(RuntimeError):
        ensure_automation_account(ctx)


def test_role_assignment_is_idempotent() -> None:
    ctx = _ctx()
    ctx.auth_client.role_definitions.list.return_value = [SimpleNamespace(id=ROLE_ID)]
    ctx.auth_client.role_assignments.list_for_scope.return_value = [
        SimpleNamespace(principal_id="p-1", role_definition_id=ROLE_ID.upper()),
    ]
    assert ensure_role_assignment(ctx, "p-1", "Reader") is False
    ctx.auth_client.role_assignments.create.assert_not_called()

    ctx.auth_client.role_assignments.list_for_scope.return_value = []
    assert ensure_role_assignment(ctx, "p-1", "Reader") is True
    scope, _, body = ctx.auth_client.role_assignments.create.call_args[0]
    assert scope == f"/subscriptions/{SUB}"
    assert body["role_definition_id"] == ROLE_ID
    assert body["principal_type"] == "ServicePrincipal"


def test_unknown_role_raises() -> None:
    ctx = _ctx()
    ctx.auth_client.role_definitions.list.return_value = []
    with pytest.raises(RuntimeError):
        ensure_role_assignment(ctx, "p-1", "Nope")


def test_import_runbook_replaces_existing(tmp_path) -> None:
    script = tmp_path / "main.py"
    script.write_text("print('hi')\n", encoding="utf-8")
    ctx = _ctx()
    import_runbook(ctx, "rb", str(script))

    rb = ctx.automation_client.runbook
    rb.delete.assert_called_once_with("rg-lic", "aa-lic", "rb")
    assert rb.create_or_update.call_args[0][3]["runbook_type"] == "Python3"
    ctx.automation_client.runbook_draft.begin_replace_content.assert_called_once_with(
        "rg-lic", "aa-lic", "rb", "print('hi')\n"
    )
    rb.begin_publish.assert_called_once_with("rg-lic", "aa-lic", "rb")


def test_import_runbook_new(tmp_path) -> None:
    script = tmp_path / "main.py"
    script.write_text("", encoding="utf-8")
    ctx = _ctx()
    ctx.automation_client.runbook.get.side_effect = _not_found
    import_runbook(ctx, "rb", str(script), runbook_type="Python")
    ctx.automation_client.runbook.delete.assert_not_called()
    assert ctx.automation_client.runbook.create_or_update.call_args[0][3]["runbook_type"] == "Python"


def test_next_weekly_start() -> None:
    wed = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc)
    start = next_weekly_start("Sunday", "02:00", "UTC", now=wed)
    assert (start.year, start.month, start.day, start.hour, start.minute) == (2024, 1, 7, 2, 0)

    # too close to now: roll to the following week
    almost = datetime(2024, 1, 7, 1, 55, tzinfo=timezone.utc)
    assert next_weekly_start("Sunday", "02:00", "UTC", now=almost).day == 14

    with pytest.raises(ValueError):
        next_weekly_start("Caturday", "02:00", "UTC", now=wed)


def test_weekly_schedule_created_once() -> None:
    ctx = _ctx()
    ctx.automation_client.schedule.get.side_effect = _not_found
    ensure_weekly_schedule(ctx, "weekly", "Sunday", "02:00", now=datetime(2024, 1, 3, tzinfo=timezone.utc))
    body = ctx.automation_client.schedule.create_or_update.call_args[0][3]
    assert body["frequency"] == "Week"
    assert body["advanced_schedule"] == {"week_days": ["Sunday"]}
    assert body["start_time"].startswith("2024-01-07T02:00")

    ctx = _ctx()
    ensure_weekly_schedule(ctx, "weekly", "Sunday", "02:00")
    ctx.automation_client.schedule.create_or_update.assert_not_called()


def test_job_parameters_are_positional() -> None:
    assert job_parameters(["arc", "--force"]) == {"[PARAMETER 1]": "arc", "[PARAMETER 2]": "--force"}


def test_schedule_link_skipped_when_present() -> None:
    ctx = _ctx()
    ctx.automation_client.job_schedule.list_by_automation_account.return_value = [
        SimpleNamespace(schedule=SimpleNamespace(name="weekly"), runbook=SimpleNamespace(name="rb")),
    ]
    assert ensure_schedule_link(ctx, "weekly", "rb", {}) is False
    assert ensure_schedule_link(ctx, "weekly", "other-rb", {"[PARAMETER 1]": "arc"}) is True
    body = ctx.automation_client.job_schedule.create.call_args[0][3]
    assert body["runbook"] == {"name": "other-rb"}
    assert body["parameters"] == {"[PARAMETER 1]": "arc"}


def test_provision_end_to_end(tmp_path) -> None:
    script = tmp_path / "main.py"
    script.write_text("", encoding="utf-8")
    ctx = _ctx()
    ctx.automation_client.automation_account.get.return_value = SimpleNamespace(
        id="/aa", identity=SimpleNamespace(principal_id="p-1")
    )
    ctx.auth_client.role_definitions.list.return_value = [SimpleNamespace(id=ROLE_ID)]
    ctx.auth_client.role_assignments.list_for_scope.return_value = []
    ctx.automation_client.job_schedule.list_by_automation_account.return_value = []

    out = provision(
        ctx,
        target="arc",
        runbook_name="rb",
        runbook_path=str(script),
        runbook_arguments=["arc", "--license-type", "PAYG"],
        run_now=True,
    )

    assert out["principal_id"] == "p-1"
    assert out["parameters"]["[PARAMETER 3]"] == "PAYG"
    assert out["job_name"]
    assert ctx.auth_client.role_assignments.create.call_count == len(REQUIRED_ROLES["arc"])
    ctx.automation_client.job.create.assert_called_once()


def test_provision_stops_on_failed_step(tmp_path) -> None:
    ctx = _ctx()
    ctx.resource_client.resource_groups.check_existence.side_effect = RuntimeError("forbidden")
    with pytest.raises(RuntimeError):
        provision(ctx, target="arc", runbook_name="rb", runbook_path=str(tmp_path / "x.py"), runbook_arguments=[])
    ctx.automation_client.automation_account.get.assert_not_called()


def test_provision_rejects_unknown_target() -> None:
    with pytest.raises(ValueError):
        provision(_ctx(), target="nope", runbook_name="rb", runbook_path="x", runbook_arguments=[])
