from typing import List
from unittest.mock import MagicMock

import pytest

import main
from polling import CancellationToken
from report import LicenseReport

SUB_A = "00000000-0000-0000-0000-00000000000a"
SUB_B = "00000000-0000-0000-0000-00000000000b"


def _report(category: str, rid: str) -> LicenseReport:
    r = LicenseReport()
    r.record_changed(category, rid)
    return r


@pytest.fixture
def scope(monkeypatch):
    monkeypatch.setattr(main, "resolve_subscriptions", lambda scope, credential: [SUB_A, SUB_B])
    monkeypatch.setattr(main, "validate_subscription", lambda sub, credential: sub != SUB_B)
    monkeypatch.setattr(main.config, "OUTPUT_DIR", None)


def test_parser_rejects_bad_values() -> None:
    parser = main.build_parser()
    with pytest.raises(SystemExit):
        parser.parse_args(["arc", "--license-type", "Free"])
    with pytest.raises(SystemExit):
        parser.parse_args(["azure-sql"])
    with pytest.raises(SystemExit):
        parser.parse_args(["setup-automation", "--subscription-id", SUB_A, "--resource-group", "rg",
                           "--location", "westeurope", "--automation-account", "aa", "--target", "arc",
                           "--schedule-time", "25:00"])


def test_bad_exclusion_tags_exit_before_work(monkeypatch) -> None:
    called: List[str] = []
    monkeypatch.setattr(main, "run_arc", lambda args: called.append("run"))
    with pytest.raises(SystemExit) as exc:
        main.main(["arc", "--license-type", "PAYG", "--exclusion-tags", "env"])
    assert exc.value.code == 2
    assert called == []


def test_runbook_arguments_arc() -> None:
    args = main.build_parser().parse_args([
        "setup-automation", "--subscription-id", SUB_A, "--resource-group", "rg", "--location", "westeurope",
        "--automation-account", "aa", "--target", "arc", "--license-type", "PAYG", "--enable-esu", "Yes",
        "--force", "--target-subscription", SUB_B,
    ])
    assert main.runbook_arguments(args) == [
        "arc", "--use-managed-identity", "--subscription", SUB_B,
        "--license-type", "PAYG", "--enable-esu", "Yes", "--force",
    ]


def test_runbook_arguments_azure_sql() -> None:
    base = ["setup-automation", "--subscription-id", SUB_A, "--resource-group", "rg", "--location", "westeurope",
            "--automation-account", "aa", "--target", "azure-sql"]
    args = main.build_parser().parse_args(base + ["--license-type", "BasePrice", "--force-start-on-resources"])
    assert main.runbook_arguments(args) == [
        "azure-sql", "--use-managed-identity", "--license-type", "BasePrice", "--force-start-on-resources",
    ]

    args = main.build_parser().parse_args(base + ["--license-type", "PAYG"])
    with pytest.raises(ValueError):
        main.runbook_arguments(args)


def test_run_setup_exit_codes(monkeypatch) -> None:
    base = ["setup-automation", "--subscription-id", SUB_A, "--resource-group", "rg", "--location", "westeurope",
            "--automation-account", "aa", "--target", "azure-sql"]
    parser = main.build_parser()

    assert main.run_setup(parser.parse_args(base + ["--license-type", "Paid"]), ctx=MagicMock()) == 2

    def boom(ctx, **kwargs):
        raise RuntimeError("role assignment failed")

    monkeypatch.setattr(main, "provision", boom)
    assert main.run_setup(parser.parse_args(base + ["--license-type", "BasePrice"]), ctx=MagicMock()) == 1

    seen = {}
    monkeypatch.setattr(main, "provision", lambda ctx, **kwargs: seen.update(kwargs))
    assert main.run_setup(parser.parse_args(base + ["--license-type", "BasePrice"]), ctx=MagicMock()) == 0
    assert seen["runbook_name"] == "update-azure-sql-sql-license"
    assert seen["schedule_name"] == "weekly-azure-sql-sql-license"
    assert seen["runbook_arguments"][:2] == ["azure-sql", "--use-managed-identity"]


def test_run_arc_merges_valid_subscriptions(monkeypatch, scope, capsys) -> None:
    seen = []

    def fake(subscription_id, credential, request, **kwargs):
        seen.append((subscription_id, request))
        return _report("arc-sql-server", f"/{subscription_id}/ext")

    monkeypatch.setattr(main, "process_arc_sql", fake)
    args = main.build_parser().parse_args(["arc", "--enable-esu", "Yes", "--report-only"])
    report = main.run_arc(args, credential=object())

    assert [s for s, _ in seen] == [SUB_A]
    assert seen[0][1].enable_esu is True
    assert report.changed == {"arc-sql-server": [f"/{SUB_A}/ext"]}
    assert "would change=1" in capsys.readouterr().out


def test_run_azure_sql_stage_failure_does_not_stop_others(monkeypatch, scope) -> None:
    monkeypatch.setattr(main, "process_sql_vms", lambda sub, cred, target, **kw: _report("sql-vm", "/vm"))

    def broken(sub, cred, target, **kw):
        raise RuntimeError("throttled")

    monkeypatch.setattr(main, "process_managed_instances", broken)
    monkeypatch.setattr(main, "process_databases", lambda sub, cred, target, **kw: _report("sql-database", "/db"))
    monkeypatch.setattr(main, "process_elastic_pools", lambda sub, cred, target, **kw: LicenseReport())
    monkeypatch.setattr(main, "process_instance_pools", lambda sub, cred, target, **kw: LicenseReport())
    monkeypatch.setattr(main, "process_ssis_runtimes", lambda sub, cred, target, **kw: LicenseReport())

    args = main.build_parser().parse_args(["azure-sql", "--license-type", "BasePrice"])
    report = main.run_azure_sql(args, credential=object())
    assert report.changed == {"sql-vm": ["/vm"], "sql-database": ["/db"]}


def test_run_azure_sql_stops_when_cancelled(monkeypatch, scope) -> None:
    calls: List[str] = []
    for name in ("process_sql_vms", "process_managed_instances", "process_databases",
                 "process_elastic_pools", "process_instance_pools", "process_ssis_runtimes"):
        monkeypatch.setattr(main, name, lambda sub, cred, target, **kw: calls.append(sub) or LicenseReport())

    token = CancellationToken()
    token.cancel()
    args = main.build_parser().parse_args(["azure-sql", "--license-type", "LicenseIncluded"])
    main.run_azure_sql(args, credential=object(), cancel_token=token)
    assert calls == []
