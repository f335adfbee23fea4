from types import SimpleNamespace
from unittest.mock import MagicMock

from polling import RetryPolicy
from ssis_license import CATEGORY, list_ssis_runtimes, process_ssis_runtimes

SUB = "00000000-0000-0000-0000-000000000001"
FAST = RetryPolicy(interval=0, backoff=1, max_interval=0, max_attempts=3, timeout=60)


def _factory(name: str, rg: str = "rg-adf") -> SimpleNamespace:
    return SimpleNamespace(
        id=f"/subscriptions/{SUB}/resourceGroups/{rg}/providers/Microsoft.DataFactory/factories/{name}",
        name=name,
    )


def _ir(name: str, state: str, kind: str = "Managed", license_type: str = "LicenseIncluded") -> SimpleNamespace:
    return SimpleNamespace(
        id=f"/ir/{name}",
        name=name,
        properties=SimpleNamespace(
            type=kind,
            state=state,
            ssis_properties=SimpleNamespace(license_type=license_type),
        ),
    )


def _client(*runtimes: SimpleNamespace) -> MagicMock:
    df = MagicMock()
    df.factories.list.return_value = [_factory("adf1")]
    df.integration_runtimes.list_by_factory.return_value = list(runtimes)
    return df


def test_list_keeps_managed_runtimes_only() -> None:
    df = _client(_ir("ssis1", "Stopped"), _ir("shir", "Online", kind="SelfHosted"))
    found = list_ssis_runtimes(df)
    df.integration_runtimes.list_by_factory.assert_called_once_with("rg-adf", "adf1")
    assert found == [{
        "id": "/ir/ssis1",
        "name": "ssis1",
        "rg": "rg-adf",
        "factory": "adf1",
        "license_type": "LicenseIncluded",
        "state": "stopped",
    }]


def test_list_scoped_to_resource_group() -> None:
    df = _client()
    df.factories.list_by_resource_group.return_value = []
    assert list_ssis_runtimes(df, "rg-adf") == []
    df.factories.list_by_resource_group.assert_called_once_with("rg-adf")
    df.factories.list.assert_not_called()


def test_stopped_runtime_updated_in_place() -> None:
    ir = _ir("ssis1", "Stopped")
    df = _client(ir)
    df.integration_runtimes.get.return_value = ir
    report = process_ssis_runtimes(SUB, None, "BasePrice", df_client=df, policy=FAST)

    df.integration_runtimes.create_or_update.assert_called_once_with("rg-adf", "adf1", "ssis1", ir)
    assert ir.properties.ssis_properties.license_type == "BasePrice"
    df.integration_runtimes.begin_stop.assert_not_called()
    assert report.changed == {CATEGORY: ["/ir/ssis1"]}


def test_started_runtime_skipped_without_force() -> None:
    df = _client(_ir("ssis1", "Started"))
    report = process_ssis_runtimes(SUB, None, "BasePrice", df_client=df, policy=FAST)
    df.integration_runtimes.begin_stop.assert_not_called()
    df.integration_runtimes.create_or_update.assert_not_called()
    assert report.skipped == {CATEGORY: ["/ir/ssis1"]}


def test_started_runtime_stopped_updated_and_restarted() -> None:
    listed = _ir("ssis1", "Started")
    df = _client(listed)
    stopped = _ir("ssis1", "Stopped")
    # readiness check, then the read inside the update
    df.integration_runtimes.get.side_effect = [_ir("ssis1", "Stopping"), stopped, stopped]
    report = process_ssis_runtimes(SUB, None, "BasePrice", force_start=True, df_client=df, policy=FAST)

    df.integration_runtimes.begin_stop.assert_called_once_with("rg-adf", "adf1", "ssis1")
    df.integration_runtimes.create_or_update.assert_called_once_with("rg-adf", "adf1", "ssis1", stopped)
    df.integration_runtimes.begin_start.assert_called_once_with("rg-adf", "adf1", "ssis1")
    assert report.changed == {CATEGORY: ["/ir/ssis1"]}


def test_runtime_already_on_target_untouched() -> None:
    df = _client(_ir("ssis1", "Stopped", license_type="BasePrice"))
    report = process_ssis_runtimes(SUB, None, "BasePrice", df_client=df, policy=FAST)
    df.integration_runtimes.create_or_update.assert_not_called()
    assert report.counts() == {}


def test_unexpected_error_does_not_stop_other_runtimes() -> None:
    broken = SimpleNamespace(id="/ir/broken", name="broken", properties=None)
    good = _ir("ssis2", "Stopped")
    df = _client(_ir("broken", "Stopped"), good)
    df.integration_runtimes.get.side_effect = lambda rg, factory, name: broken if name == "broken" else good
    report = process_ssis_runtimes(SUB, None, "BasePrice", df_client=df, policy=FAST)

    df.integration_runtimes.create_or_update.assert_called_once_with("rg-adf", "adf1", "ssis2", good)
    assert report.failed == {CATEGORY: ["/ir/broken"]}
    assert report.changed == {CATEGORY: ["/ir/ssis2"]}
