import json

from click.testing import CliRunner

from cli import main
from config import RemnantConfig
from registry import Hive, MemoryRegistryStore
from residual_scanner import RUN_PATH
from scanner import UNINSTALL_PATH


def _obj(tmp_path):
    store = MemoryRegistryStore()
    store.add_key(
        Hive.HKLM,
        UNINSTALL_PATH + "\\Example",
        {
            "DisplayName": "Example App",
            "DisplayVersion": "2.0",
            "Publisher": "Example Co",
            "UninstallString": "C:\\Apps\\Example\\unins000.exe",
            "EstimatedSize": 100,
        },
    )
    store.add_key(Hive.HKCU, "Software\\ExampleApp", {"Theme": "dark"})
    data = tmp_path / "data"
    (data / "ExampleApp").mkdir(parents=True)
    (data / "ExampleApp" / "state.db").write_bytes(b"x" * 4)
    return {
        "store": store,
        "config": RemnantConfig(residual_roots={"app_data": str(data)}),
    }


def test_list_json(tmp_path) -> None:
    result = CliRunner().invoke(main, ["list", "--json"], obj=_obj(tmp_path))
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert [item["name"] for item in payload] == ["Example App"]
    assert payload[0]["estimated_size"] == 100 * 1024


def test_list_export(tmp_path) -> None:
    target = tmp_path / "inventory.csv"
    result = CliRunner().invoke(main, ["list", "--export", str(target)], obj=_obj(tmp_path))
    assert result.exit_code == 0, result.output
    assert "Exported 1 programs" in result.output
    assert target.read_text(encoding="utf-8").startswith("Name,")


def test_residuals_report(tmp_path) -> None:
    result = CliRunner().invoke(main, ["residuals", "Example App", "--json"], obj=_obj(tmp_path))
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["program"] == "Example App"
    assert [group["name"] for group in payload["groups"]] == ["Files and folders", "Registry keys"]


def test_residuals_delete(tmp_path) -> None:
    obj = _obj(tmp_path)
    result = CliRunner().invoke(main, ["residuals", "Example App", "--delete", "--yes", "--json"], obj=obj)
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "done"
    assert payload["freed_bytes"] == 4
    assert not (tmp_path / "data" / "ExampleApp").exists()
    assert not obj["store"].key_exists(Hive.HKCU, "Software\\ExampleApp")


def test_residuals_delete_aborts_without_confirmation(tmp_path) -> None:
    result = CliRunner().invoke(main, ["residuals", "Example App", "--delete"], obj=_obj(tmp_path), input="n\n")
    assert result.exit_code == 0, result.output
    assert "Aborted." in result.output
    assert (tmp_path / "data" / "ExampleApp").exists()


def test_residuals_for_unknown_program(tmp_path) -> None:
    result = CliRunner().invoke(main, ["residuals", "Nothing Here"], obj=_obj(tmp_path))
    assert result.exit_code == 0, result.output
    assert "No leftovers found for Nothing Here." in result.output


def test_cache_stats(tmp_path) -> None:
    result = CliRunner().invoke(main, ["cache-stats"], obj=_obj(tmp_path))
    assert result.exit_code == 0, result.output
    assert "Hits:      1" in result.output
    assert "Misses:    1" in result.output
    assert "1 programs" in result.output


def test_residuals_export(tmp_path) -> None:
    target = tmp_path / "report.csv"
    result = CliRunner().invoke(main, ["residuals", "Example App", "--export", str(target)], obj=_obj(tmp_path))
    assert result.exit_code == 0, result.output
    assert "Exported 2 items" in result.output
    lines = target.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("Group,Name,Path")
    assert len(lines) == 3


def test_residuals_delete_skips_high_risk_items(tmp_path) -> None:
    obj = _obj(tmp_path)
    obj["store"].add_key(Hive.HKCU, RUN_PATH, {"ExampleAppLauncher": "C:\\Apps\\Example\\launch.exe"})
    result = CliRunner().invoke(main, ["residuals", "Example App", "--delete", "--yes", "--json"], obj=obj)
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "done"
    assert payload["skipped"] == 1
    assert payload["failed"] == []
    with obj["store"].open_key(Hive.HKCU, RUN_PATH) as key:
        assert key.value_names() == ["ExampleAppLauncher"]


def test_residuals_delete_asks_before_high_risk_items(tmp_path) -> None:
    obj = _obj(tmp_path)
    obj["store"].add_key(Hive.HKCU, RUN_PATH, {"ExampleAppLauncher": "C:\\Apps\\Example\\launch.exe"})
    result = CliRunner().invoke(main, ["residuals", "Example App", "--delete"], obj=obj, input="y\ny\n")
    assert result.exit_code == 0, result.output
    assert "1 of them are high risk" in result.output
    with obj["store"].open_key(Hive.HKCU, RUN_PATH) as key:
        assert key.value_names() == []
