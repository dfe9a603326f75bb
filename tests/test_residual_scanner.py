import os
import threading
import time

import pytest

from errors import InvalidState, OperationInProgress
from models import ProgramRecord, ResidualItem, ResidualKind, RiskTier, ScanState
from registry import Hive, MemoryRegistryStore
from residual_scanner import (
    DEFAULT_REGISTRY_ROOTS,
    RUN_PATH,
    SERVICES_PATH,
    FileRoot,
    ResidualScanner,
    ResidualScanOptions,
    classify_risk,
    default_file_roots,
    group_items,
    match_terms,
)

PROGRAM = ProgramRecord(name="Example App", uninstall_command="u.exe")


def _store() -> MemoryRegistryStore:
    store = MemoryRegistryStore()
    store.add_key(Hive.HKCU, "Software\\ExampleApp\\Settings", {"Theme": "dark"})
    store.add_key(Hive.HKCU, "Software\\Unrelated")
    store.add_key(Hive.HKCU, RUN_PATH, {"ExampleAppLauncher": "C:\\x\\launch.exe", "Other": "other.exe"})
    store.add_key(Hive.HKLM, SERVICES_PATH + "\\ExampleSvc", {"DisplayName": "Example App Service"})
    store.add_key(Hive.HKLM, SERVICES_PATH + "\\Spooler", {"DisplayName": "Print Spooler"})
    return store


def _layout(tmp_path):
    roaming = tmp_path / "roaming"
    local = tmp_path / "local"
    desktop = tmp_path / "desktop"
    for folder in (roaming, local, desktop):
        folder.mkdir()
    (roaming / "ExampleApp").mkdir()
    (roaming / "ExampleApp" / "settings.json").write_bytes(b"x" * 10)
    (roaming / "ExampleApp" / "ExampleApp-data").mkdir()
    (roaming / "ExampleApp" / "ExampleApp-data" / "blob.bin").write_bytes(b"y" * 5)
    (roaming / "exampleapp.log").write_bytes(b"z" * 3)
    (roaming / "Other").mkdir()
    (local / "Example App").mkdir()
    (desktop / "Example App.lnk").write_bytes(b"l")
    (desktop / "Example App notes.txt").write_bytes(b"n")
    return [
        FileRoot("app_data", str(roaming), ResidualKind.FILE),
        FileRoot("local_app_data", str(local), ResidualKind.CACHE),
        FileRoot("desktop", str(desktop), ResidualKind.SHORTCUT, True),
    ]


def _scanner(tmp_path, **options) -> ResidualScanner:
    return ResidualScanner(
        store=_store(),
        options=ResidualScanOptions(scan_services=True, **options),
        file_roots=_layout(tmp_path),
        windows_dir="",
    )


def _names(groups):
    return {group.name: sorted(item.name for item in group.items) for group in groups}


def test_match_terms() -> None:
    assert match_terms(PROGRAM) == ["example app", "exampleapp"]
    assert match_terms(ProgramRecord(name="Zip")) == ["zip"]
    assert match_terms(ProgramRecord(name="Go")) == []


def test_classify_risk() -> None:
    assert classify_risk("C:\\Program Files\\Foo", ResidualKind.DIRECTORY) == RiskTier.HIGH
    assert classify_risk("C:\\Windows\\System32\\foo.dll", ResidualKind.FILE) == RiskTier.HIGH
    assert classify_risk("C:\\Program Files\\Foo\\cache", ResidualKind.CACHE) == RiskTier.HIGH
    assert classify_risk("D:\\Data\\anything", ResidualKind.SERVICE) == RiskTier.HIGH
    assert classify_risk("C:\\ProgramData\\Foo", ResidualKind.CONFIG) == RiskTier.MEDIUM
    assert classify_risk("HKEY_CURRENT_USER\\Software\\Foo", ResidualKind.REGISTRY_KEY) == RiskTier.MEDIUM
    assert classify_risk("C:\\Users\\me\\AppData\\Local\\Foo\\cache", ResidualKind.CACHE) == RiskTier.LOW
    assert classify_risk("D:\\Data\\cache", ResidualKind.CACHE) == RiskTier.LOW
    assert classify_risk("D:\\Data\\foo.txt", ResidualKind.FILE) == RiskTier.SAFE


def test_group_items_keeps_layout_order_and_drops_empty_groups() -> None:
    items = [
        ResidualItem(path="s", name="s", kind=ResidualKind.SERVICE),
        ResidualItem(path="t", name="t", kind=ResidualKind.TEMP),
        ResidualItem(path="f", name="f", kind=ResidualKind.FILE),
        ResidualItem(path="d", name="d", kind=ResidualKind.DIRECTORY),
    ]
    groups = group_items(items)
    assert [group.name for group in groups] == ["Files and folders", "Cache files", "Services"]
    assert [item.name for item in groups[0].items] == ["f", "d"]
    assert group_items([]) == []


def test_default_file_roots_skip_missing_variables() -> None:
    roots = default_file_roots({"APPDATA": "C:\\Users\\me\\AppData\\Roaming"})
    assert [root.name for root in roots] == ["app_data", "start_menu"]
    assert roots[1].shortcuts_only
    assert roots[1].path.endswith("Programs")


def test_scan_finds_files_registry_and_shortcuts(tmp_path) -> None:
    scanner = _scanner(tmp_path)
    progress = []
    groups = scanner.scan_sync(PROGRAM, on_progress=lambda pct, label, found: progress.append((pct, found)))
    assert _names(groups) == {
        "Files and folders": ["ExampleApp", "exampleapp.log"],
        "Cache files": ["Example App"],
        "Registry keys": ["ExampleApp"],
        "Startup entries": ["ExampleAppLauncher"],
        "Shortcuts": ["Example App.lnk"],
        "Services": ["ExampleSvc"],
    }
    assert scanner.state == ScanState.COMPLETED
    assert scanner.get_scan_results() == groups
    assert progress[-1] == (100, 7)
    assert [pct for pct, _found in progress] == sorted(pct for pct, _found in progress)

    items = {item.name: item for group in groups for item in group.items}
    folder = groups[0].items[[i.name for i in groups[0].items].index("ExampleApp")]
    assert folder.kind == ResidualKind.DIRECTORY
    assert folder.size == 15
    assert folder.risk in (RiskTier.SAFE, RiskTier.LOW)
    assert items["Example App"].risk == RiskTier.LOW
    assert items["ExampleAppLauncher"].risk == RiskTier.HIGH
    assert items["ExampleSvc"].risk == RiskTier.HIGH
    assert items["ExampleSvc"].description == "Example App Service"
    registry_group = next(group for group in groups if group.name == "Registry keys")
    assert registry_group.items[0].path == "HKEY_CURRENT_USER\\Software\\ExampleApp"
    assert registry_group.items[0].risk == RiskTier.MEDIUM


def test_options_disable_sources(tmp_path) -> None:
    scanner = ResidualScanner(
        store=_store(),
        options=ResidualScanOptions(scan_registry=False, scan_shortcuts=False, disabled_roots=frozenset({"local_app_data"})),
        file_roots=_layout(tmp_path),
        windows_dir="",
    )
    groups = scanner.scan_sync(PROGRAM)
    assert list(_names(groups)) == ["Files and folders"]
    no_registry = ResidualScanner(store=None, file_roots=[], windows_dir="")
    assert no_registry.scan_sync(PROGRAM) == []


def test_short_name_finds_nothing(tmp_path) -> None:
    scanner = _scanner(tmp_path)
    assert scanner.scan_sync(ProgramRecord(name="Ex")) == []
    assert scanner.state == ScanState.COMPLETED


def test_deep_scan_descends_into_matched_folders(tmp_path) -> None:
    shallow = _names(_scanner(tmp_path).scan_sync(PROGRAM))
    assert "ExampleApp-data" not in shallow["Files and folders"]
    deep_scanner = ResidualScanner(
        store=_store(),
        options=ResidualScanOptions(deep_scan=True),
        file_roots=[FileRoot("app_data", str(tmp_path / "roaming"), ResidualKind.FILE)],
        windows_dir="",
    )
    deep = _names(deep_scanner.scan_sync(PROGRAM))
    assert deep["Files and folders"] == ["ExampleApp", "ExampleApp-data", "exampleapp.log"]


def test_delete_continues_after_failures(tmp_path) -> None:
    scanner = _scanner(tmp_path)
    groups = scanner.scan_sync(PROGRAM)
    items = [item for group in groups for item in group.items]
    unselected = ResidualItem(path=str(tmp_path / "roaming" / "Other"), name="Other", selected=False)
    events = []
    report = scanner.delete_residual_items(
        items + [unselected], on_progress=lambda pct, path, ok: events.append((pct, ok))
    )

    assert sorted(item.name for item, _reason in report.failed) == ["ExampleAppLauncher", "ExampleSvc"]
    assert all("high risk" in reason for _item, reason in report.failed)
    assert len(report.deleted) == len(items) - 2
    assert report.skipped == 1
    assert not report.success
    assert report.freed_bytes >= 13

    assert len(events) == 2 * len(items)
    assert [ok for _pct, ok in events[::2]] == [None] * len(items)
    assert events[-1][0] == 100
    assert [pct for pct, _ok in events] == sorted(pct for pct, _ok in events)

    assert not (tmp_path / "roaming" / "ExampleApp").exists()
    assert not (tmp_path / "roaming" / "exampleapp.log").exists()
    assert not (tmp_path / "desktop" / "Example App.lnk").exists()
    assert (tmp_path / "desktop" / "Example App notes.txt").exists()
    assert (tmp_path / "roaming" / "Other").exists()
    store = scanner.store
    assert not store.key_exists(Hive.HKCU, "Software\\ExampleApp")
    assert store.key_exists(Hive.HKCU, "Software\\Unrelated")
    assert store.key_exists(Hive.HKLM, SERVICES_PATH + "\\ExampleSvc")
    assert scanner.state == ScanState.COMPLETED


def test_high_risk_deletion_needs_opt_in(tmp_path) -> None:
    scanner = _scanner(tmp_path)
    groups = scanner.scan_sync(PROGRAM)
    launcher = next(item for group in groups for item in group.items if item.name == "ExampleAppLauncher")
    report = scanner.delete_residual_items([launcher], allow_high_risk=True)
    assert report.success
    with scanner.store.open_key(Hive.HKCU, RUN_PATH) as key:
        assert key.value_names() == ["Other"]


def test_delete_reports_each_item_and_continues_past_a_failure(tmp_path) -> None:
    scanner = _scanner(tmp_path)
    scanner.scan_sync(PROGRAM)
    first = tmp_path / "desktop" / "Example App notes.txt"
    last = tmp_path / "roaming" / "exampleapp.log"
    items = [
        ResidualItem(path=str(first), name=first.name, kind=ResidualKind.FILE),
        ResidualItem(path=str(tmp_path / "roaming" / "missing.txt"), name="missing.txt", kind=ResidualKind.FILE),
        ResidualItem(path=str(last), name=last.name, kind=ResidualKind.FILE),
    ]
    events = []
    report = scanner.delete_residual_items(items, on_progress=lambda pct, path, ok: events.append((path, ok)))
    assert [ok for _path, ok in events] == [None, True, None, False, None, True]
    assert [path for path, _ok in events[1::2]] == [item.path for item in items]
    assert [item.name for item in report.deleted] == [first.name, last.name]
    assert [item.name for item, _reason in report.failed] == ["missing.txt"]
    assert not first.exists()
    assert not last.exists()


def test_delete_needs_a_completed_scan(tmp_path) -> None:
    target = tmp_path / "roaming" / "exampleapp.log"
    scanner = _scanner(tmp_path)
    item = ResidualItem(path=str(target), name=target.name, kind=ResidualKind.FILE)
    assert scanner.state == ScanState.IDLE
    with pytest.raises(InvalidState):
        scanner.delete_residual_items([item])
    assert target.exists()
    assert scanner.state == ScanState.IDLE

    scanner.scan_sync(PROGRAM)
    assert scanner.delete_residual_items([item]).success
    assert not target.exists()
    assert scanner.state == ScanState.COMPLETED


def test_children_of_deleted_folder_count_as_deleted(tmp_path) -> None:
    parent = tmp_path / "roaming" / "ExampleApp"
    scanner = _scanner(tmp_path)
    scanner.scan_sync(PROGRAM)
    items = [
        ResidualItem(path=str(parent), name="ExampleApp", kind=ResidualKind.DIRECTORY),
        ResidualItem(path=str(parent / "ExampleApp-data"), name="ExampleApp-data", kind=ResidualKind.DIRECTORY),
        ResidualItem(path=str(tmp_path / "roaming" / "gone.txt"), name="gone.txt", kind=ResidualKind.FILE),
    ]
    report = scanner.delete_residual_items(items)
    assert [item.name for item in report.deleted] == ["ExampleApp", "ExampleApp-data"]
    assert [item.name for item, _reason in report.failed] == ["gone.txt"]
    assert report.failed[0][1].endswith("not found")


def test_refuses_roots(tmp_path) -> None:
    scanner = _scanner(tmp_path)
    scanner.scan_sync(PROGRAM)
    roaming = str(tmp_path / "roaming")
    items = [
        ResidualItem(path=os.path.abspath(os.sep), name="root", kind=ResidualKind.DIRECTORY),
        ResidualItem(path=roaming, name="roaming", kind=ResidualKind.DIRECTORY),
        ResidualItem(path="HKEY_CURRENT_USER\\Software", name="Software", kind=ResidualKind.REGISTRY_KEY),
        ResidualItem(path="HKEY_CLASSES_ROOT", name="classes", kind=ResidualKind.REGISTRY_KEY),
    ]
    report = scanner.delete_residual_items(items)
    assert len(report.failed) == 4
    assert os.path.isdir(roaming)
    assert scanner.store.key_exists(Hive.HKCU, "Software\\Unrelated")
    assert any(root.name == "classes" for root in DEFAULT_REGISTRY_ROOTS)


def test_stop_scan_discards_results(tmp_path) -> None:
    scanner = _scanner(tmp_path)
    entered = threading.Event()
    release = threading.Event()
    completed = []

    def on_progress(pct: int, label: str, found: int) -> None:
        entered.set()
        release.wait(5)

    scanner.start_scan(PROGRAM, on_progress=on_progress, on_complete=completed.append)
    assert entered.wait(5)
    assert scanner.is_scanning()
    with pytest.raises(OperationInProgress):
        scanner.start_scan(PROGRAM)
    with pytest.raises(OperationInProgress):
        scanner.delete_residual_items([])
    assert scanner.stop_scan(timeout=0.01) is False
    assert not scanner.is_scanning()
    assert scanner.state == ScanState.CANCELLED
    release.set()
    time.sleep(0.2)
    assert completed == []
    assert scanner.get_scan_results() == []
    assert scanner.state == ScanState.CANCELLED


def test_background_scan_completes(tmp_path) -> None:
    scanner = _scanner(tmp_path)
    done = threading.Event()
    results = []

    def on_complete(groups) -> None:
        results.extend(groups)
        done.set()

    scanner.start_scan(PROGRAM, on_complete=on_complete)
    assert done.wait(5)
    assert scanner.state == ScanState.COMPLETED
    assert scanner.get_scan_results() == results
