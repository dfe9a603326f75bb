from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, List, Optional, Sequence, Tuple

from errors import OperationCancelled, OperationInProgress, RegistryError
from fallbacks import (
    DATE_CHAIN,
    DEFAULT_SIZE_LIMITS,
    PUBLISHER_CHAIN,
    SIZE_CHAIN,
    VERSION_CHAIN,
    EntryContext,
    SizeScanLimits,
    first_value,
)
from models import ProgramRecord, RootKind
from registry import Hive, RegistryKey, RegistryRoot, RegistryStore, RegistryView
from utils import clean_path, extract_icon_target
from worker import BackgroundJob, ProgressGate

log = logging.getLogger(__name__)

UNINSTALL_PATH = r"SOFTWARE\Microsoft\Windows\CurrentVersion\Uninstall"
UNINSTALL_PATH_WOW = r"SOFTWARE\WOW6432Node\Microsoft\Windows\CurrentVersion\Uninstall"
PACKAGE_PATH = (
    r"Software\Classes\Local Settings\Software\Microsoft\Windows"
    r"\CurrentVersion\AppModel\Repository\Packages"
)

# Machine and per-user uninstall keys in both registry views.
UNINSTALL_ROOTS = [
    RegistryRoot(RootKind.MACHINE_64, Hive.HKLM, UNINSTALL_PATH, RegistryView.KEY_64, "64-bit programs"),
    RegistryRoot(RootKind.MACHINE_32, Hive.HKLM, UNINSTALL_PATH_WOW, RegistryView.KEY_32, "32-bit programs"),
    RegistryRoot(RootKind.USER_64, Hive.HKCU, UNINSTALL_PATH, RegistryView.KEY_64, "per-user 64-bit programs"),
    RegistryRoot(RootKind.USER_32, Hive.HKCU, UNINSTALL_PATH_WOW, RegistryView.KEY_32, "per-user 32-bit programs"),
]
PACKAGE_ROOT = RegistryRoot(
    RootKind.PACKAGE_REPOSITORY, Hive.HKCU, PACKAGE_PATH, RegistryView.DEFAULT, "packaged apps"
)

PACKAGE_PREFIX_SKIP = ("Microsoft.", "Windows.")
PACKAGE_FRAGMENT_SKIP = ("Microsoft.VCLibs", "Microsoft.NET")
PACKAGE_PUBLISHER = "Microsoft Store"
PACKAGE_VERSION = "Store App"

SYSTEM_NAME_FRAGMENTS = ("security update", "hotfix", "update for")
SYSTEM_NAME_PREFIXES = ("kb", "microsoft .net", "microsoft visual c++")
SYSTEM_PUBLISHERS = ("microsoft", "intel", "nvidia", "amd", "advanced micro devices")
MICROSOFT_USER_PRODUCTS = ("office", "visual studio", "teams", "edge", "onedrive")

DEFAULT_SCAN_TIMEOUT = 30.0

ProgressCallback = Callable[[int, str], None]
CompleteCallback = Callable[[List[ProgramRecord]], None]


@dataclass
class ScanStatistics:
    total_found: int = 0
    duration_ms: int = 0
    finished_at: float = 0.0
    timed_out: bool = False
    roots_scanned: int = 0
    roots_skipped: int = 0


def looks_like_system_component(name: str, publisher: str, install_location: str) -> bool:
    name_l = (name or "").strip().casefold()
    pub_l = (publisher or "").strip().casefold()
    if any(fragment in name_l for fragment in SYSTEM_NAME_FRAGMENTS):
        return True
    if name_l.startswith(SYSTEM_NAME_PREFIXES):
        return True
    if any(vendor in pub_l for vendor in SYSTEM_PUBLISHERS):
        if pub_l.startswith("microsoft") and any(product in name_l for product in MICROSOFT_USER_PRODUCTS):
            return False
        return True
    location = (install_location or "").replace("/", "\\").casefold()
    return "\\windows\\" in location


def package_name(package_id: str) -> str:
    """Return the display name of a package id, or "" when it should be skipped."""
    if package_id.startswith(PACKAGE_PREFIX_SKIP):
        return ""
    if any(fragment in package_id for fragment in PACKAGE_FRAGMENT_SKIP):
        return ""
    name, sep, _rest = package_id.partition("_")
    if not sep:
        return ""
    return name


def _is_flag_set(value) -> bool:
    try:
        return int(value) == 1
    except (TypeError, ValueError):
        return False


class InventoryScanner:
    """Enumerates uninstall entries across registry views and the package repository."""

    def __init__(
        self,
        store: RegistryStore,
        roots: Optional[Sequence[RegistryRoot]] = None,
        package_root: Optional[RegistryRoot] = PACKAGE_ROOT,
        size_limits: SizeScanLimits = DEFAULT_SIZE_LIMITS,
        scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
        strict_system_filter: bool = False,
    ) -> None:
        self.store = store
        self.roots = list(roots) if roots is not None else list(UNINSTALL_ROOTS)
        self.package_root = package_root
        self.size_limits = size_limits
        self.scan_timeout = scan_timeout
        self.strict_system_filter = strict_system_filter
        self.statistics = ScanStatistics()
        self._job = BackgroundJob("inventory-scan")
        self._results: List[ProgramRecord] = []
        self._results_lock = threading.Lock()

    # --- synchronous pipeline ----------------------------------------------

    def scan(
        self,
        include_system_components: bool = False,
        cancel: Optional[threading.Event] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ProgramRecord]:
        records, stats = self._collect(include_system_components, cancel or threading.Event(), on_progress)
        with self._results_lock:
            self.statistics = stats
        return records

    def _collect(
        self,
        include_system_components: bool,
        cancel: threading.Event,
        on_progress: Optional[ProgressCallback],
    ) -> Tuple[List[ProgramRecord], ScanStatistics]:
        gate = ProgressGate(on_progress, cancel)
        roots = list(self.roots)
        if include_system_components and self.package_root is not None:
            roots.append(self.package_root)
        started = time.monotonic()
        stats = ScanStatistics()
        records: List[ProgramRecord] = []
        log.info("Scanning %d registry roots (system components: %s)", len(roots), include_system_components)
        for idx, root in enumerate(roots):
            self._check_cancel(cancel)
            gate.report(idx * 100 // max(len(roots), 1), root.description)
            try:
                found = self._scan_root(root, include_system_components, cancel, gate, idx, len(roots))
            except RegistryError as exc:
                log.info("Skipping %s (%s): %s", root.description, root.display_path(), exc)
                stats.roots_skipped += 1
                continue
            stats.roots_scanned += 1
            records.extend(found)
            log.debug("%s: %d programs", root.description, len(found))
        elapsed = time.monotonic() - started
        stats.total_found = len(records)
        stats.duration_ms = int(elapsed * 1000)
        stats.finished_at = time.time()
        if self.scan_timeout and elapsed > self.scan_timeout:
            stats.timed_out = True
            log.warning("Inventory scan took %.1fs (limit %.1fs)", elapsed, self.scan_timeout)
        self._check_cancel(cancel)
        gate.report(100, "")
        log.info("Inventory scan found %d programs in %d ms", stats.total_found, stats.duration_ms)
        return records, stats

    def scan_sync(self, include_system_components: bool = False) -> List[ProgramRecord]:
        if self._job.is_running():
            raise OperationInProgress("An inventory scan is already running")
        return self.scan(include_system_components)

    @staticmethod
    def _check_cancel(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise OperationCancelled("Inventory scan cancelled")

    def _scan_root(
        self,
        root: RegistryRoot,
        include_system_components: bool,
        cancel: threading.Event,
        gate: ProgressGate,
        root_index: int,
        root_count: int,
    ) -> List[ProgramRecord]:
        records: List[ProgramRecord] = []
        with self.store.open_key(root.hive, root.path, root.view) as base:
            names = base.subkey_names()
            for pos, sub_name in enumerate(names):
                self._check_cancel(cancel)
                try:
                    sub_key = base.open_subkey(sub_name)
                except RegistryError as exc:
                    log.debug("Skipping entry: %s", exc)
                    continue
                with sub_key:
                    if root.kind == RootKind.PACKAGE_REPOSITORY:
                        record = self._read_package(root, sub_key, sub_name)
                    else:
                        record = self._read_entry(root, sub_key, include_system_components)
                if record is None:
                    continue
                records.append(record)
                share = (root_index + (pos + 1) / len(names)) / root_count
                gate.report(min(int(share * 100), 99), record.label())
        return records

    def _read_entry(self, root: RegistryRoot, key: RegistryKey, include_system_components: bool) -> Optional[ProgramRecord]:
        values = key.values()
        system_flag = _is_flag_set(values.get("SystemComponent"))
        if system_flag and not include_system_components:
            return None
        name = str(values.get("DisplayName") or "").strip()
        uninstall = str(values.get("UninstallString") or "").strip()
        if not name or not uninstall:
            return None
        ctx = EntryContext(values, key.last_write_time(), name=name, size_limits=self.size_limits)
        ctx.version = first_value(VERSION_CHAIN, ctx, "")
        ctx.publisher = first_value(PUBLISHER_CHAIN, ctx, "")
        install_location = ctx.install_location()
        heuristic = looks_like_system_component(name, ctx.publisher, install_location)
        if self.strict_system_filter and heuristic and not include_system_components:
            return None
        return ProgramRecord(
            name=name,
            display_name=name,
            version=ctx.version,
            publisher=ctx.publisher,
            install_date=first_value(DATE_CHAIN, ctx, ""),
            install_location=install_location,
            icon_path=clean_path(extract_icon_target(ctx.text("DisplayIcon"))),
            uninstall_command=uninstall,
            registry_key=key.path,
            root_kind=root.kind,
            estimated_size=first_value(SIZE_CHAIN, ctx, 0),
            is_system_component=system_flag or (self.strict_system_filter and heuristic),
        )

    @staticmethod
    def _read_package(root: RegistryRoot, key: RegistryKey, package_id: str) -> Optional[ProgramRecord]:
        name = package_name(package_id)
        if not name:
            return None
        last_write = key.last_write_time()
        return ProgramRecord(
            name=name,
            display_name=name,
            version=PACKAGE_VERSION,
            publisher=PACKAGE_PUBLISHER,
            install_date=last_write.date().isoformat() if last_write else "",
            uninstall_command=f'powershell -Command "Get-AppxPackage {package_id} | Remove-AppxPackage"',
            registry_key=key.path,
            root_kind=root.kind,
        )

    # --- background mode ---------------------------------------------------

    def start_scan(
        self,
        include_system_components: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> None:
        def run(cancel: threading.Event, job_id: int) -> None:
            records, stats = self._collect(include_system_components, cancel, on_progress)
            if not self._job.claim(job_id):
                log.debug("Discarding stale inventory result of run %d", job_id)
                return
            with self._results_lock:
                self._results = list(records)
                self.statistics = stats
            if on_complete is not None:
                on_complete(list(records))

        self._job.start(run)

    def stop_scan(self, timeout: float = 3.0) -> bool:
        return self._job.stop(timeout)

    def is_scanning(self) -> bool:
        return self._job.is_running()

    def last_results(self) -> List[ProgramRecord]:
        with self._results_lock:
            return list(self._results)
