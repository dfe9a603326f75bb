"""Find and remove what an uninstaller left behind.

Given one ``ProgramRecord`` the scanner walks user and machine data folders,
shortcut folders and a few registry roots, keeps entries whose name contains
the program's name, classifies each by risk and buckets them into groups.
"""

import datetime as _dt
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from errors import FileSystemError, InvalidState, OperationCancelled, OperationInProgress, RegistryError
from fallbacks import directory_size
from models import ProgramRecord, ResidualGroup, ResidualItem, ResidualKind, RiskTier, ScanState
from registry import Hive, RegistryStore, RegistryView, format_registry_path, split_registry_path
from worker import BackgroundJob, ProgressGate

log = logging.getLogger(__name__)

MIN_MATCH_LENGTH = 3
SHORTCUT_EXTENSIONS = (".lnk", ".url")
DEEP_SCAN_MAX_DEPTH = 8

HIGH_RISK_TOKENS = ("system32", "windows", "program files")
MEDIUM_RISK_TOKENS = ("programdata",)
LOW_RISK_TOKENS = ("appdata", "temp")
MEDIUM_RISK_KINDS = (ResidualKind.REGISTRY_KEY, ResidualKind.REGISTRY_VALUE, ResidualKind.STARTUP_ITEM)

RUN_PATH = r"Software\Microsoft\Windows\CurrentVersion\Run"
SERVICES_PATH = r"SYSTEM\CurrentControlSet\Services"

# (group name, description, group kind, member kinds) in display order.
GROUP_LAYOUT: List[Tuple[str, str, ResidualKind, Tuple[ResidualKind, ...]]] = [
    ("Files and folders", "Files and folders left by the program", ResidualKind.FILE,
     (ResidualKind.FILE, ResidualKind.DIRECTORY)),
    ("Cache files", "Caches and temporary data", ResidualKind.CACHE,
     (ResidualKind.CACHE, ResidualKind.TEMP, ResidualKind.LOG)),
    ("Configuration files", "Settings and shared program data", ResidualKind.CONFIG, (ResidualKind.CONFIG,)),
    ("Registry keys", "Registry keys and values", ResidualKind.REGISTRY_KEY,
     (ResidualKind.REGISTRY_KEY, ResidualKind.REGISTRY_VALUE)),
    ("Startup entries", "Programs launched at sign-in", ResidualKind.STARTUP_ITEM, (ResidualKind.STARTUP_ITEM,)),
    ("Shortcuts", "Desktop and Start menu shortcuts", ResidualKind.SHORTCUT, (ResidualKind.SHORTCUT,)),
    ("Services", "Windows services", ResidualKind.SERVICE, (ResidualKind.SERVICE,)),
]

ScanProgress = Callable[[int, str, int], None]
DeleteProgress = Callable[[int, str, Optional[bool]], None]


@dataclass(frozen=True)
class FileRoot:
    name: str
    path: str
    kind: ResidualKind
    shortcuts_only: bool = False


@dataclass(frozen=True)
class RegistryScanRoot:
    name: str
    hive: Hive
    path: str
    kind: ResidualKind
    view: RegistryView = RegistryView.DEFAULT


@dataclass
class ResidualScanOptions:
    scan_files: bool = True
    scan_registry: bool = True
    scan_shortcuts: bool = True
    scan_services: bool = False
    deep_scan: bool = False
    disabled_roots: FrozenSet[str] = frozenset()


@dataclass
class DeleteReport:
    deleted: List[ResidualItem] = field(default_factory=list)
    failed: List[Tuple[ResidualItem, str]] = field(default_factory=list)
    skipped: int = 0

    @property
    def freed_bytes(self) -> int:
        return sum(item.size for item in self.deleted)

    @property
    def success(self) -> bool:
        return not self.failed


# Root name -> (kind given to matches, only shortcuts count).
FILE_ROOT_KINDS: Dict[str, Tuple[ResidualKind, bool]] = {
    "app_data": (ResidualKind.FILE, False),
    "local_app_data": (ResidualKind.CACHE, False),
    "program_data": (ResidualKind.CONFIG, False),
    "temp": (ResidualKind.CACHE, False),
    "desktop": (ResidualKind.SHORTCUT, True),
    "start_menu": (ResidualKind.SHORTCUT, True),
    "common_start_menu": (ResidualKind.SHORTCUT, True),
}


def file_root(name: str, path: str) -> FileRoot:
    kind, shortcuts_only = FILE_ROOT_KINDS[name]
    return FileRoot(name, path, kind, shortcuts_only)


def default_file_roots(env: Optional[Mapping[str, str]] = None) -> List[FileRoot]:
    env = os.environ if env is None else env
    appdata = env.get("APPDATA", "")
    program_data = env.get("PROGRAMDATA", "")
    userprofile = env.get("USERPROFILE", "")
    paths = {
        "app_data": appdata,
        "local_app_data": env.get("LOCALAPPDATA", ""),
        "program_data": program_data,
        "temp": env.get("TEMP", "") or env.get("TMP", ""),
        "desktop": os.path.join(userprofile, "Desktop") if userprofile else "",
        "start_menu": os.path.join(appdata, "Microsoft", "Windows", "Start Menu", "Programs") if appdata else "",
        "common_start_menu": (
            os.path.join(program_data, "Microsoft", "Windows", "Start Menu", "Programs") if program_data else ""
        ),
    }
    return [file_root(name, path) for name, path in paths.items() if path]


DEFAULT_REGISTRY_ROOTS = [
    RegistryScanRoot("user_software", Hive.HKCU, "Software", ResidualKind.REGISTRY_KEY),
    RegistryScanRoot("machine_software", Hive.HKLM, "SOFTWARE", ResidualKind.REGISTRY_KEY),
    RegistryScanRoot("classes", Hive.HKCR, "", ResidualKind.REGISTRY_KEY),
    RegistryScanRoot("user_run", Hive.HKCU, RUN_PATH, ResidualKind.STARTUP_ITEM),
    RegistryScanRoot("machine_run", Hive.HKLM, RUN_PATH.replace("Software", "SOFTWARE", 1), ResidualKind.STARTUP_ITEM),
    RegistryScanRoot("services", Hive.HKLM, SERVICES_PATH, ResidualKind.SERVICE),
]


def match_terms(program: ProgramRecord) -> List[str]:
    name = program.label().strip().casefold()
    if len(name) < MIN_MATCH_LENGTH:
        return []
    terms = [name]
    compact = name.replace(" ", "")
    if compact != name and len(compact) >= MIN_MATCH_LENGTH:
        terms.append(compact)
    return terms


def matches(entry_name: str, terms: Sequence[str]) -> bool:
    candidate = (entry_name or "").casefold()
    return any(term in candidate for term in terms)


def classify_risk(path: str, kind: ResidualKind) -> RiskTier:
    # Path tokens of a tier are checked before kind rules of lower tiers.
    lowered = (path or "").casefold()
    if any(token in lowered for token in HIGH_RISK_TOKENS) or kind == ResidualKind.SERVICE:
        return RiskTier.HIGH
    if any(token in lowered for token in MEDIUM_RISK_TOKENS) or kind in MEDIUM_RISK_KINDS:
        return RiskTier.MEDIUM
    if any(token in lowered for token in LOW_RISK_TOKENS) or kind == ResidualKind.CACHE:
        return RiskTier.LOW
    return RiskTier.SAFE


def group_items(items: Iterable[ResidualItem]) -> List[ResidualGroup]:
    buckets: Dict[ResidualKind, List[ResidualItem]] = {}
    for item in items:
        buckets.setdefault(item.kind, []).append(item)
    groups: List[ResidualGroup] = []
    for name, description, kind, members in GROUP_LAYOUT:
        collected = [item for member in members for item in buckets.get(member, [])]
        if collected:
            groups.append(ResidualGroup(name, description, kind, tuple(collected)))
    return groups


def _format_mtime(stamp: float) -> str:
    try:
        return _dt.datetime.fromtimestamp(stamp).strftime("%Y-%m-%d %H:%M")
    except (OverflowError, OSError, ValueError):
        return ""


def _normalize_path(path: str) -> str:
    return os.path.normcase(os.path.abspath(path))


def _is_drive_root(path: str) -> bool:
    text = (path or "").strip()
    if not text:
        return True
    drive, rest = os.path.splitdrive(os.path.abspath(text))
    return rest in ("", os.sep, "/", "\\")


class ResidualScanner:
    def __init__(
        self,
        store: Optional[RegistryStore] = None,
        options: Optional[ResidualScanOptions] = None,
        file_roots: Optional[Sequence[FileRoot]] = None,
        registry_roots: Optional[Sequence[RegistryScanRoot]] = None,
        windows_dir: Optional[str] = None,
    ) -> None:
        self.store = store
        self.options = options or ResidualScanOptions()
        self.file_roots = list(file_roots) if file_roots is not None else default_file_roots()
        self.registry_roots = list(registry_roots) if registry_roots is not None else list(DEFAULT_REGISTRY_ROOTS)
        self.windows_dir = windows_dir if windows_dir is not None else (
            os.environ.get("SystemRoot") or os.environ.get("WINDIR") or ""
        )
        self._lock = threading.Lock()
        self._state = ScanState.IDLE
        self._results: List[ResidualGroup] = []
        self._job = BackgroundJob("residual-scan")

    # --- state -------------------------------------------------------------

    @property
    def state(self) -> ScanState:
        with self._lock:
            return self._state

    def is_scanning(self) -> bool:
        return self.state == ScanState.SCANNING

    def get_scan_results(self) -> List[ResidualGroup]:
        with self._lock:
            return list(self._results)

    def _enter(self, state: ScanState) -> None:
        with self._lock:
            if self._state in (ScanState.SCANNING, ScanState.DELETING):
                raise OperationInProgress(f"Residual scanner is busy ({self._state.value})")
            # Deletion only follows a completed scan.
            if state == ScanState.DELETING and self._state != ScanState.COMPLETED:
                raise InvalidState(f"Cannot delete residuals while {self._state.value}; run a scan first")
            self._state = state
            if state == ScanState.SCANNING:
                self._results = []

    # --- scanning ----------------------------------------------------------

    def start_scan(
        self,
        program: ProgramRecord,
        on_progress: Optional[ScanProgress] = None,
        on_complete: Optional[Callable[[List[ResidualGroup]], None]] = None,
    ) -> None:
        self._enter(ScanState.SCANNING)

        def run(cancel: threading.Event, job_id: int) -> None:
            try:
                groups = self._scan(program, cancel, ProgressGate(on_progress, cancel))
            except OperationCancelled:
                raise
            except Exception:
                with self._lock:
                    if self._job.is_current(job_id):
                        self._state = ScanState.FAILED
                raise
            if not self._job.claim(job_id):
                log.debug("Discarding stale residual result of run %d", job_id)
                return
            with self._lock:
                self._results = list(groups)
                self._state = ScanState.COMPLETED
            found = sum(len(group.items) for group in groups)
            if on_progress is not None:
                on_progress(100, "", found)
            if on_complete is not None:
                on_complete(list(groups))

        try:
            self._job.start(run)
        except OperationInProgress:
            with self._lock:
                self._state = ScanState.IDLE
            raise

    def stop_scan(self, timeout: float = 3.0) -> bool:
        stopped = self._job.stop(timeout)
        with self._lock:
            if self._state == ScanState.SCANNING:
                self._state = ScanState.CANCELLED
        return stopped

    def scan_sync(self, program: ProgramRecord, on_progress: Optional[ScanProgress] = None) -> List[ResidualGroup]:
        self._enter(ScanState.SCANNING)
        cancel = threading.Event()
        try:
            groups = self._scan(program, cancel, ProgressGate(on_progress, cancel))
        except Exception:
            with self._lock:
                self._state = ScanState.FAILED
            raise
        with self._lock:
            self._results = list(groups)
            self._state = ScanState.COMPLETED
        if on_progress is not None:
            on_progress(100, "", sum(len(group.items) for group in groups))
        return groups

    def _steps(self) -> List[Tuple[str, Callable[..., List[ResidualItem]], object]]:
        opts = self.options
        steps: List[Tuple[str, Callable[..., List[ResidualItem]], object]] = []
        for root in self.file_roots:
            if root.name in opts.disabled_roots:
                continue
            wanted = opts.scan_shortcuts if root.shortcuts_only else opts.scan_files
            if wanted:
                steps.append((root.path, self._scan_file_root, root))
        if self.store is None:
            if opts.scan_registry or opts.scan_services:
                log.info("No registry available; skipping registry roots")
            return steps
        for reg_root in self.registry_roots:
            if reg_root.name in opts.disabled_roots:
                continue
            wanted = opts.scan_services if reg_root.kind == ResidualKind.SERVICE else opts.scan_registry
            if wanted:
                steps.append((format_registry_path(reg_root.hive, reg_root.path), self._scan_registry_root, reg_root))
        return steps

    def _scan(self, program: ProgramRecord, cancel: threading.Event, gate: ProgressGate) -> List[ResidualGroup]:
        terms = match_terms(program)
        if not terms:
            log.info("Name %r is too short to match residuals", program.label())
            return []
        steps = self._steps()
        items: List[ResidualItem] = []
        log.info("Scanning %d locations for residuals of %s", len(steps), program.label())
        for idx, (label, step, root) in enumerate(steps):
            if cancel.is_set():
                raise OperationCancelled("Residual scan cancelled")
            gate.report(idx * 100 // len(steps), label, len(items))
            items.extend(step(root, terms, cancel))
        if cancel.is_set():
            raise OperationCancelled("Residual scan cancelled")
        groups = group_items(items)
        log.info("Found %d residual items in %d groups", len(items), len(groups))
        return groups

    def _scan_file_root(self, root: FileRoot, terms: Sequence[str], cancel: threading.Event) -> List[ResidualItem]:
        if not os.path.isdir(root.path):
            log.debug("Skipping missing folder %s", root.path)
            return []
        results: List[ResidualItem] = []
        self._scan_directory(root, root.path, terms, cancel, results, 0)
        return results

    def _scan_directory(
        self,
        root: FileRoot,
        directory: str,
        terms: Sequence[str],
        cancel: threading.Event,
        results: List[ResidualItem],
        depth: int,
    ) -> None:
        matched_dirs: List[str] = []
        try:
            with os.scandir(directory) as entries:
                for entry in entries:
                    if cancel.is_set():
                        raise OperationCancelled("Residual scan cancelled")
                    if not matches(entry.name, terms):
                        continue
                    try:
                        item = self._file_item(root, entry)
                    except OSError as exc:
                        log.debug("Cannot stat %s: %s", entry.path, exc)
                        continue
                    if item is None:
                        continue
                    results.append(item)
                    if item.kind != ResidualKind.SHORTCUT and entry.is_dir(follow_symlinks=False):
                        matched_dirs.append(entry.path)
        except OSError as exc:
            log.debug("Cannot list %s: %s", directory, exc)
            return
        if self.options.deep_scan and depth < DEEP_SCAN_MAX_DEPTH:
            for path in matched_dirs:
                self._scan_directory(root, path, terms, cancel, results, depth + 1)

    def _file_item(self, root: FileRoot, entry: os.DirEntry) -> Optional[ResidualItem]:
        if entry.is_symlink():
            return None
        is_dir = entry.is_dir(follow_symlinks=False)
        if root.shortcuts_only:
            if is_dir or not entry.name.casefold().endswith(SHORTCUT_EXTENSIONS):
                return None
            kind = ResidualKind.SHORTCUT
        elif root.kind == ResidualKind.FILE:
            kind = ResidualKind.DIRECTORY if is_dir else ResidualKind.FILE
        else:
            kind = root.kind
        stat = entry.stat(follow_symlinks=False)
        size = directory_size(entry.path) if is_dir else stat.st_size
        return ResidualItem(
            path=entry.path,
            name=entry.name,
            kind=kind,
            size=size,
            last_modified=_format_mtime(stat.st_mtime),
            risk=classify_risk(entry.path, kind),
            description=root.name,
        )

    def _scan_registry_root(
        self, root: RegistryScanRoot, terms: Sequence[str], cancel: threading.Event
    ) -> List[ResidualItem]:
        results: List[ResidualItem] = []
        try:
            key = self.store.open_key(root.hive, root.path, root.view)
        except RegistryError as exc:
            log.debug("Skipping %s: %s", root.name, exc)
            return results
        with key:
            if root.kind == ResidualKind.STARTUP_ITEM:
                for value_name in key.value_names():
                    if cancel.is_set():
                        raise OperationCancelled("Residual scan cancelled")
                    data = str(key.value(value_name) or "")
                    if not (matches(value_name, terms) or matches(data, terms)):
                        continue
                    path = f"{key.path}\\{value_name}"
                    results.append(
                        ResidualItem(
                            path=path,
                            name=value_name,
                            kind=ResidualKind.STARTUP_ITEM,
                            risk=classify_risk(path, ResidualKind.STARTUP_ITEM),
                            description=data,
                        )
                    )
                return results
            for sub_name in key.subkey_names():
                if cancel.is_set():
                    raise OperationCancelled("Residual scan cancelled")
                display = ""
                if root.kind == ResidualKind.SERVICE:
                    display = self._service_display_name(key, sub_name)
                if not (matches(sub_name, terms) or matches(display, terms)):
                    continue
                path = f"{key.path}\\{sub_name}"
                results.append(
                    ResidualItem(
                        path=path,
                        name=sub_name,
                        kind=root.kind,
                        last_modified=self._key_mtime(key, sub_name),
                        risk=classify_risk(path, root.kind),
                        description=display,
                    )
                )
        return results

    @staticmethod
    def _service_display_name(key, sub_name: str) -> str:
        try:
            with key.open_subkey(sub_name) as service:
                return str(service.value("DisplayName") or "")
        except RegistryError:
            return ""

    @staticmethod
    def _key_mtime(key, sub_name: str) -> str:
        try:
            with key.open_subkey(sub_name) as sub_key:
                stamp = sub_key.last_write_time()
        except RegistryError:
            return ""
        return stamp.strftime("%Y-%m-%d %H:%M") if stamp else ""

    # --- deletion ----------------------------------------------------------

    def _protected_paths(self) -> FrozenSet[str]:
        paths = {_normalize_path(root.path) for root in self.file_roots if root.path}
        if self.windows_dir:
            paths.add(_normalize_path(self.windows_dir))
        return frozenset(paths)

    def _protected_keys(self) -> FrozenSet[str]:
        return frozenset(
            format_registry_path(root.hive, root.path).casefold() for root in self.registry_roots
        )

    def delete_residual_items(
        self,
        items: Iterable[ResidualItem],
        on_progress: Optional[DeleteProgress] = None,
        allow_high_risk: bool = False,
    ) -> DeleteReport:
        """Delete the selected items one by one.

        Per-item failures are recorded in the report and never abort the batch.
        Raises ``InvalidState`` unless the last scan completed.
        """
        self._enter(ScanState.DELETING)
        report = DeleteReport()
        try:
            candidates = list(items)
            selected = [item for item in candidates if item.selected]
            report.skipped = len(candidates) - len(selected)
            removed_dirs: List[str] = []
            total = len(selected)
            for idx, item in enumerate(selected):
                if on_progress is not None:
                    on_progress(idx * 100 // total, item.path, None)
                try:
                    self._delete_one(item, allow_high_risk, removed_dirs)
                except (FileSystemError, RegistryError) as exc:
                    log.warning("Could not delete %s: %s", item.path, exc)
                    report.failed.append((item, str(exc)))
                    success = False
                else:
                    log.info("Deleted %s", item.path)
                    report.deleted.append(item)
                    success = True
                if on_progress is not None:
                    on_progress((idx + 1) * 100 // total, item.path, success)
        finally:
            with self._lock:
                self._state = ScanState.COMPLETED
        return report

    def _delete_one(self, item: ResidualItem, allow_high_risk: bool, removed_dirs: List[str]) -> None:
        if item.risk == RiskTier.HIGH and not allow_high_risk:
            raise FileSystemError(item.path, "high risk item; not deleted")
        if item.kind in (ResidualKind.REGISTRY_KEY, ResidualKind.REGISTRY_VALUE,
                         ResidualKind.STARTUP_ITEM, ResidualKind.SERVICE):
            self._delete_registry_item(item)
        else:
            self._delete_path(item.path, removed_dirs)

    def _delete_registry_item(self, item: ResidualItem) -> None:
        if self.store is None:
            raise RegistryError(item.path, "no registry available")
        if item.path.casefold() in self._protected_keys():
            raise RegistryError(item.path, "refusing to delete a scan root")
        try:
            hive, path = split_registry_path(item.path)
        except ValueError as exc:
            raise RegistryError(item.path, str(exc)) from exc
        if not path:
            raise RegistryError(item.path, "refusing to delete a hive")
        if item.kind in (ResidualKind.STARTUP_ITEM, ResidualKind.REGISTRY_VALUE):
            key_path, _sep, value_name = path.rpartition("\\")
            self.store.delete_value(hive, key_path, value_name)
        else:
            self.store.delete_key_tree(hive, path)

    def _delete_path(self, path: str, removed_dirs: List[str]) -> None:
        if _is_drive_root(path):
            raise FileSystemError(path, "refusing to delete a drive root")
        norm = _normalize_path(path)
        if norm in self._protected_paths():
            raise FileSystemError(path, "refusing to delete a protected folder")
        if not os.path.lexists(path):
            if any(norm.startswith(parent + os.sep) for parent in removed_dirs):
                return
            raise FileSystemError(path, "not found")
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
                removed_dirs.append(norm)
            else:
                os.unlink(path)
        except OSError as exc:
            raise FileSystemError(path, exc.strerror or str(exc)) from exc
