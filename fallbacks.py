"""Field extractors for uninstall entries.

Each extractor takes an ``EntryContext`` and returns a value or ``None``.
Chains are plain ordered lists; ``first_value`` walks them and keeps the first
non-empty answer. Extractors never raise: OS errors are treated as "no value".
"""

import ctypes
import datetime as _dt
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from utils import (
    clean_path,
    date_from_timestamp,
    extract_icon_target,
    extract_path_from_command,
    kib_to_bytes,
    normalize_date,
)

log = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024

UNINSTALL_TARGET_MULTIPLIER = 20
ICON_TARGET_MULTIPLIER = 30
HELP_LINK_YEARS = range(2020, 2031)


@dataclass(frozen=True)
class SizeScanLimits:
    max_subdirs: int = 10
    max_files: int = 500
    extrapolation: int = 5
    cap_bytes: int = 3 * GIB


DEFAULT_SIZE_LIMITS = SizeScanLimits()
QUICK_SIZE_LIMITS = SizeScanLimits(max_subdirs=0, max_files=1000, extrapolation=10, cap_bytes=2 * GIB)


@dataclass
class EntryContext:
    """Raw values of one uninstall entry plus the fields resolved so far."""

    values: Dict[str, Any]
    last_write: Optional[_dt.datetime] = None
    name: str = ""
    version: str = ""
    publisher: str = ""
    size_limits: SizeScanLimits = field(default=DEFAULT_SIZE_LIMITS)

    def text(self, value_name: str) -> str:
        value = self.values.get(value_name)
        if value is None:
            return ""
        return str(value).strip()

    def install_location(self) -> str:
        return clean_path(self.text("InstallLocation"))

    def uninstall_target(self) -> str:
        return clean_path(extract_path_from_command(self.text("UninstallString")))

    def icon_target(self) -> str:
        return clean_path(extract_icon_target(self.text("DisplayIcon")))


Extractor = Callable[[EntryContext], Any]


def first_value(chain: Sequence[Extractor], ctx: EntryContext, default: Any = None) -> Any:
    for extractor in chain:
        value = extractor(ctx)
        if value:
            return value
    return default


# --- filesystem helpers ----------------------------------------------------


def _file_size(path: str) -> int:
    if not path:
        return 0
    try:
        if not os.path.isfile(path):
            return 0
        return os.path.getsize(path)
    except OSError:
        return 0


def _creation_date(path: str) -> Optional[str]:
    if not path:
        return None
    try:
        stamp = os.stat(path).st_ctime
    except OSError:
        return None
    return date_from_timestamp(stamp) or None


def directory_size(root: str, limits: SizeScanLimits = DEFAULT_SIZE_LIMITS) -> int:
    """Estimate the size of ``root`` in bytes.

    Each directory level stops after ``max_files`` files and extrapolates from
    the average file size; at most ``max_subdirs`` sub-directories are followed
    per level. Symlinks are never followed and the result is capped.
    """
    if not root or not os.path.isdir(root):
        return 0
    return min(_level_size(root, limits), limits.cap_bytes)


def quick_directory_size(root: str) -> int:
    return directory_size(root, QUICK_SIZE_LIMITS)


def _level_size(path: str, limits: SizeScanLimits) -> int:
    total = 0
    file_count = 0
    subdirs: List[str] = []
    try:
        with os.scandir(path) as entries:
            for entry in entries:
                try:
                    if entry.is_symlink():
                        continue
                    if entry.is_dir(follow_symlinks=False):
                        if len(subdirs) < limits.max_subdirs:
                            subdirs.append(entry.path)
                        continue
                    total += entry.stat(follow_symlinks=False).st_size
                    file_count += 1
                except OSError:
                    continue
                if file_count >= limits.max_files:
                    # Only the files are extrapolated; sub-directories already seen still count.
                    total = total // file_count * file_count * limits.extrapolation
                    break
                if total > limits.cap_bytes:
                    return total
    except OSError as exc:
        log.debug("Cannot list %s: %s", path, exc)
        return 0
    for subdir in subdirs:
        total += _level_size(subdir, limits)
        if total > limits.cap_bytes:
            break
    return total


def file_version(path: str) -> Optional[str]:
    """Read the fixed file version resource of an executable (Windows only)."""
    if sys.platform != "win32" or not path or not os.path.isfile(path):
        return None
    version_dll = ctypes.windll.version
    size = version_dll.GetFileVersionInfoSizeW(path, None)
    if not size:
        return None
    buffer = ctypes.create_string_buffer(size)
    if not version_dll.GetFileVersionInfoW(path, 0, size, buffer):
        return None
    val_ptr = ctypes.c_void_p()
    val_size = ctypes.c_uint()
    if not version_dll.VerQueryValueW(buffer, "\\", ctypes.byref(val_ptr), ctypes.byref(val_size)):
        return None
    if not val_size.value:
        return None
    info = ctypes.cast(val_ptr, ctypes.POINTER(_FixedFileInfo)).contents
    ms, ls = info.dwFileVersionMS, info.dwFileVersionLS
    version = f"{(ms >> 16) & 0xFFFF}.{ms & 0xFFFF}.{(ls >> 16) & 0xFFFF}.{ls & 0xFFFF}"
    return None if version == "0.0.0.0" else version


class _FixedFileInfo(ctypes.Structure):
    _fields_ = [
        ("dwSignature", ctypes.c_uint32),
        ("dwStrucVersion", ctypes.c_uint32),
        ("dwFileVersionMS", ctypes.c_uint32),
        ("dwFileVersionLS", ctypes.c_uint32),
        ("dwProductVersionMS", ctypes.c_uint32),
        ("dwProductVersionLS", ctypes.c_uint32),
        ("dwFileFlagsMask", ctypes.c_uint32),
        ("dwFileFlags", ctypes.c_uint32),
        ("dwFileOS", ctypes.c_uint32),
        ("dwFileType", ctypes.c_uint32),
        ("dwFileSubtype", ctypes.c_uint32),
        ("dwFileDateMS", ctypes.c_uint32),
        ("dwFileDateLS", ctypes.c_uint32),
    ]


# --- version ---------------------------------------------------------------


def version_from_display_version(ctx: EntryContext) -> Optional[str]:
    return ctx.text("DisplayVersion") or None


def version_from_version_value(ctx: EntryContext) -> Optional[str]:
    value = ctx.values.get("Version")
    if value is None or isinstance(value, int):
        # Numeric Version is a packed DWORD; VersionMajor/Minor cover it.
        return None
    return str(value).strip() or None


def version_from_major_minor(ctx: EntryContext) -> Optional[str]:
    try:
        major = int(ctx.values.get("VersionMajor") or 0)
        minor = int(ctx.values.get("VersionMinor") or 0)
    except (TypeError, ValueError):
        return None
    if major <= 0:
        return None
    return f"{major}.{minor}"


def version_from_uninstall_target(ctx: EntryContext) -> Optional[str]:
    try:
        return file_version(ctx.uninstall_target())
    except (OSError, AttributeError, ValueError):
        return None


VERSION_CHAIN: List[Extractor] = [
    version_from_display_version,
    version_from_version_value,
    version_from_major_minor,
    version_from_uninstall_target,
]


# --- publisher -------------------------------------------------------------

VENDOR_PATHS: List[Tuple[str, str]] = [
    ("\\microsoft\\", "Microsoft Corporation"),
    ("\\google\\", "Google LLC"),
    ("\\adobe\\", "Adobe Inc."),
    ("\\mozilla\\", "Mozilla Foundation"),
    ("\\oracle\\", "Oracle Corporation"),
    ("\\apple\\", "Apple Inc."),
    ("\\autodesk\\", "Autodesk, Inc."),
    ("\\tencent\\", "Tencent Technology"),
    ("\\alibaba\\", "Alibaba Group"),
    ("\\baidu\\", "Baidu, Inc."),
    ("\\360\\", "Qihoo 360"),
    ("\\jetbrains\\", "JetBrains s.r.o."),
    ("\\steam\\", "Valve Corporation"),
    ("\\nvidia\\", "NVIDIA Corporation"),
    ("\\intel\\", "Intel Corporation"),
    ("\\amd\\", "Advanced Micro Devices"),
]
_PROGRAM_FILES_RE = re.compile(r"program files(?: \(x86\))?\\([^\\]+)", re.IGNORECASE)


def vendor_from_path(path: str) -> Optional[str]:
    if not path:
        return None
    lowered = path.replace("/", "\\").casefold()
    if not lowered.endswith("\\"):
        lowered += "\\"
    for fragment, vendor in VENDOR_PATHS:
        if fragment in lowered:
            return vendor
    match = _PROGRAM_FILES_RE.search(path.replace("/", "\\"))
    if match:
        folder = match.group(1).strip()
        if 3 <= len(folder) < 50:
            return folder
    return None


def publisher_from_publisher(ctx: EntryContext) -> Optional[str]:
    return ctx.text("Publisher") or None


def publisher_from_manufacturer(ctx: EntryContext) -> Optional[str]:
    return ctx.text("Manufacturer") or None


def publisher_from_contact(ctx: EntryContext) -> Optional[str]:
    return ctx.text("Contact") or None


def publisher_from_install_location(ctx: EntryContext) -> Optional[str]:
    return vendor_from_path(ctx.text("InstallLocation"))


def publisher_from_uninstall_string(ctx: EntryContext) -> Optional[str]:
    return vendor_from_path(extract_path_from_command(ctx.text("UninstallString")))


PUBLISHER_CHAIN: List[Extractor] = [
    publisher_from_publisher,
    publisher_from_manufacturer,
    publisher_from_contact,
    publisher_from_install_location,
    publisher_from_uninstall_string,
]


# --- install date ----------------------------------------------------------


def _matches(text: str, *tokens: str) -> bool:
    return any(token in text for token in tokens)


def estimate_install_date(name: str, publisher: str, version: str = "") -> str:
    """Coarse guess by product family; last resort of the date chain."""
    name_l = (name or "").casefold()
    pub_l = (publisher or "").casefold()
    if "microsoft" in pub_l:
        if _matches(name_l, "office", "visual studio"):
            return "2024-01-01"
        if ".net" in name_l:
            return "2022-01-01"
        return "2023-01-01"
    if "google" in pub_l:
        return "2024-01-01" if "chrome" in name_l else "2023-01-01"
    if "adobe" in pub_l:
        return "2023-01-01"
    if "game" in name_l:
        return "2024-01-01"
    if _matches(name_l, "development", "sdk"):
        return "2024-01-01"
    if _matches(name_l, "security", "antivirus"):
        return "2022-01-01"
    for year in ("2024", "2023", "2022", "2021"):
        if year in (version or ""):
            return f"{year}-01-01"
    return "2023-01-01"


def date_from_install_date(ctx: EntryContext) -> Optional[str]:
    return normalize_date(ctx.text("InstallDate")) or None


def date_from_install_time(ctx: EntryContext) -> Optional[str]:
    return normalize_date(ctx.text("InstallTime")) or None


def date_from_help_link(ctx: EntryContext) -> Optional[str]:
    link = ctx.text("HelpLink")
    for year in HELP_LINK_YEARS:
        if str(year) in link:
            return f"{year}-01-01"
    return None


def date_from_uninstall_target(ctx: EntryContext) -> Optional[str]:
    return _creation_date(ctx.uninstall_target())


def date_from_install_directory(ctx: EntryContext) -> Optional[str]:
    location = ctx.install_location()
    if not location or not os.path.isdir(location):
        return None
    return _creation_date(location)


def date_from_registry_key(ctx: EntryContext) -> Optional[str]:
    if ctx.last_write is None:
        return None
    return ctx.last_write.date().isoformat()


def date_from_icon_target(ctx: EntryContext) -> Optional[str]:
    return _creation_date(ctx.icon_target())


def date_from_name_table(ctx: EntryContext) -> Optional[str]:
    return estimate_install_date(ctx.name, ctx.publisher, ctx.version)


DATE_CHAIN: List[Extractor] = [
    date_from_install_date,
    date_from_install_time,
    date_from_help_link,
    date_from_uninstall_target,
    date_from_install_directory,
    date_from_registry_key,
    date_from_icon_target,
    date_from_name_table,
]


# --- size ------------------------------------------------------------------


def estimate_size(name: str, publisher: str) -> int:
    """Coarse guess by product family; last resort of the size chain."""
    name_l = (name or "").casefold()
    pub_l = (publisher or "").casefold()
    if "microsoft" in pub_l:
        if "office" in name_l:
            return 2 * GIB
        if "visual studio" in name_l:
            return 5 * GIB
        if "sql server" in name_l:
            return 3 * GIB
        if ".net" in name_l:
            return 500 * MIB
        return GIB
    if "google" in pub_l:
        return 500 * MIB if "chrome" in name_l else 200 * MIB
    if "adobe" in pub_l:
        if "photoshop" in name_l:
            return 3 * GIB
        if "acrobat" in name_l:
            return GIB
        return 2 * GIB
    if "game" in name_l:
        return 5 * GIB
    if _matches(name_l, "development", "sdk"):
        return 2 * GIB
    if _matches(name_l, "security", "antivirus"):
        return GIB
    return 200 * MIB


def size_from_estimated_size(ctx: EntryContext) -> Optional[int]:
    return kib_to_bytes(ctx.values.get("EstimatedSize")) or None


def size_from_install_directory(ctx: EntryContext) -> Optional[int]:
    return directory_size(ctx.install_location(), ctx.size_limits) or None


def size_from_uninstall_target(ctx: EntryContext) -> Optional[int]:
    return _file_size(ctx.uninstall_target()) * UNINSTALL_TARGET_MULTIPLIER or None


def size_from_icon_target(ctx: EntryContext) -> Optional[int]:
    target = ctx.icon_target()
    if not target.casefold().endswith(".exe"):
        return None
    return _file_size(target) * ICON_TARGET_MULTIPLIER or None


def size_from_name_table(ctx: EntryContext) -> Optional[int]:
    return estimate_size(ctx.name, ctx.publisher)


SIZE_CHAIN: List[Extractor] = [
    size_from_estimated_size,
    size_from_install_directory,
    size_from_uninstall_target,
    size_from_icon_target,
    size_from_name_table,
]
