import datetime as _dt
import os
import re
from typing import Optional

BLOCKED_EXE_NAMES = {
    "msiexec.exe",
    "rundll32.exe",
    "regsvr32.exe",
    "cmd.exe",
    "powershell.exe",
    "pwsh.exe",
}
INVALID_LOCATION_TOKENS = {"unknown", "n/a", "na", "none", "null"}


def normalize_date(raw: str) -> str:
    """Return YYYY-MM-DD or blank for unsupported formats (Win32 stores YYYYMMDD)."""
    if not raw:
        return ""
    raw = str(raw).strip()
    patterns = [
        r"^(?P<y>\d{4})(?P<m>\d{2})(?P<d>\d{2})$",
        r"^(?P<y>\d{4})[-/.](?P<m>\d{1,2})[-/.](?P<d>\d{1,2})$",
        r"^(?P<m>\d{1,2})/(?P<d>\d{1,2})/(?P<y>\d{4})$",
    ]
    for pat in patterns:
        match = re.match(pat, raw)
        if match:
            try:
                dt = _dt.date(int(match.group("y")), int(match.group("m")), int(match.group("d")))
            except ValueError:
                return ""
            return dt.isoformat()
    return ""


def date_from_timestamp(value: Optional[float]) -> str:
    if value is None or value <= 0:
        return ""
    try:
        return _dt.datetime.fromtimestamp(value).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return ""


def kib_to_bytes(value) -> int:
    if value is None or isinstance(value, bool):
        return 0
    try:
        return max(int(value), 0) * 1024
    except (ValueError, TypeError):
        return 0


def format_size(size_bytes: int) -> str:
    size = float(max(size_bytes or 0, 0))
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024.0:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} TB"


def clean_path(raw: str) -> str:
    """Strip quotes and placeholder tokens, expand environment variables."""
    if not raw:
        return ""
    path = str(raw).strip().strip('"').strip()
    if not path:
        return ""
    lower = path.casefold()
    if lower in INVALID_LOCATION_TOKENS or lower.startswith("unknown"):
        return ""
    return os.path.expandvars(os.path.expanduser(path))


def extract_path_from_command(raw: str) -> str:
    text = (raw or "").strip()
    if not text:
        return ""
    if text.startswith('"'):
        end = text.find('"', 1)
        if end > 1:
            candidate = text[1:end]
            if is_blocked_exe(candidate):
                return ""
            return candidate
    lowered = text.casefold()
    idx = lowered.find(".exe")
    if idx != -1:
        candidate = text[: idx + 4]
        candidate = candidate.split(",")[0].strip().strip('"')
        if is_blocked_exe(candidate):
            return ""
        return candidate
    if len(text) >= 2 and text[1] == ":":
        token = text.split(" ")[0].split(",")[0].strip()
        if is_blocked_exe(token):
            return ""
        return token
    return ""


def extract_icon_target(raw: str) -> str:
    """DisplayIcon values look like ``"C:\\App\\app.exe",0``; drop the index."""
    text = (raw or "").strip()
    if not text:
        return ""
    if text.startswith('"'):
        end = text.find('"', 1)
        if end > 1:
            return text[1:end]
    return text.split(",")[0].strip().strip('"')


def is_blocked_exe(path: str) -> bool:
    name = os.path.basename((path or "").strip().strip('"').replace("\\", os.sep)).casefold()
    return name in BLOCKED_EXE_NAMES

