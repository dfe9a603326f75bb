import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fallbacks import SizeScanLimits
from residual_scanner import FILE_ROOT_KINDS, FileRoot, ResidualScanOptions, default_file_roots, file_root

log = logging.getLogger(__name__)

APP_NAME = "remnant"
ENV_CONFIG = "REMNANT_CONFIG"
CONFIG_FILENAME = "config.json"


@dataclass
class RemnantConfig:
    cache_max_age: float = 300.0
    cache_capacity: int = 5
    scan_timeout: float = 30.0
    strict_system_filter: bool = False
    size_max_files: int = 500
    size_max_subdirs: int = 10
    scan_files: bool = True
    scan_registry: bool = True
    scan_shortcuts: bool = True
    scan_services: bool = False
    deep_scan: bool = False
    # Root name -> folder. When set, only these folders are scanned for leftovers.
    residual_roots: Dict[str, str] = field(default_factory=dict)

    def size_limits(self) -> SizeScanLimits:
        return SizeScanLimits(max_subdirs=self.size_max_subdirs, max_files=self.size_max_files)

    def residual_options(self) -> ResidualScanOptions:
        return ResidualScanOptions(
            scan_files=self.scan_files,
            scan_registry=self.scan_registry,
            scan_shortcuts=self.scan_shortcuts,
            scan_services=self.scan_services,
            deep_scan=self.deep_scan,
        )

    def file_roots(self) -> List[FileRoot]:
        if not self.residual_roots:
            return default_file_roots()
        return [file_root(name, path) for name, path in self.residual_roots.items()]


def app_data_dir(app_name: str = APP_NAME) -> str:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA") or os.getenv("APPDATA")
    else:
        base = os.getenv("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    if not base:
        base = os.path.expanduser("~")
    return os.path.join(base, app_name)


def default_config_path() -> str:
    override = os.getenv(ENV_CONFIG)
    if override:
        return override
    return os.path.join(app_data_dir(), CONFIG_FILENAME)


def _positive_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value > 0 else None


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


def load_config(path: Optional[str] = None) -> RemnantConfig:
    """Read settings from JSON; anything missing or malformed keeps its default."""
    config = RemnantConfig()
    path = path or default_config_path()
    if not os.path.exists(path):
        return config
    try:
        with open(path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("Ignoring unreadable config %s: %s", path, exc)
        return config
    if not isinstance(payload, dict):
        log.warning("Ignoring config %s: expected an object", path)
        return config
    cache = payload.get("cache", {})
    if isinstance(cache, dict):
        max_age = _positive_number(cache.get("max_age"))
        if max_age is not None:
            config.cache_max_age = max_age
        capacity = _positive_int(cache.get("capacity"))
        if capacity is not None:
            config.cache_capacity = capacity
    inventory = payload.get("inventory", {})
    if isinstance(inventory, dict):
        timeout = _positive_number(inventory.get("scan_timeout"))
        if timeout is not None:
            config.scan_timeout = timeout
        strict = inventory.get("strict_system_filter")
        if isinstance(strict, bool):
            config.strict_system_filter = strict
        for key, attr in (("size_max_files", "size_max_files"), ("size_max_subdirs", "size_max_subdirs")):
            value = _positive_int(inventory.get(key))
            if value is not None:
                setattr(config, attr, value)
    residuals = payload.get("residuals", {})
    if isinstance(residuals, dict):
        flags: Dict[str, Any] = {
            key: residuals.get(key)
            for key in ("scan_files", "scan_registry", "scan_shortcuts", "scan_services", "deep_scan")
        }
        for key, value in flags.items():
            if isinstance(value, bool):
                setattr(config, key, value)
        roots = residuals.get("roots")
        if isinstance(roots, dict):
            for name, folder in roots.items():
                if name not in FILE_ROOT_KINDS or not isinstance(folder, str) or not folder.strip():
                    log.warning("Ignoring residual root %r in %s", name, path)
                    continue
                config.residual_roots[name] = folder.strip()
    return config
