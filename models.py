from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Tuple


class RootKind(Enum):
    MACHINE_64 = "machine-64"
    MACHINE_32 = "machine-32"
    USER_64 = "user-64"
    USER_32 = "user-32"
    PACKAGE_REPOSITORY = "package-repository"


@dataclass(frozen=True)
class ProgramRecord:
    name: str
    display_name: str = ""
    version: str = ""
    publisher: str = ""
    install_date: str = ""
    install_location: str = ""
    icon_path: str = ""
    uninstall_command: str = ""
    registry_key: str = ""
    root_kind: RootKind = RootKind.MACHINE_64
    estimated_size: int = 0
    is_system_component: bool = False

    def label(self) -> str:
        return self.display_name or self.name

    def name_key(self) -> str:
        return self.label().strip().casefold()

    def is_valid(self) -> bool:
        return bool(self.label().strip()) and bool(self.uninstall_command.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "version": self.version,
            "publisher": self.publisher,
            "install_date": self.install_date,
            "install_location": self.install_location,
            "icon_path": self.icon_path,
            "uninstall_command": self.uninstall_command,
            "registry_key": self.registry_key,
            "root_kind": self.root_kind.value,
            "estimated_size": self.estimated_size,
            "is_system_component": self.is_system_component,
        }


@dataclass(frozen=True)
class CacheEntry:
    include_system_components: bool
    programs: Tuple[ProgramRecord, ...]
    created_at: float
    scan_duration_ms: int = 0

    @property
    def program_count(self) -> int:
        return len(self.programs)


class ResidualKind(Enum):
    FILE = "file"
    DIRECTORY = "directory"
    REGISTRY_KEY = "registry_key"
    REGISTRY_VALUE = "registry_value"
    SHORTCUT = "shortcut"
    SERVICE = "service"
    STARTUP_ITEM = "startup_item"
    CACHE = "cache"
    LOG = "log"
    TEMP = "temp"
    CONFIG = "config"


class RiskTier(Enum):
    SAFE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    def __lt__(self, other: "RiskTier") -> bool:
        if not isinstance(other, RiskTier):
            return NotImplemented
        return self.value < other.value

    def __le__(self, other: "RiskTier") -> bool:
        if not isinstance(other, RiskTier):
            return NotImplemented
        return self.value <= other.value


class ScanState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    DELETING = "deleting"


KIND_LABELS: Dict[ResidualKind, str] = {
    ResidualKind.FILE: "File",
    ResidualKind.DIRECTORY: "Folder",
    ResidualKind.REGISTRY_KEY: "Registry key",
    ResidualKind.REGISTRY_VALUE: "Registry value",
    ResidualKind.SHORTCUT: "Shortcut",
    ResidualKind.SERVICE: "Service",
    ResidualKind.STARTUP_ITEM: "Startup entry",
    ResidualKind.CACHE: "Cache",
    ResidualKind.LOG: "Log file",
    ResidualKind.TEMP: "Temporary file",
    ResidualKind.CONFIG: "Configuration",
}

RISK_LABELS: Dict[RiskTier, str] = {
    RiskTier.SAFE: "Safe",
    RiskTier.LOW: "Low risk",
    RiskTier.MEDIUM: "Medium risk",
    RiskTier.HIGH: "High risk",
}


def kind_label(kind: ResidualKind) -> str:
    return KIND_LABELS[kind]


def risk_label(tier: RiskTier) -> str:
    return RISK_LABELS[tier]


@dataclass(frozen=True)
class ResidualItem:
    path: str
    name: str
    kind: ResidualKind = ResidualKind.FILE
    size: int = 0
    last_modified: str = ""
    risk: RiskTier = RiskTier.SAFE
    selected: bool = True
    description: str = ""

    def with_selection(self, selected: bool) -> "ResidualItem":
        return replace(self, selected=selected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "kind": self.kind.value,
            "size": self.size,
            "last_modified": self.last_modified,
            "risk": risk_label(self.risk),
            "selected": self.selected,
            "description": self.description,
        }


@dataclass(frozen=True)
class ResidualGroup:
    name: str
    description: str
    kind: ResidualKind
    items: Tuple[ResidualItem, ...] = field(default_factory=tuple)

    @property
    def total_size(self) -> int:
        return sum(item.size for item in self.items)

    @property
    def selected_count(self) -> int:
        return sum(1 for item in self.items if item.selected)

    def with_items(self, items: Iterable[ResidualItem]) -> "ResidualGroup":
        return replace(self, items=tuple(items))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "kind": self.kind.value,
            "total_size": self.total_size,
            "selected_count": self.selected_count,
            "items": [item.to_dict() for item in self.items],
        }
