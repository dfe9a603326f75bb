"""Read access to the Windows registry behind a small, swappable interface.

``WinRegistryStore`` talks to ``winreg``; ``MemoryRegistryStore`` keeps a tree
in memory so scans can run on hosts without a registry.
"""

import datetime as _dt
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from errors import RegistryError
from models import RootKind

try:
    import winreg
except ImportError:  # pragma: no cover - Windows only
    winreg = None

log = logging.getLogger(__name__)

# FILETIME counts 100ns intervals since 1601-01-01.
_FILETIME_EPOCH = _dt.datetime(1601, 1, 1)


class Hive(Enum):
    HKLM = "HKEY_LOCAL_MACHINE"
    HKCU = "HKEY_CURRENT_USER"
    HKCR = "HKEY_CLASSES_ROOT"
    HKU = "HKEY_USERS"


_HIVE_ALIASES = {hive.name: hive for hive in Hive}
_HIVE_ALIASES.update({hive.value: hive for hive in Hive})


class RegistryView(Enum):
    DEFAULT = "default"
    KEY_64 = "64"
    KEY_32 = "32"


@dataclass(frozen=True)
class RegistryRoot:
    kind: RootKind
    hive: Hive
    path: str
    view: RegistryView
    description: str = ""

    def display_path(self) -> str:
        return format_registry_path(self.hive, self.path)


def format_registry_path(hive: Hive, path: str) -> str:
    path = (path or "").strip("\\")
    return f"{hive.value}\\{path}" if path else hive.value


def split_registry_path(full_path: str) -> Tuple[Hive, str]:
    text = (full_path or "").strip().strip("\\")
    head, _sep, rest = text.partition("\\")
    hive = _HIVE_ALIASES.get(head.upper())
    if hive is None:
        raise ValueError(f"Unknown registry hive in path: {full_path!r}")
    return hive, rest


def filetime_to_datetime(value: int) -> Optional[_dt.datetime]:
    if not value or value < 0:
        return None
    try:
        return _FILETIME_EPOCH + _dt.timedelta(microseconds=value // 10)
    except OverflowError:
        return None


class RegistryKey(ABC):
    """An open key. Closing it releases the underlying handle."""

    path: str

    @abstractmethod
    def subkey_names(self) -> List[str]:
        ...

    @abstractmethod
    def open_subkey(self, name: str) -> "RegistryKey":
        ...

    @abstractmethod
    def value(self, name: str) -> Any:
        """Return the value data, or None when the value does not exist."""

    @abstractmethod
    def value_names(self) -> List[str]:
        ...

    @abstractmethod
    def last_write_time(self) -> Optional[_dt.datetime]:
        ...

    def values(self, names: Optional[List[str]] = None) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for name in names if names is not None else self.value_names():
            data = self.value(name)
            if data is not None:
                result[name] = data
        return result

    def close(self) -> None:
        pass

    def __enter__(self) -> "RegistryKey":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class RegistryStore(ABC):
    @abstractmethod
    def open_key(self, hive: Hive, path: str, view: RegistryView = RegistryView.DEFAULT) -> RegistryKey:
        """Open ``hive\\path`` for reading or raise ``RegistryError``."""

    @abstractmethod
    def delete_key_tree(self, hive: Hive, path: str, view: RegistryView = RegistryView.DEFAULT) -> None:
        ...

    @abstractmethod
    def delete_value(self, hive: Hive, path: str, name: str, view: RegistryView = RegistryView.DEFAULT) -> None:
        ...

    def key_exists(self, hive: Hive, path: str, view: RegistryView = RegistryView.DEFAULT) -> bool:
        try:
            with self.open_key(hive, path, view):
                return True
        except RegistryError:
            return False


# --- winreg backend --------------------------------------------------------


def _view_flag(view: RegistryView) -> int:
    if view == RegistryView.KEY_64:
        return winreg.KEY_WOW64_64KEY
    if view == RegistryView.KEY_32:
        return winreg.KEY_WOW64_32KEY
    return 0


def _hive_handle(hive: Hive) -> int:
    return {
        Hive.HKLM: winreg.HKEY_LOCAL_MACHINE,
        Hive.HKCU: winreg.HKEY_CURRENT_USER,
        Hive.HKCR: winreg.HKEY_CLASSES_ROOT,
        Hive.HKU: winreg.HKEY_USERS,
    }[hive]


class WinRegistryKey(RegistryKey):
    def __init__(self, handle, path: str, view: RegistryView) -> None:
        self._handle = handle
        self.path = path
        self._view = view

    def _info(self) -> Tuple[int, int, int]:
        try:
            return winreg.QueryInfoKey(self._handle)
        except OSError:
            return (0, 0, 0)

    def subkey_names(self) -> List[str]:
        names: List[str] = []
        for idx in range(self._info()[0]):
            try:
                names.append(winreg.EnumKey(self._handle, idx))
            except OSError:
                continue
        return names

    def open_subkey(self, name: str) -> RegistryKey:
        access = winreg.KEY_READ | _view_flag(self._view)
        try:
            handle = winreg.OpenKey(self._handle, name, 0, access)
        except OSError as exc:
            raise RegistryError(f"{self.path}\\{name}", str(exc)) from exc
        return WinRegistryKey(handle, f"{self.path}\\{name}", self._view)

    def value(self, name: str) -> Any:
        try:
            data, _kind = winreg.QueryValueEx(self._handle, name)
        except OSError:
            return None
        return data

    def value_names(self) -> List[str]:
        names: List[str] = []
        for idx in range(self._info()[1]):
            try:
                names.append(winreg.EnumValue(self._handle, idx)[0])
            except OSError:
                continue
        return names

    def last_write_time(self) -> Optional[_dt.datetime]:
        return filetime_to_datetime(self._info()[2])

    def close(self) -> None:
        if self._handle is not None:
            self._handle.Close()
            self._handle = None


class WinRegistryStore(RegistryStore):
    def __init__(self) -> None:
        if winreg is None:
            raise RuntimeError("The Windows registry is only available on Windows")

    def open_key(self, hive: Hive, path: str, view: RegistryView = RegistryView.DEFAULT) -> RegistryKey:
        access = winreg.KEY_READ | _view_flag(view)
        try:
            handle = winreg.OpenKey(_hive_handle(hive), path, 0, access)
        except OSError as exc:
            raise RegistryError(format_registry_path(hive, path), str(exc)) from exc
        return WinRegistryKey(handle, format_registry_path(hive, path), view)

    def delete_key_tree(self, hive: Hive, path: str, view: RegistryView = RegistryView.DEFAULT) -> None:
        flag = _view_flag(view)
        access = winreg.KEY_ALL_ACCESS | flag
        try:
            with winreg.OpenKey(_hive_handle(hive), path, 0, access) as handle:
                children = [winreg.EnumKey(handle, idx) for idx in range(winreg.QueryInfoKey(handle)[0])]
            for child in children:
                self.delete_key_tree(hive, f"{path}\\{child}", view)
            if flag:
                winreg.DeleteKeyEx(_hive_handle(hive), path, flag, 0)
            else:
                winreg.DeleteKey(_hive_handle(hive), path)
        except OSError as exc:
            raise RegistryError(format_registry_path(hive, path), str(exc)) from exc
        log.debug("Deleted registry key %s", format_registry_path(hive, path))

    def delete_value(self, hive: Hive, path: str, name: str, view: RegistryView = RegistryView.DEFAULT) -> None:
        access = winreg.KEY_SET_VALUE | _view_flag(view)
        try:
            with winreg.OpenKey(_hive_handle(hive), path, 0, access) as handle:
                winreg.DeleteValue(handle, name)
        except OSError as exc:
            raise RegistryError(format_registry_path(hive, path), str(exc)) from exc
        log.debug("Deleted value %s of %s", name, format_registry_path(hive, path))


# --- in-memory backend -----------------------------------------------------


class _Node:
    def __init__(self, name: str) -> None:
        self.name = name
        self.values: Dict[str, Tuple[str, Any]] = {}
        self.children: Dict[str, "_Node"] = {}
        self.last_write: Optional[_dt.datetime] = None

    def child(self, name: str) -> Optional["_Node"]:
        return self.children.get(name.casefold())


class MemoryRegistryKey(RegistryKey):
    def __init__(self, store: "MemoryRegistryStore", node: _Node, path: str) -> None:
        self._store = store
        self._node = node
        self.path = path

    def subkey_names(self) -> List[str]:
        with self._store._lock:
            return [child.name for child in self._node.children.values()]

    def open_subkey(self, name: str) -> RegistryKey:
        with self._store._lock:
            node = self._node.child(name)
        if node is None:
            raise RegistryError(f"{self.path}\\{name}", "not found")
        return MemoryRegistryKey(self._store, node, f"{self.path}\\{node.name}")

    def value(self, name: str) -> Any:
        with self._store._lock:
            entry = self._node.values.get(name.casefold())
        return entry[1] if entry else None

    def value_names(self) -> List[str]:
        with self._store._lock:
            return [stored_name for stored_name, _data in self._node.values.values()]

    def last_write_time(self) -> Optional[_dt.datetime]:
        return self._node.last_write


class MemoryRegistryStore(RegistryStore):
    """Registry tree held in memory; lookups are case-insensitive like the real one."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hives: Dict[Hive, _Node] = {hive: _Node(hive.value) for hive in Hive}

    @classmethod
    def from_dict(cls, keys: Mapping[str, Mapping[str, Any]]) -> "MemoryRegistryStore":
        """Build a store from ``{"HKEY_...\\Path": {"ValueName": data}}``."""
        store = cls()
        for full_path, values in keys.items():
            hive, path = split_registry_path(full_path)
            store.add_key(hive, path, values)
        return store

    def add_key(
        self,
        hive: Hive,
        path: str,
        values: Optional[Mapping[str, Any]] = None,
        last_write: Optional[_dt.datetime] = None,
    ) -> None:
        with self._lock:
            node = self._hives[hive]
            for part in _parts(path):
                child = node.child(part)
                if child is None:
                    child = _Node(part)
                    node.children[part.casefold()] = child
                node = child
            for name, data in (values or {}).items():
                node.values[name.casefold()] = (name, data)
            if last_write is not None:
                node.last_write = last_write

    def _find(self, hive: Hive, path: str) -> Optional[_Node]:
        node: Optional[_Node] = self._hives[hive]
        for part in _parts(path):
            node = node.child(part) if node else None
            if node is None:
                return None
        return node

    def open_key(self, hive: Hive, path: str, view: RegistryView = RegistryView.DEFAULT) -> RegistryKey:
        with self._lock:
            node = self._find(hive, path)
        if node is None:
            raise RegistryError(format_registry_path(hive, path), "not found")
        return MemoryRegistryKey(self, node, format_registry_path(hive, path))

    def delete_key_tree(self, hive: Hive, path: str, view: RegistryView = RegistryView.DEFAULT) -> None:
        parts = _parts(path)
        if not parts:
            raise RegistryError(format_registry_path(hive, path), "refusing to delete a hive")
        with self._lock:
            parent = self._find(hive, "\\".join(parts[:-1]))
            if parent is None or parent.child(parts[-1]) is None:
                raise RegistryError(format_registry_path(hive, path), "not found")
            del parent.children[parts[-1].casefold()]

    def delete_value(self, hive: Hive, path: str, name: str, view: RegistryView = RegistryView.DEFAULT) -> None:
        with self._lock:
            node = self._find(hive, path)
            if node is None or name.casefold() not in node.values:
                raise RegistryError(format_registry_path(hive, path), f"value {name!r} not found")
            del node.values[name.casefold()]


def _parts(path: str) -> List[str]:
    return [part for part in (path or "").split("\\") if part]


def default_store() -> RegistryStore:
    if winreg is None:
        raise RuntimeError("No registry available on this platform")
    return WinRegistryStore()
