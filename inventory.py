import logging
import time
from typing import List, Optional

from cache import InventoryCache
from errors import DataNotFound, RegistryError
from identity import IdentityResolver
from models import ProgramRecord
from registry import RegistryView, split_registry_path
from scanner import InventoryScanner

log = logging.getLogger(__name__)

DEFAULT_INVENTORY_CAPACITY = 5


class ProgramInventory:
    """Cached, de-duplicated view over an ``InventoryScanner``."""

    def __init__(
        self,
        scanner: InventoryScanner,
        cache: Optional[InventoryCache] = None,
        resolver: Optional[IdentityResolver] = None,
    ) -> None:
        self.scanner = scanner
        self.cache = cache or InventoryCache(max_capacity=DEFAULT_INVENTORY_CAPACITY)
        self.resolver = resolver or IdentityResolver()

    def get_or_scan(self, include_system_components: bool = False) -> List[ProgramRecord]:
        try:
            return self.cache.get_cached_programs(include_system_components)
        except DataNotFound:
            log.debug("Inventory cache miss; scanning")
        return self.refresh(include_system_components)

    def refresh(self, include_system_components: bool = False) -> List[ProgramRecord]:
        started = time.monotonic()
        records = self.scanner.scan(include_system_components)
        resolved = self.resolver.resolve(record for record in records if record.is_valid())
        duration_ms = int((time.monotonic() - started) * 1000)
        self.cache.update_cache(include_system_components, resolved, duration_ms)
        log.info("Inventory holds %d programs (%d before de-duplication)", len(resolved), len(records))
        return list(resolved)

    def find_program(self, name: str, include_system_components: bool = False) -> ProgramRecord:
        wanted = (name or "").strip().casefold()
        if wanted:
            for record in self.get_or_scan(include_system_components):
                if wanted in (record.name.strip().casefold(), record.display_name.strip().casefold()):
                    return record
        raise DataNotFound(f"Program not found: {name}")

    def search(self, keyword: str, include_system_components: bool = False) -> List[ProgramRecord]:
        needle = (keyword or "").strip().casefold()
        programs = self.get_or_scan(include_system_components)
        if not needle:
            return programs
        return [
            record
            for record in programs
            if needle in record.label().casefold() or needle in record.publisher.casefold()
        ]

    def is_still_installed(self, record: ProgramRecord) -> bool:
        if not record.registry_key:
            return False
        try:
            hive, path = split_registry_path(record.registry_key)
        except ValueError:
            return False
        view = next((root.view for root in self.scanner.roots if root.kind == record.root_kind), None)
        if view is None and self.scanner.package_root is not None:
            view = self.scanner.package_root.view
        view = view or RegistryView.DEFAULT
        try:
            with self.scanner.store.open_key(hive, path, view) as _key:
                return True
        except RegistryError:
            return False
