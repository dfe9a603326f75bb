from typing import Iterable, List

from models import ProgramRecord

ARCH_SUFFIXES = (" (x64)", " (x86)", " (64-bit)", " (32-bit)", " x64", " x86", " 64-bit", " 32-bit")


def strip_arch(label: str) -> str:
    text = (label or "").strip().casefold()
    for suffix in ARCH_SUFFIXES:
        if text.endswith(suffix):
            return text[: -len(suffix)].rstrip()
    return text


def _location_key(path: str) -> str:
    return (path or "").strip().strip('"').replace("/", "\\").rstrip("\\").casefold()


def same_product(a: ProgramRecord, b: ProgramRecord) -> bool:
    # Name alone never merges: two versions side by side are two products.
    same_release = a.version == b.version and a.publisher == b.publisher
    if same_release and a.name_key() == b.name_key():
        return True
    if same_release and strip_arch(a.label()) == strip_arch(b.label()):
        return True
    location = _location_key(a.install_location)
    return bool(location) and location == _location_key(b.install_location)


def resolve(records: Iterable[ProgramRecord]) -> List[ProgramRecord]:
    """Drop near-duplicates, keeping the first occurrence in input order."""
    kept: List[ProgramRecord] = []
    for record in records:
        if any(same_product(record, existing) for existing in kept):
            continue
        kept.append(record)
    return kept


class IdentityResolver:
    def resolve(self, records: Iterable[ProgramRecord]) -> List[ProgramRecord]:
        return resolve(records)

    def same_product(self, a: ProgramRecord, b: ProgramRecord) -> bool:
        return same_product(a, b)
