import csv
import datetime as _dt
import json
import os
from typing import Dict, List, Optional

from models import ProgramRecord, ResidualGroup, RootKind, kind_label, risk_label

try:
    from openpyxl import Workbook
except ImportError:  # pragma: no cover - optional dependency
    Workbook = None
from utils import normalize_date


CSV_HEADERS = [
    "Name",
    "Version",
    "Publisher",
    "InstallDate",
    "SizeBytes",
    "InstallLocation",
    "UninstallCommand",
    "RegistryKey",
    "Source",
    "SystemComponent",
]

RESIDUAL_HEADERS = [
    "Group",
    "Name",
    "Path",
    "Type",
    "SizeBytes",
    "LastModified",
    "Risk",
    "Selected",
]


def _program_row(record: ProgramRecord) -> List[object]:
    return [
        record.label(),
        record.version,
        record.publisher,
        record.install_date,
        record.estimated_size,
        record.install_location,
        record.uninstall_command,
        record.registry_key,
        record.root_kind.value,
        "yes" if record.is_system_component else "",
    ]


def _residual_rows(groups: List[ResidualGroup]) -> List[List[object]]:
    rows: List[List[object]] = []
    for group in groups:
        for item in group.items:
            rows.append([
                group.name,
                item.name,
                item.path,
                kind_label(item.kind),
                item.size,
                item.last_modified,
                risk_label(item.risk),
                "yes" if item.selected else "",
            ])
    return rows


def export_csv(file_path: str, records: List[ProgramRecord]) -> None:
    with open(file_path, "w", newline="", encoding="utf-8") as csv_file:
        writer = csv.writer(csv_file)
        writer.writerow(CSV_HEADERS)
        for record in records:
            writer.writerow(_program_row(record))


def export_residuals_csv(file_path: str, groups: List[ResidualGroup]) -> None:
    with open(file_path, "w", newline="", encoding="utf-8") as csv_file:
        writer = csv.writer(csv_file)
        writer.writerow(RESIDUAL_HEADERS)
        writer.writerows(_residual_rows(groups))


def export_xlsx(file_path: str, records: List[ProgramRecord], groups: Optional[List[ResidualGroup]] = None) -> None:
    if Workbook is None:
        raise RuntimeError("openpyxl is required for XLSX export. Install it with: pip install openpyxl")
    book = Workbook(write_only=True)
    programs_sheet = book.create_sheet("Programs")
    programs_sheet.append(CSV_HEADERS)
    for record in records:
        programs_sheet.append(_program_row(record))

    if groups:
        residual_sheet = book.create_sheet("Residuals")
        residual_sheet.append(RESIDUAL_HEADERS)
        for row in _residual_rows(groups):
            residual_sheet.append(row)
    book.save(file_path)


def export_inventory(file_path: str, records: List[ProgramRecord]) -> None:
    ext = os.path.splitext(file_path)[1].lower()
    if ext == ".json":
        save_json(file_path, records)
    elif ext == ".xlsx":
        export_xlsx(file_path, records)
    elif ext == ".csv":
        export_csv(file_path, records)
    else:
        raise ValueError(f"Unsupported export format: {ext or file_path}")


def export_residual_report(file_path: str, program: ProgramRecord, groups: List[ResidualGroup]) -> None:
    ext = os.path.splitext(file_path)[1].lower()
    if ext == ".json":
        save_residuals_json(file_path, program, groups)
    elif ext == ".xlsx":
        export_xlsx(file_path, [program], groups)
    elif ext == ".csv":
        export_residuals_csv(file_path, groups)
    else:
        raise ValueError(f"Unsupported export format: {ext or file_path}")


def import_csv(file_path: str) -> List[ProgramRecord]:
    with open(file_path, "r", newline="", encoding="utf-8") as csv_file:
        reader = csv.DictReader(csv_file)
        if not reader.fieldnames:
            raise ValueError("CSV file has no headers.")
        return _records_from_rows(reader)


def save_json(file_path: str, records: List[ProgramRecord]) -> None:
    payload = {
        "exported_at": _dt.datetime.now().isoformat(timespec="seconds"),
        "programs": [record.to_dict() for record in records],
    }
    with open(file_path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)


def save_residuals_json(file_path: str, program: ProgramRecord, groups: List[ResidualGroup]) -> None:
    payload = {
        "exported_at": _dt.datetime.now().isoformat(timespec="seconds"),
        "program": program.to_dict(),
        "groups": [group.to_dict() for group in groups],
    }
    with open(file_path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)


def load_json(file_path: str) -> List[ProgramRecord]:
    with open(file_path, "r", encoding="utf-8") as fh:
        data = json.load(fh)
    items = data.get("programs") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError("JSON file does not contain a program list.")
    return _records_from_json(items)


def _root_kind(raw: object) -> RootKind:
    try:
        return RootKind(str(raw))
    except ValueError:
        return RootKind.MACHINE_64


def _size(raw: object) -> int:
    if isinstance(raw, bool):
        return 0
    try:
        return max(int(raw), 0)
    except (TypeError, ValueError):
        return 0


def _records_from_rows(reader: csv.DictReader) -> List[ProgramRecord]:
    header_map: Dict[str, str] = {}
    for header in reader.fieldnames or []:
        header_map[_normalize_header(header)] = header

    def get_value(row: Dict[str, str], key: str) -> str:
        header = header_map.get(key, "")
        if not header:
            return ""
        return str(row.get(header, "") or "").strip()

    records: List[ProgramRecord] = []
    for row in reader:
        name = get_value(row, "name")
        if not name:
            continue
        records.append(
            ProgramRecord(
                name=name,
                display_name=name,
                version=get_value(row, "version"),
                publisher=get_value(row, "publisher"),
                install_date=normalize_date(get_value(row, "installdate")),
                install_location=get_value(row, "installlocation"),
                uninstall_command=get_value(row, "uninstallcommand"),
                registry_key=get_value(row, "registrykey"),
                root_kind=_root_kind(get_value(row, "source")),
                estimated_size=_size(get_value(row, "sizebytes")),
                is_system_component=get_value(row, "systemcomponent").casefold() in ("yes", "true", "1"),
            )
        )
    return records


def _records_from_json(items: List[Dict[str, object]]) -> List[ProgramRecord]:
    records: List[ProgramRecord] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        display_name = str(item.get("display_name") or "").strip()
        if not name and not display_name:
            continue
        records.append(
            ProgramRecord(
                name=name,
                display_name=display_name,
                version=str(item.get("version") or "").strip(),
                publisher=str(item.get("publisher") or "").strip(),
                install_date=normalize_date(str(item.get("install_date") or "").strip()),
                install_location=str(item.get("install_location") or "").strip(),
                icon_path=str(item.get("icon_path") or "").strip(),
                uninstall_command=str(item.get("uninstall_command") or "").strip(),
                registry_key=str(item.get("registry_key") or "").strip(),
                root_kind=_root_kind(item.get("root_kind")),
                estimated_size=_size(item.get("estimated_size")),
                is_system_component=bool(item.get("is_system_component", False)),
            )
        )
    return records


def _normalize_header(header: str) -> str:
    return "".join(ch for ch in header.lower() if ch.isalnum())
