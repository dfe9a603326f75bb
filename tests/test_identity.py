from identity import IdentityResolver, resolve, same_product, strip_arch
from models import ProgramRecord


def _record(name: str, version: str = "1.0", publisher: str = "Acme", location: str = "") -> ProgramRecord:
    return ProgramRecord(
        name=name,
        display_name=name,
        version=version,
        publisher=publisher,
        install_location=location,
        uninstall_command="uninstall.exe",
    )


def test_strip_arch() -> None:
    assert strip_arch("Tool (x64)") == "tool"
    assert strip_arch("Tool 32-bit") == "tool"
    assert strip_arch("Toolbox") == "toolbox"


def test_architecture_variants_merge() -> None:
    assert same_product(_record("Tool (x64)"), _record("Tool"))
    assert same_product(_record("TOOL"), _record("tool"))


def test_other_version_is_a_different_product() -> None:
    assert not same_product(_record("Tool", "1.0"), _record("Tool", "2.0"))
    assert not same_product(_record("Tool", publisher="Acme"), _record("Tool", publisher="Other"))


def test_shared_install_location_merges() -> None:
    a = _record("Tool Core", "1.0", location="C:\\Apps\\Tool\\")
    b = _record("Tool Helper", "3.1", location='"c:/apps/tool"')
    assert same_product(a, b)
    assert not same_product(_record("A", location=""), _record("B", location=""))


def test_resolve_keeps_first_occurrence_in_order() -> None:
    records = [
        _record("Zeta"),
        _record("Tool (x64)"),
        _record("Alpha"),
        _record("Tool"),
        _record("Tool", "2.0"),
    ]
    result = resolve(records)
    assert [record.name for record in result] == ["Zeta", "Tool (x64)", "Alpha", "Tool"]
    assert result[3].version == "2.0"
    assert IdentityResolver().resolve(records) == result
    assert resolve([]) == []
