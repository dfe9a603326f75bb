"""Command line front end: list installed programs and find leftovers."""

import json
import logging
from typing import List, Optional

import click

from cache import InventoryCache
from config import RemnantConfig, load_config
from errors import DataNotFound, RemnantError
from import_export import export_inventory, export_residual_report
from inventory import ProgramInventory
from models import ProgramRecord, ResidualGroup, RiskTier, kind_label, risk_label
from registry import RegistryStore, default_store
from residual_scanner import ResidualScanner
from scanner import InventoryScanner
from utils import format_size

log = logging.getLogger(__name__)

RISK_COLORS = {
    RiskTier.SAFE: "green",
    RiskTier.LOW: "green",
    RiskTier.MEDIUM: "yellow",
    RiskTier.HIGH: "red",
}


def _setup_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _store(ctx: click.Context) -> RegistryStore:
    store = ctx.obj.get("store")
    if store is not None:
        return store
    try:
        store = default_store()
    except RuntimeError as exc:
        raise click.ClickException(f"{exc}. remnant reads the Windows registry and must run on Windows.")
    ctx.obj["store"] = store
    return store


def _config(ctx: click.Context) -> RemnantConfig:
    config = ctx.obj.get("config")
    if config is None:
        config = load_config(ctx.obj.get("config_path"))
        ctx.obj["config"] = config
    return config


def _inventory(ctx: click.Context) -> ProgramInventory:
    config = _config(ctx)
    scanner = InventoryScanner(
        _store(ctx),
        size_limits=config.size_limits(),
        scan_timeout=config.scan_timeout,
        strict_system_filter=config.strict_system_filter,
    )
    cache = InventoryCache(max_age=config.cache_max_age, max_capacity=config.cache_capacity)
    return ProgramInventory(scanner, cache)


@click.group()
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug)")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="Path to config.json")
@click.pass_context
def main(ctx: click.Context, verbose: int, config_path: Optional[str]) -> None:
    """remnant: installed software inventory and uninstall leftovers."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    if config_path:
        ctx.obj["config_path"] = config_path


# ── list ─────────────────────────────────────────────────────────────────

@main.command("list")
@click.option("--system", "include_system", is_flag=True, help="Include system components and packaged apps")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--export", "export_path", default=None, type=click.Path(dir_okay=False),
              help="Write the inventory to a .csv, .json or .xlsx file")
@click.pass_context
def list_cmd(ctx: click.Context, include_system: bool, as_json: bool, export_path: Optional[str]) -> None:
    """List installed programs."""
    programs = _inventory(ctx).get_or_scan(include_system)
    programs = sorted(programs, key=lambda record: record.label().casefold())

    if export_path:
        try:
            export_inventory(export_path, programs)
        except (OSError, ValueError, RuntimeError) as exc:
            raise click.ClickException(f"Export failed: {exc}")
        if not as_json:
            click.echo(f"Exported {len(programs)} programs to {export_path}")

    if as_json:
        click.echo(json.dumps([record.to_dict() for record in programs], indent=2))
        return

    if not programs:
        click.echo("No programs found.")
        return

    for record in programs:
        version = click.style(record.version, fg="bright_black") if record.version else ""
        size = format_size(record.estimated_size) if record.estimated_size else "?"
        click.echo(f"  {click.style(record.label(), bold=True):50s} {version:20s} {size:>10s}  {record.publisher}")
    click.echo(f"\n{len(programs)} programs")


# ── residuals ────────────────────────────────────────────────────────────

def _target_program(ctx: click.Context, name: str) -> ProgramRecord:
    try:
        return _inventory(ctx).find_program(name, include_system_components=True)
    except DataNotFound:
        log.info("%s is not installed; scanning by name only", name)
        return ProgramRecord(name=name, display_name=name)


def _print_groups(groups: List[ResidualGroup]) -> None:
    for group in groups:
        click.echo(
            f"\n  {click.style(group.name, fg='blue', bold=True)} "
            f"({len(group.items)} items, {format_size(group.total_size)})"
        )
        for item in group.items:
            risk = click.style(f"[{risk_label(item.risk)}]", fg=RISK_COLORS[item.risk])
            click.echo(f"    {risk:24s} {kind_label(item.kind):16s} {item.path}")


@main.command()
@click.argument("name")
@click.option("--deep", is_flag=True, help="Recurse into matching folders")
@click.option("--services", is_flag=True, help="Also look at Windows services")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--delete", "delete", is_flag=True, help="Delete what was found")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@click.option("--allow-high-risk", is_flag=True,
              help="Also delete high risk items (Start menu shortcuts, Run entries, services); "
                   "otherwise they are skipped, or asked about when prompting")
@click.option("--export", "export_path", default=None, type=click.Path(dir_okay=False),
              help="Write the report to a .csv, .json or .xlsx file")
@click.pass_context
def residuals(
    ctx: click.Context,
    name: str,
    deep: bool,
    services: bool,
    as_json: bool,
    delete: bool,
    yes: bool,
    allow_high_risk: bool,
    export_path: Optional[str],
) -> None:
    """Find leftovers of program NAME."""
    config = _config(ctx)
    options = config.residual_options()
    options.deep_scan = options.deep_scan or deep
    options.scan_services = options.scan_services or services
    program = _target_program(ctx, name)
    scanner = ResidualScanner(_store(ctx), options, file_roots=config.file_roots())
    groups = scanner.scan_sync(program)
    items = [item for group in groups for item in group.items]

    if export_path:
        try:
            export_residual_report(export_path, program, groups)
        except (OSError, ValueError, RuntimeError) as exc:
            raise click.ClickException(f"Export failed: {exc}")
        if not as_json:
            click.echo(f"Exported {len(items)} items to {export_path}")

    if not delete:
        if as_json:
            click.echo(json.dumps({"program": program.label(), "groups": [g.to_dict() for g in groups]}, indent=2))
        elif not groups:
            click.echo(f"No leftovers found for {program.label()}.")
        else:
            _print_groups(groups)
            total = sum(group.total_size for group in groups)
            click.echo(f"\n{len(items)} items, {click.style(format_size(total), bold=True)}")
        return

    if not items:
        if as_json:
            click.echo(json.dumps({"status": "nothing_to_delete", "deleted": [], "failed": []}))
        else:
            click.echo(f"No leftovers found for {program.label()}.")
        return

    if not as_json:
        _print_groups(groups)
    prompting = not yes and not as_json
    if prompting:
        if not click.confirm(f"\nDelete {len(items)} items?", default=False):
            click.echo("Aborted.")
            return

    high_risk = sum(1 for item in items if item.risk == RiskTier.HIGH)
    if high_risk and not allow_high_risk:
        if prompting:
            allow_high_risk = click.confirm(f"{high_risk} of them are high risk. Delete those too?", default=False)
        if not allow_high_risk:
            items = [item.with_selection(item.risk != RiskTier.HIGH) for item in items]
            if not as_json:
                click.echo(f"Skipping {high_risk} high risk items (use --allow-high-risk to include them).")

    def on_progress(pct: int, path: str, success: Optional[bool]) -> None:
        if as_json or success is None:
            return
        mark = click.style("✓", fg="green") if success else click.style("✗", fg="red")
        click.echo(f"  {mark} {pct:3d}% {path}")

    try:
        report = scanner.delete_residual_items(items, on_progress=on_progress, allow_high_risk=allow_high_risk)
    except RemnantError as exc:
        raise click.ClickException(str(exc))

    if as_json:
        click.echo(json.dumps({
            "status": "done" if report.success else "partial",
            "freed_bytes": report.freed_bytes,
            "skipped": report.skipped,
            "deleted": [item.path for item in report.deleted],
            "failed": [{"path": item.path, "error": error} for item, error in report.failed],
        }, indent=2))
    else:
        click.echo(
            f"\nDeleted {len(report.deleted)} items, freed {format_size(report.freed_bytes)}; "
            f"{len(report.failed)} failed."
        )
    if not report.success:
        ctx.exit(1)


# ── cache-stats ──────────────────────────────────────────────────────────

@main.command("cache-stats")
@click.option("--system", "include_system", is_flag=True, help="Include system components and packaged apps")
@click.pass_context
def cache_stats(ctx: click.Context, include_system: bool) -> None:
    """Scan once, read back from the cache and show cache statistics."""
    inventory = _inventory(ctx)
    inventory.get_or_scan(include_system)
    inventory.get_or_scan(include_system)
    stats = inventory.cache.stats()
    click.echo(f"  Entries:   {stats.entries}/{stats.capacity}")
    click.echo(f"  Max age:   {stats.max_age:.0f}s")
    click.echo(f"  Hits:      {stats.hits}")
    click.echo(f"  Misses:    {stats.misses}")
    click.echo(f"  Updates:   {stats.updates}")
    click.echo(f"  Hit rate:  {stats.hit_rate:.0%}")
    for detail in stats.details:
        label = "with system components" if detail.include_system_components else "without system components"
        click.echo(
            f"    {label}: {detail.program_count} programs, "
            f"scanned in {detail.scan_duration_ms} ms, age {detail.age:.1f}s"
        )


if __name__ == "__main__":
    main()
