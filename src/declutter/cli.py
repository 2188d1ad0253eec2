"""Command line interface for the Declutter project."""

from __future__ import annotations

import difflib
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

import click
import yaml
from pydantic import BaseModel, ValidationError
from rich.console import Console
from rich.syntax import Syntax
from rich.table import Table

from declutter.conditions import ConditionSyntaxError, evaluate, parse, serialize, validate
from declutter.config import ConfigError, ConfigManager, DeclutterConfig, resolve_with_precedence
from declutter.errors import (
    DeletionNotFoundError,
    FileOperationError,
    FolderNotFoundError,
    RuleNotFoundError,
    ServiceError,
)
from declutter.logging_setup import configure_logging
from declutter.rules import DeleteAction, MoveAction, Rule, WatchedFolder
from declutter.service import DeclutterService
from declutter.store import StoreError
from declutter.trash import NotFoundError, UndoError

console = Console()


def _handle_cli_error(
    message: str,
    *,
    code: str,
    json_output: bool,
    details: Any | None = None,
    original: Exception | None = None,
) -> None:
    """Emit a standardized error and terminate the command appropriately.

    Args:
        message: Human-readable error message.
        code: Machine-readable error identifier.
        json_output: Indicates whether JSON mode is active.
        details: Optional structured details to include in the payload.
        original: Original exception for chaining when not using JSON.

    Raises:
        SystemExit: When emitting JSON output to terminate the command.
        click.ClickException: For non-JSON flows to surface the error.
    """

    if json_output:
        payload: dict[str, Any] = {"error": {"code": code, "message": message}}
        if details is not None:
            payload["error"]["details"] = details
        console.print_json(data=payload)
        raise SystemExit(1)

    if isinstance(original, click.ClickException):
        raise original

    raise click.ClickException(message) from original


@contextmanager
def _cli_errors(json_output: bool) -> Iterator[None]:
    """Translate engine exceptions into CLI errors."""
    try:
        yield
    except ConditionSyntaxError as exc:
        _handle_cli_error(
            str(exc),
            code="condition_syntax_error",
            json_output=json_output,
            details={"position": exc.position},
            original=exc,
        )
    except ConfigError as exc:
        _handle_cli_error(str(exc), code="config_error", json_output=json_output, original=exc)
    except (FolderNotFoundError, RuleNotFoundError, DeletionNotFoundError, NotFoundError) as exc:
        _handle_cli_error(str(exc), code="not_found", json_output=json_output, original=exc)
    except UndoError as exc:
        _handle_cli_error(str(exc), code="undo_error", json_output=json_output, original=exc)
    except ServiceError as exc:
        _handle_cli_error(str(exc), code="invalid_request", json_output=json_output, original=exc)
    except FileOperationError as exc:
        _handle_cli_error(
            str(exc), code="file_operation_error", json_output=json_output, original=exc
        )
    except StoreError as exc:
        _handle_cli_error(str(exc), code="store_error", json_output=json_output, original=exc)
    except ValidationError as exc:
        _handle_cli_error(
            str(exc),
            code="validation_error",
            json_output=json_output,
            details=[
                {"loc": [str(part) for part in error["loc"]], "msg": error["msg"]}
                for error in exc.errors()
            ],
            original=exc,
        )


def _emit_message(message: Any, *, mode: str, quiet: bool, summary_only: bool) -> None:
    """Conditionally print CLI output according to quiet/summary settings.

    Args:
        message: Renderable or string to emit.
        mode: Output mode identifier (`detail`, `summary`, `warning`, or `error`).
        quiet: Whether quiet mode is active.
        summary_only: Whether only summary lines should be emitted.
    """

    if quiet and mode != "error":
        return

    important_modes = {"summary", "warning", "error"}
    if summary_only and mode not in important_modes:
        return

    console.print(message)


def _format_summary_line(command: str, target: Path | str, metrics: dict[str, Any]) -> str:
    """Return a consistent summary line for CLI commands.

    Args:
        command: Command name to include in the summary.
        target: Folder or scope the command applied to.
        metrics: Ordered mapping of metric names to values.

    Returns:
        str: Rich-formatted summary string.
    """

    parts = ", ".join(f"{key}={value}" for key, value in metrics.items())
    return f"[green]{command} summary for {target}: {parts}.[/green]"


def _assign_nested(target: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a nested value within a dictionary for a dotted path.

    Args:
        target: Mapping to mutate in-place.
        path: Sequence of keys representing the nested location.
        value: Value to assign at the nested location.

    Raises:
        ConfigError: If a non-mapping value is encountered along the path.
    """

    node = target
    for segment in path[:-1]:
        existing = node.get(segment)
        if existing is None:
            existing = {}
            node[segment] = existing
        elif not isinstance(existing, dict):
            raise ConfigError(
                f"Cannot assign into '{segment}' because it is not a mapping in the config file."
            )
        node = existing
    node[path[-1]] = value


def _open_service() -> DeclutterService:
    manager = ConfigManager()
    manager.ensure_exists()
    return DeclutterService(manager)


def _dump(items: Iterable[BaseModel]) -> list[dict[str, Any]]:
    return [item.model_dump(mode="json") for item in items]


def _format_time(value: Any) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _describe_action(rule: Rule) -> str:
    action = rule.action
    if isinstance(action, MoveAction):
        return f"move -> {action.destination}"
    if action.after_days == 0:
        return "delete"
    return f"delete after {action.after_days}d"


def _build_action(move_to: Optional[str], delete_after: Optional[int]) -> MoveAction | DeleteAction:
    if move_to is not None and delete_after is not None:
        raise click.UsageError("Use either --move-to or --delete-after, not both.")
    if move_to is not None:
        return MoveAction(destination=str(Path(move_to).expanduser().resolve()))
    if delete_after is not None:
        return DeleteAction(after_days=delete_after)
    raise click.UsageError("A rule needs an action: pass --move-to DIR or --delete-after DAYS.")


def _folders_table(folders: Iterable[WatchedFolder]) -> Table:
    table = Table(title="Watched folders")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Path")
    table.add_column("Enabled")
    table.add_column("Recursive")
    table.add_column("Rules", justify="right")
    table.add_column("Whitelist")
    for folder in folders:
        table.add_row(
            folder.id,
            folder.path,
            "yes" if folder.enabled else "no",
            "yes" if folder.recursive else "no",
            str(len(folder.rules)),
            ", ".join(folder.whitelist) or "-",
        )
    return table


def _rules_table(folder: WatchedFolder) -> Table:
    table = Table(title=f"Rules for {folder.path}")
    table.add_column("#", justify="right")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Condition")
    table.add_column("Action")
    table.add_column("Whitelist")
    for index, rule in enumerate(folder.rules, start=1):
        table.add_row(
            str(index),
            rule.id,
            rule.name,
            "yes" if rule.enabled else "no",
            rule.condition_text or "*",
            _describe_action(rule),
            ", ".join(rule.whitelist) or "-",
        )
    return table


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="declutter")
def cli() -> None:
    """Declutter keeps watched folders tidy with ordered move and delete rules."""


# ---------------------------------------------------------------------- #
# run / scan                                                             #
# ---------------------------------------------------------------------- #


@cli.command()
@click.option("--log-level", type=str, help="Override the configured logging level.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
def run(log_level: str | None, quiet: bool) -> None:
    """Scan all folders, then watch them and run scheduled deletions until interrupted."""
    with _cli_errors(False):
        service = _open_service()
        config = service.config()
        log_path = configure_logging(
            config.logging, service.data_dir / "logs", console=console, level_override=log_level
        )
        service.start()
        enabled = [folder.path for folder in config.folders if folder.enabled]
        _emit_message(
            f"[cyan]Watching {len(enabled)} folder(s); logging to {log_path}. "
            "Press Ctrl+C to stop.[/cyan]",
            mode="detail",
            quiet=quiet,
            summary_only=False,
        )
        try:
            while service.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            _emit_message(
                "[yellow]Stopped by user request.[/yellow]",
                mode="summary",
                quiet=quiet,
                summary_only=False,
            )
        finally:
            service.close()


@cli.command()
@click.argument("folder_id", required=False)
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
@click.option("--summary", "summary_mode", is_flag=True, help="Only emit summary lines.")
@click.option("--quiet", is_flag=True, help="Suppress non-error output.")
def scan(folder_id: str | None, json_output: bool, summary_mode: bool, quiet: bool) -> None:
    """Apply rules to existing files in FOLDER_ID (or every enabled folder)."""
    with _cli_errors(json_output), _open_service() as service:
        if folder_id is None:
            actions = service.scan_all()
            target = "all folders"
        else:
            actions = service.scan_folder(folder_id)
            target = service.get_folder(folder_id).path
        if json_output:
            console.print_json(data={"folder_id": folder_id, "actions": actions})
            return
        _emit_message(
            _format_summary_line("Scan", target, {"actions": actions}),
            mode="summary",
            quiet=quiet,
            summary_only=summary_mode,
        )


# ---------------------------------------------------------------------- #
# folders                                                                #
# ---------------------------------------------------------------------- #


@cli.group()
def folders() -> None:
    """Manage watched folders."""


@folders.command("list")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def folders_list(json_output: bool) -> None:
    """List watched folders."""
    with _cli_errors(json_output), _open_service() as service:
        items = service.list_folders()
        if json_output:
            console.print_json(data={"folders": _dump(items)})
            return
        if not items:
            console.print("[yellow]No folders are being watched.[/yellow]")
            return
        console.print(_folders_table(items))


@folders.command("add")
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=str))
@click.option("-r", "--recursive", is_flag=True, help="Include all subdirectories.")
@click.option("--whitelist", "patterns", multiple=True, help="Glob exempting files; repeatable.")
@click.option("--disabled", is_flag=True, help="Add the folder without watching it yet.")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def folders_add(
    path: str, recursive: bool, patterns: tuple[str, ...], disabled: bool, json_output: bool
) -> None:
    """Start watching PATH."""
    with _cli_errors(json_output), _open_service() as service:
        folder = service.add_folder(
            path, recursive=recursive, whitelist=patterns, enabled=not disabled
        )
        if json_output:
            console.print_json(data={"folder": folder.model_dump(mode="json")})
            return
        console.print(f"[green]Watching {folder.path} (id {folder.id}).[/green]")


@folders.command("remove")
@click.argument("folder_id")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def folders_remove(folder_id: str, json_output: bool) -> None:
    """Stop watching FOLDER_ID and forget its rules."""
    with _cli_errors(json_output), _open_service() as service:
        folder = service.remove_folder(folder_id)
        if json_output:
            console.print_json(data={"removed": folder.model_dump(mode="json")})
            return
        console.print(f"[green]Removed {folder.path}.[/green]")


@folders.command("enable")
@click.argument("folder_id")
def folders_enable(folder_id: str) -> None:
    """Resume watching FOLDER_ID."""
    with _cli_errors(False), _open_service() as service:
        folder = service.set_folder_enabled(folder_id, True)
        console.print(f"[green]Enabled {folder.path}.[/green]")


@folders.command("disable")
@click.argument("folder_id")
def folders_disable(folder_id: str) -> None:
    """Pause watching FOLDER_ID without losing its rules."""
    with _cli_errors(False), _open_service() as service:
        folder = service.set_folder_enabled(folder_id, False)
        console.print(f"[green]Disabled {folder.path}.[/green]")


@folders.command("recursive")
@click.argument("folder_id")
@click.option("--on/--off", "recursive", default=True, help="Include subdirectories.")
def folders_recursive(folder_id: str, recursive: bool) -> None:
    """Toggle whether FOLDER_ID includes subdirectories."""
    with _cli_errors(False), _open_service() as service:
        folder = service.set_folder_recursive(folder_id, recursive)
        state = "now" if folder.recursive else "no longer"
        console.print(f"[green]{folder.path} {state} includes subdirectories.[/green]")


@folders.command("whitelist")
@click.argument("folder_id")
@click.argument("patterns", nargs=-1)
@click.option("--clear", is_flag=True, help="Remove every whitelist pattern.")
def folders_whitelist(folder_id: str, patterns: tuple[str, ...], clear: bool) -> None:
    """Replace the folder-wide whitelist of FOLDER_ID with PATTERNS."""
    if not patterns and not clear:
        raise click.UsageError("Pass one or more PATTERNS, or --clear.")
    with _cli_errors(False), _open_service() as service:
        folder = service.set_folder_whitelist(folder_id, [] if clear else list(patterns))
        shown = ", ".join(folder.whitelist) or "(empty)"
        console.print(f"[green]Whitelist for {folder.path}: {shown}[/green]")


# ---------------------------------------------------------------------- #
# rules                                                                  #
# ---------------------------------------------------------------------- #


@cli.group()
def rules() -> None:
    """Manage the ordered rules of a folder."""


@rules.command("list")
@click.argument("folder_id")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def rules_list(folder_id: str, json_output: bool) -> None:
    """List the rules of FOLDER_ID in priority order."""
    with _cli_errors(json_output), _open_service() as service:
        folder = service.get_folder(folder_id)
        if json_output:
            console.print_json(data={"folder_id": folder.id, "rules": _dump(folder.rules)})
            return
        if not folder.rules:
            console.print(f"[yellow]{folder.path} has no rules.[/yellow]")
            return
        console.print(_rules_table(folder))


@rules.command("add")
@click.argument("folder_id")
@click.option("--name", required=True, help="Display name of the rule.")
@click.option("--condition", "condition_text", default="*", show_default=True, help="Condition.")
@click.option("--move-to", type=str, help="Move matching files into this directory.")
@click.option("--delete-after", type=click.IntRange(min=0), help="Delete after DAYS (0 = now).")
@click.option("--whitelist", "patterns", multiple=True, help="Glob exempting files; repeatable.")
@click.option("--match-subdirectories", is_flag=True, help="Match the folder-relative path.")
@click.option("--description", default="", help="Free-form notes.")
@click.option("--position", type=click.IntRange(min=1), help="1-based priority (default last).")
@click.option("--disabled", is_flag=True, help="Create the rule disabled.")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def rules_add(
    folder_id: str,
    name: str,
    condition_text: str,
    move_to: str | None,
    delete_after: int | None,
    patterns: tuple[str, ...],
    match_subdirectories: bool,
    description: str,
    position: int | None,
    disabled: bool,
    json_output: bool,
) -> None:
    """Add a rule to FOLDER_ID."""
    with _cli_errors(json_output):
        action = _build_action(move_to, delete_after)
        rule = Rule(
            name=name,
            description=description,
            enabled=not disabled,
            condition_text=condition_text,
            action=action,
            whitelist=list(patterns),
            match_subdirectories=match_subdirectories,
        )
        with _open_service() as service:
            rule = service.add_rule(
                folder_id, rule, position=position - 1 if position is not None else None
            )
        if json_output:
            console.print_json(data={"rule": rule.model_dump(mode="json")})
            return
        console.print(f"[green]Added rule {rule.name!r} (id {rule.id}): {rule.condition_text}[/green]")


@rules.command("update")
@click.argument("folder_id")
@click.argument("rule_id")
@click.option("--name", type=str, help="New display name.")
@click.option("--condition", "condition_text", type=str, help="New condition.")
@click.option("--move-to", type=str, help="Switch the action to a move into DIR.")
@click.option("--delete-after", type=click.IntRange(min=0), help="Switch the action to delete.")
@click.option("--whitelist", "patterns", multiple=True, help="Replace the rule whitelist.")
@click.option("--clear-whitelist", is_flag=True, help="Remove every rule whitelist pattern.")
@click.option(
    "--match-subdirectories/--match-names",
    "match_subdirectories",
    default=None,
    help="Match the folder-relative path or the bare name.",
)
@click.option("--enable/--disable", "enabled", default=None, help="Toggle the rule.")
@click.option("--description", type=str, help="New notes.")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def rules_update(
    folder_id: str,
    rule_id: str,
    name: str | None,
    condition_text: str | None,
    move_to: str | None,
    delete_after: int | None,
    patterns: tuple[str, ...],
    clear_whitelist: bool,
    match_subdirectories: bool | None,
    enabled: bool | None,
    description: str | None,
    json_output: bool,
) -> None:
    """Change fields of RULE_ID in FOLDER_ID."""
    changes: dict[str, Any] = {}
    if name is not None:
        changes["name"] = name
    if condition_text is not None:
        changes["condition_text"] = condition_text
    if move_to is not None or delete_after is not None:
        changes["action"] = _build_action(move_to, delete_after).model_dump()
    if patterns or clear_whitelist:
        changes["whitelist"] = [] if clear_whitelist else list(patterns)
    if match_subdirectories is not None:
        changes["match_subdirectories"] = match_subdirectories
    if enabled is not None:
        changes["enabled"] = enabled
    if description is not None:
        changes["description"] = description
    if not changes:
        raise click.UsageError("Nothing to update; pass at least one option.")

    with _cli_errors(json_output), _open_service() as service:
        rule = service.update_rule(folder_id, rule_id, **changes)
        if json_output:
            console.print_json(data={"rule": rule.model_dump(mode="json")})
            return
        console.print(f"[green]Updated rule {rule.name!r}.[/green]")


@rules.command("delete")
@click.argument("folder_id")
@click.argument("rule_id")
def rules_delete(folder_id: str, rule_id: str) -> None:
    """Remove RULE_ID from FOLDER_ID."""
    with _cli_errors(False), _open_service() as service:
        rule = service.delete_rule(folder_id, rule_id)
        console.print(f"[green]Deleted rule {rule.name!r}.[/green]")


@rules.command("reorder")
@click.argument("folder_id")
@click.argument("rule_ids", nargs=-1, required=True)
def rules_reorder(folder_id: str, rule_ids: tuple[str, ...]) -> None:
    """Set the priority of FOLDER_ID's rules to the order of RULE_IDS."""
    with _cli_errors(False), _open_service() as service:
        ordered = service.reorder_rules(folder_id, list(rule_ids))
        console.print(
            "[green]New order: " + ", ".join(rule.name for rule in ordered) + "[/green]"
        )


@rules.command("copy")
@click.argument("source_folder_id")
@click.argument("target_folder_id")
def rules_copy(source_folder_id: str, target_folder_id: str) -> None:
    """Append copies of every rule of SOURCE_FOLDER_ID to TARGET_FOLDER_ID."""
    with _cli_errors(False), _open_service() as service:
        copies = service.copy_rules(source_folder_id, target_folder_id)
        console.print(f"[green]Copied {len(copies)} rule(s).[/green]")


@rules.command("stats")
@click.argument("folder_id", required=False)
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def rules_stats(folder_id: str | None, json_output: bool) -> None:
    """Show last run and weekly run count per rule."""
    with _cli_errors(json_output), _open_service() as service:
        stats = service.get_rule_execution_stats(folder_id)
        if json_output:
            console.print_json(data={"stats": _dump(stats)})
            return
        if not stats:
            console.print("[yellow]No rule has run yet.[/yellow]")
            return
        table = Table(title="Rule execution (past 7 days)")
        table.add_column("Rule")
        table.add_column("Last run")
        table.add_column("Runs", justify="right")
        for item in stats:
            table.add_row(item.rule_name or item.rule_id, _format_time(item.last_run), str(item.runs_since))
        console.print(table)


# ---------------------------------------------------------------------- #
# condition                                                              #
# ---------------------------------------------------------------------- #


@cli.group()
def condition() -> None:
    """Parse, validate, and try out condition expressions."""


@condition.command("parse")
@click.argument("text")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def condition_parse(text: str, json_output: bool) -> None:
    """Show the canonical form and tree of TEXT."""
    with _cli_errors(json_output):
        tree = parse(text)
        canonical = serialize(tree)
        if json_output:
            console.print_json(data={"canonical": canonical, "tree": tree.model_dump(mode="json")})
            return
        console.print(f"[cyan]{canonical}[/cyan]")
        tree_yaml = yaml.safe_dump(tree.model_dump(mode="json"), sort_keys=False)
        console.print(Syntax(tree_yaml, "yaml", word_wrap=True))


@condition.command("validate")
@click.argument("text")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def condition_validate(text: str, json_output: bool) -> None:
    """Check TEXT for syntax errors."""
    with _cli_errors(json_output):
        validate(text)
        if json_output:
            console.print_json(data={"valid": True})
            return
        console.print("[green]Condition is valid.[/green]")


@condition.command("test")
@click.argument("text")
@click.argument("names", nargs=-1, required=True)
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def condition_test(text: str, names: tuple[str, ...], json_output: bool) -> None:
    """Evaluate TEXT against each sample file name in NAMES."""
    with _cli_errors(json_output):
        tree = parse(text)
        results = {name: evaluate(tree, name) for name in names}
        if json_output:
            console.print_json(data={"condition": serialize(tree), "results": results})
            return
        for name, matched in results.items():
            marker = "[green]match[/green]" if matched else "[red]no match[/red]"
            console.print(f"{marker}  {name}")


# ---------------------------------------------------------------------- #
# deletions                                                              #
# ---------------------------------------------------------------------- #


@cli.group()
def deletions() -> None:
    """Inspect and control scheduled deletions."""


@deletions.command("list")
@click.option("--folder", "folder_id", type=str, help="Limit to one folder.")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def deletions_list(folder_id: str | None, json_output: bool) -> None:
    """List files waiting for their deletion date."""
    with _cli_errors(json_output), _open_service() as service:
        entries = service.get_scheduled_deletions(folder_id)
        if json_output:
            console.print_json(data={"deletions": _dump(entries)})
            return
        if not entries:
            console.print("[yellow]No deletions are scheduled.[/yellow]")
            return
        table = Table(title="Scheduled deletions")
        table.add_column("ID", justify="right", style="cyan")
        table.add_column("File")
        table.add_column("Rule")
        table.add_column("Due")
        for entry in entries:
            table.add_row(str(entry.id), entry.path, entry.rule_name or "-", _format_time(entry.due_at))
        console.print(table)


@deletions.command("cancel")
@click.argument("entry_id", type=int)
def deletions_cancel(entry_id: int) -> None:
    """Keep the file scheduled under ENTRY_ID."""
    with _cli_errors(False), _open_service() as service:
        entry = service.cancel_scheduled_deletion(entry_id)
        console.print(f"[green]Cancelled deletion of {entry.path}.[/green]")


@deletions.command("run")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def deletions_run(json_output: bool) -> None:
    """Delete every file whose deletion date has passed."""
    with _cli_errors(json_output), _open_service() as service:
        deleted = service.run_deletions_now()
        if json_output:
            console.print_json(data={"deleted": deleted, "coalesced": deleted is None})
            return
        if deleted is None:
            console.print("[yellow]A deletion pass is already running.[/yellow]")
            return
        console.print(_format_summary_line("Deletion", "all folders", {"deleted": deleted}))


# ---------------------------------------------------------------------- #
# undo                                                                   #
# ---------------------------------------------------------------------- #


@cli.group()
def undo() -> None:
    """Restore safe-deleted files."""


@undo.command("list")
@click.option("--all", "include_inactive", is_flag=True, help="Include restored and purged entries.")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def undo_list(include_inactive: bool, json_output: bool) -> None:
    """List restorable deletions."""
    with _cli_errors(json_output), _open_service() as service:
        entries = service.list_undo(include_inactive=include_inactive)
        if json_output:
            console.print_json(data={"entries": _dump(entries)})
            return
        if not entries:
            console.print("[yellow]Nothing to undo.[/yellow]")
            return
        table = Table(title="Undo history")
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Original path")
        table.add_column("Rule")
        table.add_column("Deleted")
        table.add_column("Expires")
        table.add_column("State")
        for entry in entries:
            state = "restored" if entry.restored else "purged" if entry.purged_at else "staged"
            table.add_row(
                entry.id,
                entry.original_path,
                entry.rule_name or "-",
                _format_time(entry.created_at),
                _format_time(entry.expires_at),
                state,
            )
        console.print(table)


@undo.command("restore")
@click.argument("undo_id")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def undo_restore(undo_id: str, json_output: bool) -> None:
    """Move the file staged under UNDO_ID back to where it was."""
    with _cli_errors(json_output), _open_service() as service:
        entry = service.undo(undo_id)
        if json_output:
            console.print_json(data={"entry": entry.model_dump(mode="json")})
            return
        console.print(f"[green]Restored {entry.original_path}.[/green]")


# ---------------------------------------------------------------------- #
# log / storage                                                          #
# ---------------------------------------------------------------------- #


@cli.command("log")
@click.option("--limit", type=click.IntRange(min=1), default=50, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--folder", "folder_id", type=str, help="Limit to one folder.")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def log_command(limit: int, offset: int, folder_id: str | None, json_output: bool) -> None:
    """Show recent activity, newest first."""
    with _cli_errors(json_output), _open_service() as service:
        entries = service.get_activity_log(limit=limit, offset=offset, folder_id=folder_id)
        if json_output:
            console.print_json(data={"entries": _dump(entries)})
            return
        if not entries:
            console.print("[yellow]No activity recorded.[/yellow]")
            return
        table = Table(title="Activity")
        table.add_column("When")
        table.add_column("Action")
        table.add_column("File")
        table.add_column("Rule")
        table.add_column("Result")
        table.add_column("Detail")
        for entry in entries:
            result = "[green]ok[/green]" if entry.result == "success" else "[red]failed[/red]"
            table.add_row(
                _format_time(entry.timestamp),
                entry.action,
                entry.file_path,
                entry.rule_name or "-",
                result,
                entry.detail or entry.destination or "",
            )
        console.print(table)


@cli.group()
def storage() -> None:
    """Inspect and trim local storage."""


@storage.command("stats")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def storage_stats(json_output: bool) -> None:
    """Show database and trash staging usage."""
    with _cli_errors(json_output), _open_service() as service:
        stats = service.get_storage_stats()
        if json_output:
            console.print_json(data=stats.model_dump(mode="json"))
            return
        table = Table(title="Storage")
        table.add_column("Item")
        table.add_column("Value", justify="right")
        table.add_row("Database", stats.database_path)
        table.add_row("Database size", f"{stats.database_bytes / 1024:.1f} KiB")
        table.add_row("Trash staging", f"{stats.trash_files} file(s), {stats.trash_bytes / 1024:.1f} KiB")
        for name, count in stats.row_counts.items():
            table.add_row(name, str(count))
        console.print(table)


@storage.command("prune")
@click.option("--json", "json_output", is_flag=True, help="Emit JSON output.")
def storage_prune(json_output: bool) -> None:
    """Apply retention windows and the storage cap now."""
    with _cli_errors(json_output), _open_service() as service:
        report = service.run_maintenance()
        metrics = {
            "purged": report.purged,
            "activity_pruned": report.activity_pruned,
            "archived_undo_pruned": report.archived_undo_pruned,
            "index_dropped": report.index_dropped,
            "capped_rows": report.storage.total,
        }
        if json_output:
            console.print_json(data=metrics)
            return
        console.print(_format_summary_line("Prune", service.data_dir, metrics))


# ---------------------------------------------------------------------- #
# config                                                                 #
# ---------------------------------------------------------------------- #


@cli.group()
def config() -> None:
    """Manage the Declutter settings document."""


@config.command("view")
@click.option("--no-env", is_flag=True, help="Ignore environment overrides when displaying output.")
def config_view(no_env: bool) -> None:
    """Display the effective configuration after applying precedence rules.

    Args:
        no_env: If True, ignore environment-derived overrides.

    Raises:
        click.ClickException: If configuration cannot be loaded.
    """
    manager = ConfigManager()
    try:
        manager.ensure_exists()
        effective = manager.load(include_env=not no_env)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    yaml_text = yaml.safe_dump(effective.model_dump(mode="json"), sort_keys=False)
    console.print(Syntax(yaml_text, "yaml", word_wrap=True))


@config.command("set")
@click.argument("key")
@click.option("--value", required=True, help="Value to assign to KEY.")
def config_set(key: str, value: str) -> None:
    """Persist a configuration value expressed as a dotted KEY.

    Args:
        key: Dotted path describing the configuration field to update.
        value: YAML-literal value to write into the configuration file.

    Raises:
        click.ClickException: If parsing, assignment, or validation fails.
    """
    manager = ConfigManager()
    manager.ensure_exists()

    before = manager.read_text().splitlines()
    segments = [segment.strip() for segment in key.split(".") if segment.strip()]
    if not segments:
        raise click.ClickException(
            "KEY must specify a dotted path such as 'settings.deletion_time_hour'."
        )

    try:
        parsed_value = yaml.safe_load(value)
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Unable to parse value: {exc}") from exc

    file_data = manager.load_file_overrides()

    try:
        _assign_nested(file_data, segments, parsed_value)
        resolve_with_precedence(defaults=DeclutterConfig(), file_overrides=file_data)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    manager.save(file_data)
    after = manager.read_text().splitlines()

    diff = list(
        difflib.unified_diff(
            before,
            after,
            fromfile="config.yaml (before)",
            tofile="config.yaml (after)",
            lineterm="",
        )
    )
    # The "Last updated" stamp always changes; ignore it when deciding.
    meaningful = [
        line
        for line in diff
        if line[:1] in "+-" and not line.startswith(("+++", "---")) and "Last updated" not in line
    ]
    if not meaningful:
        console.print("[yellow]No changes applied; value already up to date.[/yellow]")
        return

    console.print(Syntax("\n".join(diff), "diff", word_wrap=False))
    console.print(f"[green]Updated {'.'.join(segments)}.[/green]")


@config.command("edit")
def config_edit() -> None:
    """Open the configuration file in an interactive editor session.

    Raises:
        click.ClickException: If edited content is invalid or cannot be saved.
    """
    manager = ConfigManager()
    manager.ensure_exists()

    original = manager.read_text()
    edited = click.edit(original, extension=".yaml")

    if edited is None:
        console.print("[yellow]Edit cancelled; no changes applied.[/yellow]")
        return

    if edited == original:
        console.print("[yellow]No changes detected.[/yellow]")
        return

    try:
        parsed = yaml.safe_load(edited) or {}
    except yaml.YAMLError as exc:
        raise click.ClickException(f"Invalid YAML: {exc}") from exc

    if not isinstance(parsed, dict):
        raise click.ClickException("Configuration file must contain a top-level mapping.")

    try:
        resolve_with_precedence(defaults=DeclutterConfig(), file_overrides=parsed)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    manager.save(parsed)
    console.print("[green]Configuration updated successfully.[/green]")


@config.command("export")
@click.argument("destination", type=click.Path(dir_okay=False, path_type=Path))
def config_export(destination: Path) -> None:
    """Write the settings document to DESTINATION."""
    manager = ConfigManager()
    try:
        manager.ensure_exists()
        written = manager.export_to(destination)
    except (ConfigError, OSError) as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"[green]Exported settings to {written}.[/green]")


@config.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def config_import(source: Path) -> None:
    """Replace the settings document with SOURCE after validating it."""
    manager = ConfigManager()
    try:
        imported = manager.import_from(source)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(
        f"[green]Imported settings with {len(imported.folders)} folder(s) from {source}.[/green]"
    )


def main() -> None:
    """Invoke the Click CLI as the console script entry point."""
    cli()


if __name__ == "__main__":
    main()
