"""CLI entrypoint — chronicle extract, list, read, project, session, stats."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from chronicle.config import ChronicleConfig, load_config
from chronicle.errors import ContentUnavailableError, StoreError
from chronicle.models import ContentRef
from chronicle.pipeline import run_extraction
from chronicle.probes import ProbeRegistry
from chronicle.store import DUPLICATE_RESOLUTIONS, PROJECT_TYPES, MetadataStore


def _open_store(config: ChronicleConfig) -> MetadataStore:
    try:
        return MetadataStore(config.db_path, config.linking)
    except StoreError as err:
        raise click.ClickException(str(err)) from err


def _fmt_ts(value: str | None) -> str:
    if not value:
        return "-"
    return value[:16].replace("T", " ")


def _require_session(store: MetadataStore, query: str) -> dict:
    session = store.get_session(query)
    if session is None:
        raise click.ClickException(f"Session not found: {query}")
    return session


def _require_project(store: MetadataStore, query: str) -> dict:
    project = store.find_project(query)
    if project is None:
        raise click.ClickException(f"Project not found: {query}")
    return project


def _report_linked(store: MetadataStore) -> None:
    linked = store.link_pending_sessions()
    if linked:
        click.echo(f"Linked {linked} pending sessions.")


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to chronicle.yaml (default: ./chronicle.yaml, then ~/.config/chronicle/).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool):
    """chronicle — index AI coding assistant conversations."""
    config = load_config(config_path)
    level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.WARNING)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    ctx.obj = config


@cli.command()
@click.option("--workers", type=int, default=None, help="Probes extracted in parallel.")
@click.option(
    "--detect-duplicates/--no-detect-duplicates",
    default=None,
    help="Run duplicate detection after extraction (default: from config).",
)
@click.pass_obj
def extract(config: ChronicleConfig, workers: int | None, detect_duplicates: bool | None):
    """Index every available conversation source."""
    registry = ProbeRegistry.from_config(config)
    if not registry.available_probes():
        click.echo("No conversation sources found.")
        return

    if detect_duplicates is None:
        detect_duplicates = config.deduplication.enabled

    with _open_store(config) as store:
        try:
            report = run_extraction(
                store,
                registry,
                max_workers=workers or config.max_workers,
                detect_duplicates=detect_duplicates,
                min_confidence=config.deduplication.confidence_threshold,
            )
        except StoreError as err:
            raise click.ClickException(f"Extraction aborted: {err}") from err

    for probe_report in report.probes:
        line = f"  {probe_report.probe_id}: {probe_report.extracted} sessions"
        if probe_report.skipped:
            line += f" ({probe_report.skipped} skipped)"
        if probe_report.skipped_records:
            line += f", {probe_report.skipped_records} unreadable records"
        click.echo(line)

    click.echo(f"Extracted {report.extracted} sessions.")
    if report.duplicates_found:
        click.echo(f"Found {report.duplicates_found} new duplicate pairs. See 'chronicle duplicates'.")


@cli.command("list")
@click.option("--provider", default=None, help="Filter by provider id.")
@click.option("--source", default=None, help="Filter by source name (e.g. ClaudeCode).")
@click.option("--project", default=None, help="Filter by project name or id.")
@click.option("--limit", type=int, default=20, show_default=True, help="Max sessions shown.")
@click.pass_obj
def list_sessions(
    config: ChronicleConfig,
    provider: str | None,
    source: str | None,
    project: str | None,
    limit: int,
):
    """List indexed sessions, most recent first."""
    with _open_store(config) as store:
        sessions = store.list_sessions(provider=provider, source=source, project=project, limit=limit)

    if not sessions:
        click.echo("No sessions found. Run 'chronicle extract' first.")
        return

    for s in sessions:
        click.echo(
            f"{s['short_hash']:<12} {_fmt_ts(s['last_timestamp']):<16}  "
            f"{s['source_name']:<10} {s['project_name'] or '-':<16} "
            f"{s['message_count']:>4} msgs  {s['title'] or '(untitled)'}"
        )


@cli.command()
@click.argument("session_query")
@click.option("--full", is_flag=True, help="Show full message text from the original source.")
@click.option("--tools", is_flag=True, help="Show tool uses per message.")
@click.pass_obj
def read(config: ChronicleConfig, session_query: str, full: bool, tools: bool):
    """Show one session by short hash or id prefix."""
    with _open_store(config) as store:
        session = _require_session(store, session_query)
        messages = store.get_messages(session["id"])
        tool_uses = {m["id"]: store.get_tool_uses(m["id"]) for m in messages} if tools else {}

    click.echo(f"Session {session['short_hash']}  ({session['id']})")
    click.echo(f"  Title:    {session['title'] or '(untitled)'}")
    click.echo(f"  Source:   {session['source_name']}")
    click.echo(f"  Model:    {session['primary_provider'] or '-'} / {session['primary_model'] or '-'}")
    click.echo(f"  Project:  {session['project_name'] or session['project_path'] or '-'}")
    click.echo(
        f"  Time:     {_fmt_ts(session['first_timestamp'])} to {_fmt_ts(session['last_timestamp'])}"
    )
    click.echo(f"  Messages: {session['message_count']}")

    probe = None
    if full:
        probe = ProbeRegistry.from_config(config).get_probe(session["probe_source_id"])
        if probe is None:
            click.echo(f"\nProbe {session['probe_source_id']} is not enabled; showing metadata only.")

    for m in messages:
        flags = []
        if m["has_tool_use"]:
            flags.append("tools")
        if m["has_thinking"]:
            flags.append("thinking")
        suffix = f"  [{', '.join(flags)}]" if flags else ""
        click.echo(f"\n[{m['role']}] {_fmt_ts(m['timestamp'])} {m['model'] or ''}{suffix}".rstrip())

        for tool in tool_uses.get(m["id"], []):
            status = "ok" if tool["has_result"] else "no result"
            click.echo(f"  - {tool['tool_name']} ({status})")

        if probe is not None:
            try:
                click.echo(probe.get_content(ContentRef.from_row(m)))
            except ContentUnavailableError as err:
                click.echo(f"  (content unavailable: {err})")


@cli.group()
def project():
    """Create projects and map paths or git remotes onto them."""
    pass


@project.command("create")
@click.argument("name")
@click.option(
    "--type", "project_type", type=click.Choice(PROJECT_TYPES), default="code", show_default=True
)
@click.option("--path", "primary_path", default=None, help="Primary directory of the project.")
@click.pass_obj
def project_create(config: ChronicleConfig, name: str, project_type: str, primary_path: str | None):
    """Create a project."""
    with _open_store(config) as store:
        try:
            project_id = store.create_project(name, project_type, primary_path)
        except StoreError as err:
            raise click.ClickException(str(err)) from err
        click.echo(f"Created project {name} ({project_id[:8]}).")
        _report_linked(store)


@project.command("list")
@click.pass_obj
def project_list(config: ChronicleConfig):
    """List projects with their session counts."""
    with _open_store(config) as store:
        projects = store.list_projects()

    if not projects:
        click.echo("No projects yet. Create one with 'chronicle project create'.")
        return

    for p in projects:
        click.echo(
            f"{p['id'][:8]}  {p['name']:<20} {p['type']:<9} "
            f"{p['session_count']:>4} sessions  {p['primary_path'] or ''}".rstrip()
        )


@project.command("add-path")
@click.argument("project_query")
@click.argument("path")
@click.option("--primary", is_flag=True, help="Make this the project's primary path.")
@click.pass_obj
def project_add_path(config: ChronicleConfig, project_query: str, path: str, primary: bool):
    """Map a directory onto a project."""
    with _open_store(config) as store:
        p = _require_project(store, project_query)
        try:
            store.add_project_path(p["id"], path, is_primary=primary)
        except StoreError as err:
            raise click.ClickException(str(err)) from err
        click.echo(f"Added path {path} to {p['name']}.")
        _report_linked(store)


@project.command("add-git")
@click.argument("project_query")
@click.argument("remote")
@click.pass_obj
def project_add_git(config: ChronicleConfig, project_query: str, remote: str):
    """Map a git remote URL onto a project."""
    with _open_store(config) as store:
        p = _require_project(store, project_query)
        try:
            store.add_project_identifier(p["id"], "git_remote", remote)
        except StoreError as err:
            raise click.ClickException(str(err)) from err
        click.echo(f"Added git remote {remote} to {p['name']}.")
        _report_linked(store)


@cli.group()
def session():
    """Assign sessions to projects by hand."""
    pass


@session.command("assign")
@click.argument("session_query")
@click.argument("project_query")
@click.pass_obj
def session_assign(config: ChronicleConfig, session_query: str, project_query: str):
    """Assign a session to a project; auto-linking will not override it."""
    with _open_store(config) as store:
        s = _require_session(store, session_query)
        p = _require_project(store, project_query)
        try:
            store.assign_session_to_project(s["id"], p["id"])
        except StoreError as err:
            raise click.ClickException(str(err)) from err
    click.echo(f"Assigned {s['short_hash']} to {p['name']}.")


@session.command("unassign")
@click.argument("session_query")
@click.pass_obj
def session_unassign(config: ChronicleConfig, session_query: str):
    """Detach a session from any project and keep it unassigned."""
    with _open_store(config) as store:
        s = _require_session(store, session_query)
        try:
            store.unassign_session(s["id"])
        except StoreError as err:
            raise click.ClickException(str(err)) from err
    click.echo(f"Unassigned {s['short_hash']}.")


@cli.command()
@click.pass_obj
def stats(config: ChronicleConfig):
    """Print summary statistics to terminal."""
    with _open_store(config) as store:
        summary = store.get_summary_stats()

    if summary["total_sessions"] == 0:
        click.echo("No sessions found. Run 'chronicle extract' first.")
        return

    date_range = summary["date_range"]
    click.echo(
        f"{summary['total_sessions']} sessions, {summary['total_messages']} messages, "
        f"{summary['total_projects']} projects. "
        f"Date range: {_fmt_ts(date_range['min'])[:10]} to {_fmt_ts(date_range['max'])[:10]}."
    )
    if summary["pending_sessions"]:
        click.echo(f"{summary['pending_sessions']} sessions not linked to a project.")

    click.echo("\nBy source:")
    for s in summary["sessions_by_source"]:
        click.echo(
            f"  {s['source_name']}: {s['session_count']} sessions, "
            f"{s['message_count']} messages (indexed {_fmt_ts(s['last_indexed'])})"
        )

    click.echo("\nBy provider:")
    for p in summary["sessions_by_provider"]:
        click.echo(f"  {p['provider']}: {p['session_count']} sessions")

    if summary["top_tools"]:
        click.echo("\nTop tools:")
        for t in summary["top_tools"]:
            click.echo(f"  {t['tool_name']}: {t['count']}")

    tokens = summary["tokens"]
    click.echo(
        f"\nTokens: {tokens['input_tokens']:,} in, {tokens['output_tokens']:,} out, "
        f"{tokens['cache_read_tokens']:,} cache read, "
        f"{tokens['cache_creation_tokens']:,} cache write"
    )


@cli.command()
@click.option("--all", "show_all", is_flag=True, help="Include resolved pairs.")
@click.option("--resolve", "resolve_id", type=int, default=None, help="Resolve the pair with this id.")
@click.option(
    "--as",
    "resolution",
    type=click.Choice(DUPLICATE_RESOLUTIONS),
    default="kept_both",
    show_default=True,
    help="Resolution recorded with --resolve.",
)
@click.pass_obj
def duplicates(config: ChronicleConfig, show_all: bool, resolve_id: int | None, resolution: str):
    """List (or resolve) sessions captured by more than one source."""
    with _open_store(config) as store:
        if resolve_id is not None:
            try:
                store.resolve_duplicate(resolve_id, resolution)
            except StoreError as err:
                raise click.ClickException(str(err)) from err
            click.echo(f"Resolved duplicate {resolve_id} as {resolution}.")
            return
        pairs = store.list_duplicates(unresolved_only=not show_all)

    if not pairs:
        click.echo("No duplicate sessions.")
        return

    for d in pairs:
        line = (
            f"{d['id']:>4}  {d['short_hash_a']} <-> {d['short_hash_b']}  "
            f"confidence {d['confidence']:.2f} ({d['detection_method']})"
        )
        if d["resolved"]:
            line += f"  resolved: {d['resolution']}"
        click.echo(line)
