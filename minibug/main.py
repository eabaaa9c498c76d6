"""minibug CLI: all commands."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Annotated, TypeVar

import tomlkit
import typer
from rich import print as rprint
from rich.table import Table

from minibug.errors import MinibugError
from minibug.filters import apply_filter
from minibug.identity import FirebaseAnonymousIdentity, IdentityProvider, StaticIdentity
from minibug.logging import configure_logging
from minibug.models import Issue, Priority, Status, add_label, remove_label
from minibug.mutations import BulkResult
from minibug.providers.firestore import FirestoreStore
from minibug.providers.memory import MemoryStore
from minibug.session import Session, StoreFactory
from minibug.settings import CONFIG_PATH, _list_profiles, get_settings
from minibug.stats import DashboardStats

app = typer.Typer(help="minibug: a small issue tracker synced with a remote document store", no_args_is_help=True)

T = TypeVar("T")

ProfileOpt = Annotated[
    str | None,
    typer.Option("--profile", "-p", help="Profile name from ~/.config/minibug/config.toml"),
]
SearchOpt = Annotated[str, typer.Option("--search", "-s", help="Case-insensitive text in title or description")]
StatusOpt = Annotated[Status | None, typer.Option("--status", help="Only issues with this status")]
PriorityOpt = Annotated[Priority | None, typer.Option("--priority", help="Only issues with this priority")]

_STATUS_STYLE = {
    Status.OPEN: "blue",
    Status.IN_PROGRESS: "yellow",
    Status.REVIEW: "magenta",
    Status.CLOSED: "green",
}
_PRIORITY_STYLE = {
    Priority.CRITICAL: "bold red",
    Priority.HIGH: "dark_orange",
    Priority.MEDIUM: "yellow",
    Priority.LOW: "green",
}


# ---------------------------------------------------------------------------
# Session factory
# ---------------------------------------------------------------------------


def get_session(profile: str | None = None) -> Session:
    settings = get_settings(profile=profile)
    configure_logging(level=settings.log_level, json_output=settings.log_json)

    store_factory: StoreFactory
    identity: IdentityProvider
    match settings.provider:
        case "memory":
            store = MemoryStore()
            store_factory = lambda _identity: store  # noqa: E731
            identity = StaticIdentity(settings.user_id or "local")
        case "firestore":
            assert settings.firebase_project_id
            project_id = settings.firebase_project_id
            poll_interval = settings.poll_interval
            store_factory = lambda ident: FirestoreStore(  # noqa: E731
                project_id, token=ident.token, poll_interval=poll_interval
            )
            if settings.user_id:
                identity = StaticIdentity(settings.user_id)
            else:
                assert settings.firebase_api_key
                identity = FirebaseAnonymousIdentity(settings.firebase_api_key.get_secret_value())
        case _:
            rprint(f"[red]Unknown provider '{settings.provider}'. Valid: memory, firestore[/red]")
            raise typer.Exit(1)
    return Session(store_factory, identity, collection=settings.collection)


def _run(profile: str | None, work: Callable[[Session], Awaitable[T]]) -> T:
    """Open a session, wait for the first snapshot, run ``work``, close the session."""
    session = get_session(profile)

    async def runner() -> T:
        async with session:
            await session.cache.wait_for()
            return await work(session)

    try:
        return asyncio.run(runner())
    except MinibugError as exc:
        rprint(f"[red]{exc}[/red]")
        raise typer.Exit(1) from exc


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _fmt_time(value: datetime | None) -> str:
    return value.astimezone().strftime("%b %d, %Y %H:%M") if value else "—"


def _fmt_ms(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000).astimezone().strftime("%b %d, %Y %H:%M")


def _author(author_id: str, current_user: str | None) -> str:
    return "You" if author_id == current_user else author_id[:8]


def _issue_table(issues: tuple[Issue, ...], title: str = "Issues") -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Title")
    table.add_column("Assignee", style="dim")
    table.add_column("Labels")
    table.add_column("💬", justify="right")

    for issue in issues:
        labels = ", ".join(issue.labels[:3])
        if len(issue.labels) > 3:
            labels += f" +{len(issue.labels) - 3} more"
        table.add_row(
            issue.id,
            f"[{_STATUS_STYLE[issue.status]}]{issue.status}[/]",
            f"[{_PRIORITY_STYLE[issue.priority]}]{issue.priority}[/]",
            issue.title,
            (issue.assignee or "—")[:12],
            labels,
            str(len(issue.comments)),
        )
    return table


def _showing(shown: int, total: int) -> str:
    return f"Showing {shown} of {total} issue{'' if total == 1 else 's'}"


def render_issue(issue: Issue, current_user: str | None = None) -> str:
    """Render a markdown block for the issue, comments newest first."""
    lines = [
        f"# {issue.title}",
        "",
        f"**ID:** {issue.id}",
        f"**Status:** {issue.status}",
        f"**Priority:** {issue.priority}",
        f"**Assignee:** {issue.assignee or 'Unassigned'}",
        f"**Labels:** {', '.join(issue.labels) if issue.labels else 'none'}",
        f"**Created:** {_fmt_time(issue.created_at)}",
        f"**Updated:** {_fmt_time(issue.updated_at)}",
        "",
        "## Description",
        "",
        issue.description or "_No description provided._",
        "",
        f"## Comments ({len(issue.comments)})",
        "",
    ]
    if not issue.comments:
        lines.append("_No comments yet._")
    for comment in sorted(issue.comments, key=lambda c: c.created_at_ms, reverse=True):
        lines += [
            f"**{_author(comment.author_id, current_user)}** · {_fmt_ms(comment.created_at_ms)}",
            "",
            comment.text,
            "",
        ]
    return "\n".join(lines).rstrip() + "\n"


def _stats_tables(stats: DashboardStats) -> list[Table]:
    summary = Table(title="Dashboard")
    summary.add_column("Metric", style="bold")
    summary.add_column("Value", justify="right")
    summary.add_row("Total issues", str(stats.total))
    for status, count in stats.by_status.items():
        summary.add_row(f"[{_STATUS_STYLE[status]}]{status}[/]", str(count))
    summary.add_row("Critical issues", f"[bold red]{stats.critical_count}[/]")
    avg = "N/A" if stats.avg_resolution_days is None else f"{stats.avg_resolution_days}d"
    summary.add_row("Average time to close", avg)
    summary.add_row("Completion rate", f"{stats.completion_rate}%")

    priority = Table(title="Priority Breakdown")
    priority.add_column("Priority")
    priority.add_column("Issues", justify="right")
    for prio, count in stats.by_priority.items():
        priority.add_row(f"[{_PRIORITY_STYLE[prio]}]{prio}[/]", str(count))

    trend = Table(title="Issues Created (Last 7 Days)")
    trend.add_column("Day")
    trend.add_column("Issues", justify="right")
    trend.add_column("")
    for day in stats.created_last_7_days:
        trend.add_row(day.day.strftime("%b %d"), str(day.count), "█" * day.count)

    return [summary, priority, trend]


def _report_bulk(action: str, result: BulkResult) -> None:
    if result.succeeded:
        rprint(f"[green]✓[/green] {action} {len(result.succeeded)} issue(s)")
    for issue_id, error in result.failed.items():
        rprint(f"[red]✗ {issue_id}: {error}[/red]")
    if not result.ok:
        raise typer.Exit(1)


def _select(session: Session, ids: list[str] | None, select_all: bool) -> None:
    if select_all:
        session.select_all()
        return
    known = session.cache.ids()
    for issue_id in dict.fromkeys(ids or []):
        if session.selection.is_selected(issue_id):
            continue
        if issue_id in known:
            session.selection.toggle(issue_id)
        else:
            rprint(f"[yellow]Skipping unknown issue {issue_id}[/yellow]")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("list")
def list_issues(
    profile: ProfileOpt = None,
    search: SearchOpt = "",
    status: StatusOpt = None,
    priority: PriorityOpt = None,
) -> None:
    """List issues, newest first."""

    async def work(session: Session) -> None:
        session.set_filter(search=search, status=status, priority=priority)
        shown = session.filtered()
        rprint(_issue_table(shown))
        rprint(f"[dim]{_showing(len(shown), len(session.cache))}[/dim]")

    _run(profile, work)


@app.command("show")
def show_issue(
    issue_id: Annotated[str, typer.Argument(help="Issue ID")],
    profile: ProfileOpt = None,
    markdown: Annotated[bool, typer.Option("--markdown", "-m", help="Print as markdown")] = False,
) -> None:
    """Show full details and comments for an issue."""

    async def work(session: Session) -> None:
        issue = session.cache.get(issue_id)
        if issue is None:
            rprint(f"[red]Issue '{issue_id}' not found[/red]")
            raise typer.Exit(1)
        user = session.identity.user_id if session.identity else None
        if markdown:
            typer.echo(render_issue(issue, user), nl=False)
            return

        table = Table(title=issue.title)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("ID", issue.id)
        table.add_row("Status", f"[{_STATUS_STYLE[issue.status]}]{issue.status}[/]")
        table.add_row("Priority", f"[{_PRIORITY_STYLE[issue.priority]}]{issue.priority}[/]")
        table.add_row("Assignee", issue.assignee or "Unassigned")
        table.add_row("Labels", ", ".join(issue.labels) if issue.labels else "none")
        table.add_row("Created", _fmt_time(issue.created_at))
        table.add_row("Updated", _fmt_time(issue.updated_at))
        table.add_row("Description", issue.description or "_No description provided._")
        rprint(table)

        for comment in sorted(issue.comments, key=lambda c: c.created_at_ms, reverse=True):
            rprint(f"[bold]{_author(comment.author_id, user)}[/bold] [dim]{_fmt_ms(comment.created_at_ms)}[/dim]")
            rprint(f"  {comment.text}")

    _run(profile, work)


@app.command("create")
def create_issue(
    title: Annotated[str, typer.Argument(help="Issue title")],
    description: Annotated[str, typer.Argument(help="Issue description")],
    profile: ProfileOpt = None,
    status: Annotated[Status, typer.Option("--status", help="Initial status")] = Status.OPEN,
    priority: Annotated[Priority, typer.Option("--priority", help="Priority")] = Priority.MEDIUM,
    assignee: Annotated[str | None, typer.Option("--assignee", "-a", help="Defaults to you")] = None,
    labels: Annotated[list[str] | None, typer.Option("--label", "-l", help="Repeatable")] = None,
) -> None:
    """Create a new issue."""

    async def work(session: Session) -> str:
        return await session.mutations.create(
            {
                "title": title,
                "description": description,
                "status": status,
                "priority": priority,
                "assignee": assignee,
                "labels": labels or [],
            }
        )

    issue_id = _run(profile, work)
    rprint(f"[green]✓[/green] Issue created: [bold]{issue_id}[/bold] {title}")


@app.command("edit")
def edit_issue(
    issue_id: Annotated[str, typer.Argument(help="Issue ID")],
    profile: ProfileOpt = None,
    title: Annotated[str | None, typer.Option("--title", "-t")] = None,
    description: Annotated[str | None, typer.Option("--description", "-d")] = None,
    priority: Annotated[Priority | None, typer.Option("--priority")] = None,
    assignee: Annotated[str | None, typer.Option("--assignee", "-a")] = None,
    add_labels: Annotated[list[str] | None, typer.Option("--add-label", help="Repeatable")] = None,
    remove_labels: Annotated[list[str] | None, typer.Option("--remove-label", help="Repeatable")] = None,
) -> None:
    """Edit fields of an existing issue."""
    patch = {
        k: v
        for k, v in {"title": title, "description": description, "priority": priority, "assignee": assignee}.items()
        if v is not None
    }
    if not patch and not add_labels and not remove_labels:
        rprint("[yellow]Nothing to change.[/yellow]")
        raise typer.Exit(1)

    async def work(session: Session) -> None:
        issue = session.cache.get(issue_id)
        if issue is None:
            rprint(f"[red]Issue '{issue_id}' not found[/red]")
            raise typer.Exit(1)
        if add_labels or remove_labels:
            # One write for all label changes, validated against the cached labels
            labels = issue.labels
            for label in remove_labels or []:
                labels = remove_label(labels, label)
            for label in add_labels or []:
                labels = add_label(labels, label)
            patch["labels"] = list(labels)
        await session.mutations.update(issue_id, patch)

    _run(profile, work)
    rprint(f"[green]✓[/green] Issue updated: [bold]{issue_id}[/bold]")


@app.command("status")
def change_status(
    issue_id: Annotated[str, typer.Argument(help="Issue ID")],
    status: Annotated[Status | None, typer.Argument(help="New status")] = None,
    profile: ProfileOpt = None,
    advance: Annotated[bool, typer.Option("--next", "-n", help="Advance to the next status in the flow")] = False,
) -> None:
    """Change an issue's status (or advance it with --next)."""
    if (status is None) == (not advance):
        rprint("[red]Give either a STATUS or --next.[/red]")
        raise typer.Exit(1)

    async def work(session: Session) -> Status:
        if advance:
            return await session.mutations.advance_status(issue_id)
        assert status is not None
        await session.mutations.change_status(issue_id, status)
        return status

    new_status = _run(profile, work)
    rprint(f"[green]✓[/green] Status updated to [bold]{new_status}[/bold]")


@app.command("comment")
def add_comment(
    issue_id: Annotated[str, typer.Argument(help="Issue ID")],
    text: Annotated[str, typer.Argument(help="Comment text")],
    profile: ProfileOpt = None,
) -> None:
    """Append a comment to an issue."""

    async def work(session: Session) -> None:
        await session.mutations.add_comment(issue_id, text)

    _run(profile, work)
    rprint("[green]✓[/green] Comment added")


@app.command("delete")
def delete_issue(
    issue_id: Annotated[str, typer.Argument(help="Issue ID")],
    profile: ProfileOpt = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Delete an issue."""
    if not yes:
        typer.confirm(f"Delete issue {issue_id}? This action cannot be undone.", abort=True)

    async def work(session: Session) -> None:
        await session.mutations.delete(issue_id)

    _run(profile, work)
    rprint(f"[green]✓[/green] Issue deleted: [bold]{issue_id}[/bold]")


@app.command("bulk-status")
def bulk_status(
    status: Annotated[Status, typer.Argument(help="New status")],
    issue_ids: Annotated[list[str] | None, typer.Argument(help="Issue IDs")] = None,
    profile: ProfileOpt = None,
    select_all: Annotated[bool, typer.Option("--all", help="Every issue matching the filters")] = False,
    search: SearchOpt = "",
    status_filter: Annotated[Status | None, typer.Option("--filter-status", help="Filter for --all")] = None,
    priority: PriorityOpt = None,
) -> None:
    """Change the status of several issues at once."""

    async def work(session: Session) -> BulkResult:
        session.set_filter(search=search, status=status_filter, priority=priority)
        _select(session, issue_ids, select_all)
        return await session.selection.bulk_change_status(status)

    _report_bulk(f"Moved to {status}:", _run(profile, work))


@app.command("bulk-delete")
def bulk_delete(
    issue_ids: Annotated[list[str] | None, typer.Argument(help="Issue IDs")] = None,
    profile: ProfileOpt = None,
    select_all: Annotated[bool, typer.Option("--all", help="Every issue matching the filters")] = False,
    search: SearchOpt = "",
    status: StatusOpt = None,
    priority: PriorityOpt = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
) -> None:
    """Delete several issues at once."""

    async def work(session: Session) -> BulkResult:
        session.set_filter(search=search, status=status, priority=priority)
        _select(session, issue_ids, select_all)
        count = len(session.selection)
        if count and not yes:
            plural = "s" if count > 1 else ""
            # Prompt off the event loop; the subscription task keeps running
            prompt = f"Delete {count} issue{plural}? This action cannot be undone."
            if not await asyncio.to_thread(typer.confirm, prompt):
                session.selection.clear()
                raise typer.Exit(1)
        return await session.selection.bulk_delete()

    _report_bulk("Deleted", _run(profile, work))


@app.command("dashboard")
def dashboard(profile: ProfileOpt = None) -> None:
    """Show issue statistics."""

    async def work(session: Session) -> DashboardStats:
        return session.stats()

    for table in _stats_tables(_run(profile, work)):
        rprint(table)


@app.command("watch")
def watch(
    profile: ProfileOpt = None,
    search: SearchOpt = "",
    status: StatusOpt = None,
    priority: PriorityOpt = None,
) -> None:
    """Print the issue list again every time the store pushes a change (Ctrl-C to stop)."""

    def render(issues: tuple[Issue, ...], session: Session) -> None:
        shown = apply_filter(issues, session.criteria)
        rprint(_issue_table(shown, title=f"Issues @ {datetime.now():%H:%M:%S}"))
        rprint(f"[dim]{_showing(len(shown), len(issues))}[/dim]")

    async def work(session: Session) -> None:
        session.set_filter(search=search, status=status, priority=priority)
        render(session.cache.snapshot, session)
        session.cache.add_listener(lambda issues: render(issues, session))
        # Returns only when the feed ends or fails
        await session.cache.wait_for(lambda _: False)

    try:
        _run(profile, work)
    except KeyboardInterrupt:
        rprint("[dim]Stopped.[/dim]")


@app.command("set-default")
def set_default(
    profile: Annotated[str, typer.Argument(help="Profile name to set as default")],
) -> None:
    """Set the default profile in ~/.config/minibug/config.toml."""
    if not CONFIG_PATH.exists():
        CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
        doc = tomlkit.document()
        doc.add("default_profile", profile)
        CONFIG_PATH.write_text(tomlkit.dumps(doc))
        rprint(f'[green]✓[/green] Default profile set to "{profile}" in {CONFIG_PATH}')
        return

    doc = tomlkit.load(CONFIG_PATH.open())
    profiles = _list_profiles(doc)
    if profile not in profiles:
        rprint(f"[red]Profile '{profile}' not found in {CONFIG_PATH}. Available: {profiles or '(none)'}[/red]")
        raise typer.Exit(1)

    doc["default_profile"] = profile
    CONFIG_PATH.write_text(tomlkit.dumps(doc))
    rprint(f'[green]✓[/green] Default profile set to "{profile}" in {CONFIG_PATH}')


@app.command("config-show")
def config_show(profile: ProfileOpt = None) -> None:
    """Show resolved configuration (masks credentials)."""
    try:
        settings = get_settings(profile=profile)
    except SystemExit:
        return

    def mask(val: str | None) -> str:
        if val is None:
            return "[dim](not set)[/dim]"
        if len(val) <= 5:
            return "***"
        return f"...{val[-5:]}"

    not_set = "[dim](not set)[/dim]"
    table = Table(title="minibug Configuration")
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("provider", settings.provider)
    table.add_row("default_profile", settings.default_profile or not_set)
    table.add_row("user_id", settings.user_id or not_set)
    table.add_row("firebase_project_id", settings.firebase_project_id or not_set)
    table.add_row(
        "firebase_api_key",
        mask(settings.firebase_api_key.get_secret_value() if settings.firebase_api_key else None),
    )
    table.add_row("collection", settings.collection)
    table.add_row("poll_interval", f"{settings.poll_interval:g}s")
    table.add_row("log_level", settings.log_level)

    rprint(table)


@app.command("init")
def init_cmd() -> None:
    """Interactive first-time setup wizard."""
    rprint("[bold]minibug Setup Wizard[/bold]")
    rprint("")

    provider = typer.prompt("Provider? [memory/firestore]", default="firestore").strip().lower()
    if provider not in ("memory", "firestore"):
        rprint("[red]Invalid provider. Choose 'memory' or 'firestore'.[/red]")
        raise typer.Exit(1)

    profile_name = typer.prompt("Profile name (e.g. work, personal)").strip()
    if not profile_name:
        rprint("[red]Profile name cannot be empty.[/red]")
        raise typer.Exit(1)

    profile_config: dict = {"provider": provider}

    if provider == "firestore":
        rprint("Find these under Project settings → General in the Firebase console.")
        profile_config["firebase_project_id"] = typer.prompt("Project ID").strip()
        key = typer.prompt("Web API key", hide_input=True).strip()
        profile_config["firebase_api_key"] = key

        verify = typer.confirm("Sign in anonymously to confirm the key works?", default=True)
        if verify:
            try:
                identity = asyncio.run(FirebaseAnonymousIdentity(key).sign_in())
                rprint(f"[green]✓[/green] Signed in as {identity.user_id[:8]}...")
            except MinibugError as exc:
                rprint(f"[yellow]Warning:[/yellow] Could not sign in: {exc}")

    user_id = typer.prompt("Fixed user id (blank for anonymous sign-in)", default="").strip()
    if user_id:
        profile_config["user_id"] = user_id

    set_as_default = typer.confirm(f"Set '{profile_name}' as default profile?", default=True)

    # round-trip preserves any existing comments
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    doc = tomlkit.load(CONFIG_PATH.open()) if CONFIG_PATH.exists() else tomlkit.document()

    doc[profile_name] = profile_config
    if set_as_default:
        doc["default_profile"] = profile_name

    CONFIG_PATH.write_text(tomlkit.dumps(doc))
    rprint(f"[green]✓[/green] Profile '{profile_name}' written to {CONFIG_PATH}")

    rprint("")
    config_show(profile=profile_name)

