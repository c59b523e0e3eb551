from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.syntax import Syntax
from rich.table import Table

from ampel.models import DiffStatus, Repository

from .merge import BulkMergeResult
from .pull_requests import DiffResponse, PullRequestStatus
from .status import BlockerSeverity, get_status_color

DIFF_STATUS_STYLES: dict[DiffStatus, str] = {
    DiffStatus.ADDED: "green",
    DiffStatus.MODIFIED: "yellow",
    DiffStatus.DELETED: "red",
    DiffStatus.RENAMED: "blue",
    DiffStatus.COPIED: "cyan",
    DiffStatus.UNCHANGED: "dim",
}


def format_pull_request_status(result: PullRequestStatus, console: Console | None = None) -> None:
    """Display a pull request with its traffic-light status and every blocker.

    Args:
        result: Classified pull request
        console: Console to print to (default: a new stdout console)
    """
    console = console or Console()
    pr = result.pull_request
    color = get_status_color(result.status)

    lines = [
        f"[bold]{escape(pr.title)}[/bold]",
        escape(f"{pr.source_branch} -> {pr.target_branch} by {pr.author}"),
        f"[green]+{pr.additions}[/green] [red]-{pr.deletions}[/red], {pr.comments_count} comments",
    ]
    if pr.url:
        lines.append(f"[dim]{escape(pr.url)}[/dim]")
    console.print(
        Panel(
            "\n".join(lines),
            title=f"#{pr.number} [{color}]{result.status.value.upper()}[/{color}]",
            border_style=color,
        )
    )

    if pr.ci_checks:
        checks = Table(title="CI Checks", show_header=True, header_style="bold magenta")
        checks.add_column("Name", style="white")
        checks.add_column("Status", no_wrap=True)
        checks.add_column("Conclusion", no_wrap=True)
        for check in pr.ci_checks:
            checks.add_row(escape(check.name), check.status.value, check.conclusion.value if check.conclusion else "-")
        console.print(checks)

    if not result.blockers:
        console.print("[green]Ready to merge.[/green]")
        return

    for blocker in result.blockers:
        style = "red" if blocker.severity == BlockerSeverity.ERROR else "yellow"
        console.print(f"[{style}]{blocker.severity.value}[/{style}] {escape(blocker.message)}")


def format_diff(diff: DiffResponse, show_patches: bool = False, console: Console | None = None) -> None:
    """Display the files of a pull request diff, optionally with their patches."""
    console = console or Console()

    if not diff.files:
        console.print(Panel("[yellow]This pull request has no file changes.[/yellow]", border_style="yellow"))
        return

    table = Table(title="Changed Files", show_header=True, header_style="bold magenta")
    table.add_column("File", style="white")
    table.add_column("Status", no_wrap=True)
    table.add_column("Language", style="dim", no_wrap=True)
    table.add_column("+", style="green", justify="right", no_wrap=True)
    table.add_column("-", style="red", justify="right", no_wrap=True)

    for diff_file in diff.files:
        style = DIFF_STATUS_STYLES.get(diff_file.status, "white")
        path = diff_file.file_path
        if diff_file.previous_filename:
            path = f"{diff_file.previous_filename} -> {path}"
        table.add_row(
            escape(path),
            f"[{style}]{diff_file.status.value}[/{style}]",
            "binary" if diff_file.is_binary else escape(diff_file.language or "-"),
            str(diff_file.additions),
            str(diff_file.deletions),
        )

    console.print(table)
    cached = " [dim](cached)[/dim]" if diff.cached else ""
    console.print(
        f"\n[bold]Total:[/bold] {diff.total_files} files, "
        f"[green]+{diff.total_additions}[/green] [red]-{diff.total_deletions}[/red]{cached}"
    )

    if show_patches:
        for diff_file in diff.files:
            if diff_file.patch:
                console.print(Panel(Syntax(diff_file.patch, "diff"), title=escape(diff_file.file_path)))


def format_merge_result(result: BulkMergeResult, console: Console | None = None) -> None:
    """Display per-item outcomes of a bulk merge."""
    console = console or Console()

    if not result.results:
        console.print(Panel("[yellow]No pull requests were merged.[/yellow]", title="No Results", border_style="yellow"))
        return

    table = Table(title=f"Merge Operation {result.operation_id}", show_header=True, header_style="bold magenta")
    table.add_column("Pull Request", style="cyan")
    table.add_column("Result", no_wrap=True)
    table.add_column("Details", style="white")

    for item in result.results:
        if item.success:
            table.add_row(escape(item.pull_request_id), "[green]merged[/green]", escape(item.merge_sha or ""))
        else:
            table.add_row(
                escape(item.pull_request_id), f"[red]{item.error_code or 'failed'}[/red]", escape(item.error or "")
            )

    console.print(table)
    console.print(
        f"\n[bold]Total:[/bold] {result.total} "
        f"([green]{result.success} succeeded[/green], [red]{result.failed} failed[/red])"
    )


def format_repositories(repositories: list[Repository], console: Console | None = None) -> None:
    console = console or Console()
    table = Table(title="Repositories", show_header=True, header_style="bold magenta")
    table.add_column("Repository", style="white")
    table.add_column("Provider", style="cyan", no_wrap=True)
    table.add_column("Default Branch", style="dim", no_wrap=True)
    table.add_column("Visibility", no_wrap=True)
    for repository in repositories:
        visibility = "private" if repository.is_private else "public"
        if repository.is_archived:
            visibility += " (archived)"
        table.add_row(
            escape(repository.full_name), repository.provider.value, escape(repository.default_branch), visibility
        )
    console.print(table)
    console.print(f"\n[bold]Total:[/bold] {len(repositories)} repositories")


def show_progress(message: str) -> Progress:
    """Create and return a progress spinner.

    Args:
        message: Message to display with spinner

    Returns:
        Progress context manager
    """
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
    )
    progress.add_task(description=escape(message), total=None)
    return progress
