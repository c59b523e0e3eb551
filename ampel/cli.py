import asyncio
import secrets
from collections.abc import Callable
from functools import wraps
from logging import getLogger
from typing import Any

import typer
from pydantic import SecretStr
from rich.console import Console
from rich.markup import escape

from .errors import AmpelError
from .models import MergeStrategy, Provider, Repository
from .services.cache import configure_caches
from .services.credentials import EncryptedCredentialStore, TokenAccessor
from .services.formatter import (
    format_diff,
    format_merge_result,
    format_pull_request_status,
    format_repositories,
    show_progress,
)
from .services.merge import BulkMergeRequest, InMemoryPullRequestDirectory, MergeOrchestrator, MergeTarget
from .services.providers import ProviderFactory, pull_request_key
from .services.pull_requests import PullRequestService
from .settings import settings

# Configure caches on module load
configure_caches()

app = typer.Typer()
logger = getLogger(__name__)
console = Console()

CLI_ACCOUNT_ID = "cli"

ProviderOption = typer.Option(Provider.GITHUB, "--provider", "-p", help="Source-control provider")
TokenOption = typer.Option(..., "--token", envvar="AMPEL_TOKEN", help="Provider access token")
UsernameOption = typer.Option(
    None, "--username", envvar="AMPEL_USERNAME", help="Account username (required for Bitbucket app passwords)"
)
InstanceOption = typer.Option(None, "--instance-url", help="Self-hosted instance URL (GitHub Enterprise, GitLab)")


def syncify(f: Callable[..., Any]) -> Callable[..., Any]:
    """This simple decorator converts an async function into a sync function,
    allowing it to work with Typer.
    """

    @wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(f(*args, **kwargs))

    return wrapper


def _token_accessor(provider: Provider, token: str, username: str | None, instance_url: str | None) -> TokenAccessor:
    """Hold the command line token in an encrypted store for the lifetime of the command."""
    secret_key = settings.credential_encryption_key or SecretStr(secrets.token_urlsafe(32))
    store = EncryptedCredentialStore(secret_key)
    store.add_account(CLI_ACCOUNT_ID, provider, token, username=username, instance_url=instance_url)
    return TokenAccessor(store, refresh_margin_seconds=settings.token_refresh_margin_seconds)


def _repository(provider: Provider, full_name: str) -> Repository:
    """Build a repository reference from an ``owner/name`` argument.

    Raises:
        ValueError: If the name has no owner part
    """
    full_name = full_name.strip("/")
    if "/" not in full_name:
        raise ValueError(f"Invalid repository: {full_name}. Expected format: owner/name")
    owner, name = full_name.rsplit("/", 1)
    return Repository(
        id=f"{provider.value}:{full_name}",
        provider=provider,
        owner=owner,
        name=name,
        full_name=full_name,
        account_id=CLI_ACCOUNT_ID,
    )


def _parse_pull_request_ref(provider: Provider, ref: str) -> MergeTarget:
    """Parse ``owner/name#number`` into a merge target.

    Raises:
        ValueError: If the reference is malformed
    """
    full_name, separator, number = ref.rpartition("#")
    if not separator or not number.isdigit():
        raise ValueError(f"Invalid pull request reference: {ref}. Expected format: owner/name#number")
    repository = _repository(provider, full_name)
    return MergeTarget(
        pull_request_id=pull_request_key(repository.id, int(number)),
        repository=repository,
        number=int(number),
    )


@app.command(help=f"Display the current installed version of {settings.project_name}.")
def version() -> None:
    from . import __version__

    typer.echo(f"{settings.project_name} - {__version__}")


@app.command(help="List repositories the account can access.")
@syncify
async def repos(
    provider: Provider = ProviderOption,
    token: str = TokenOption,
    username: str | None = UsernameOption,
    instance_url: str | None = InstanceOption,
) -> None:
    try:
        accessor = _token_accessor(provider, token, username, instance_url)
        service = PullRequestService(settings, ProviderFactory(settings), accessor)
        with show_progress(f"Listing repositories on {provider.value}..."):
            repositories = await service.list_repositories(CLI_ACCOUNT_ID)
        format_repositories(repositories, console=console)
    except AmpelError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    except Exception as e:
        logger.exception("Unexpected error while listing repositories")
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


@app.command(help="Show the traffic-light status of a pull request.")
@syncify
async def status(
    repository: str = typer.Argument(..., help="Repository as owner/name"),
    number: int = typer.Argument(..., help="Pull request number"),
    provider: Provider = ProviderOption,
    token: str = TokenOption,
    username: str | None = UsernameOption,
    instance_url: str | None = InstanceOption,
) -> None:
    try:
        repo = _repository(provider, repository)
        accessor = _token_accessor(provider, token, username, instance_url)
        service = PullRequestService(settings, ProviderFactory(settings), accessor)
        with show_progress(f"Fetching {repository}#{number}..."):
            result = await service.get_pull_request_status(repo, number)
        format_pull_request_status(result, console=console)
    except AmpelError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    except Exception as e:
        logger.exception("Unexpected error while fetching pull request status")
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


@app.command(help="Show the normalized diff of a pull request.")
@syncify
async def diff(
    repository: str = typer.Argument(..., help="Repository as owner/name"),
    number: int = typer.Argument(..., help="Pull request number"),
    provider: Provider = ProviderOption,
    token: str = TokenOption,
    username: str | None = UsernameOption,
    instance_url: str | None = InstanceOption,
    patches: bool = typer.Option(False, "--patches", help="Print the patch of each file"),
) -> None:
    try:
        repo = _repository(provider, repository)
        accessor = _token_accessor(provider, token, username, instance_url)
        service = PullRequestService(settings, ProviderFactory(settings), accessor)
        with show_progress(f"Fetching diff for {repository}#{number}..."):
            result = await service.get_diff(pull_request_key(repo.id, number), repo, number)
        format_diff(result, show_patches=patches, console=console)
    except AmpelError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    except Exception as e:
        logger.exception("Unexpected error while fetching pull request diff")
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


@app.command(help="Merge several pull requests, given as owner/name#number.")
@syncify
async def merge(
    pull_requests: list[str] = typer.Argument(..., help="Pull requests as owner/name#number"),
    provider: Provider = ProviderOption,
    token: str = TokenOption,
    username: str | None = UsernameOption,
    instance_url: str | None = InstanceOption,
    strategy: MergeStrategy | None = typer.Option(
        None,
        "--strategy",
        help=f"Merge strategy (default: {settings.default_merge_strategy.value})",
    ),
    delete_branch: bool | None = typer.Option(
        None,
        "--delete-branch/--keep-branch",
        help="Delete source branches after merging",
    ),
) -> None:
    try:
        targets = [_parse_pull_request_ref(provider, ref) for ref in pull_requests]
        orchestrator = MergeOrchestrator(
            settings,
            ProviderFactory(settings),
            _token_accessor(provider, token, username, instance_url),
            InMemoryPullRequestDirectory(targets),
        )
        request = BulkMergeRequest(
            pull_request_ids=[target.pull_request_id for target in targets],
            strategy=strategy,
            delete_branch=delete_branch,
        )
        with show_progress(f"Merging {len(targets)} pull requests..."):
            result = await orchestrator.bulk_merge(request)
        format_merge_result(result, console=console)
    except AmpelError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    except Exception as e:
        logger.exception("Unexpected error during bulk merge")
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    if result.failed:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
