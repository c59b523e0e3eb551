from .base import GitProvider, pull_request_key
from .bitbucket import BitbucketProvider
from .factory import ProviderFactory
from .github import GitHubProvider
from .gitlab import GitLabProvider

__all__ = [
    "BitbucketProvider",
    "GitHubProvider",
    "GitLabProvider",
    "GitProvider",
    "ProviderFactory",
    "pull_request_key",
]
