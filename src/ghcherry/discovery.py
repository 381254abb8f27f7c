from __future__ import annotations

import logging
from typing import Callable, Protocol

from ghcherry.config import AppConfig, ConfigError
from ghcherry.models import AuthenticatedUser, RepositoryRef
from ghcherry.observability import log_event


LOGGER = logging.getLogger("ghcherry.discovery")

# Receives a prompt kind ("owner" or "repository") and the options, returns one of them.
Chooser = Callable[[str, tuple[str, ...]], str]


class AccountSource(Protocol):
    def get_authenticated_user(self) -> AuthenticatedUser: ...

    def list_organizations(self) -> tuple[str, ...]: ...

    def list_repositories(self) -> tuple[RepositoryRef, ...]: ...


def discover_repository(
    config: AppConfig,
    account: AccountSource,
    *,
    choose: Chooser,
    announce: Callable[[str], None] = print,
) -> AppConfig:
    """Fill in whichever of ``github.owner`` and ``github.repo`` is missing.

    The owner is the authenticated user unless they belong to organizations, in
    which case ``choose`` picks among the login and the organizations. The
    repository is picked among the owner's repositories the user can access,
    restricted to forks when ``ui.only_forked_repos`` is set.
    """
    if not config.needs_discovery:
        return config

    owner = config.github.owner
    if not owner:
        owner = _discover_owner(account, choose=choose, announce=announce)

    repo = config.github.repo
    if not repo:
        repo = _discover_repo(
            account, owner, only_forks=config.ui.only_forked_repos, choose=choose
        )

    log_event(LOGGER, "repository_discovered", owner=owner, repo=repo)
    return config.with_overrides(owner=owner, repo=repo)


def _discover_owner(
    account: AccountSource, *, choose: Chooser, announce: Callable[[str], None]
) -> str:
    user = account.get_authenticated_user()
    announce(f"Authenticated as: {user.name} ({user.login})")
    organizations = account.list_organizations()
    if not organizations:
        return user.login
    return choose("owner", (user.login, *organizations))


def _discover_repo(
    account: AccountSource, owner: str, *, only_forks: bool, choose: Chooser
) -> str:
    names = tuple(
        repo.name
        for repo in account.list_repositories()
        if repo.owner.lower() == owner.lower() and (repo.fork or not only_forks)
    )
    if not names:
        suffix = " (forked repositories only)" if only_forks else ""
        raise ConfigError(f"No repositories found for owner: {owner}{suffix}")
    if len(names) == 1:
        return names[0]
    return choose("repository", names)
