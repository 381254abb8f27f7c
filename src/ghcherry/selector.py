from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import AbstractSet, Callable, Iterable, Iterator, Protocol

from ghcherry.config import TagConfig, compile_sprint_pattern
from ghcherry.models import ChangeRequest, Commit, CommitMode, PullRequestSummary
from ghcherry.observability import log_event


LOGGER = logging.getLogger("ghcherry.selector")


class SelectionError(RuntimeError):
    """Selection was aborted; no partial candidate list is returned."""


class PullRequestSource(Protocol):
    def iter_pull_request_pages(
        self, base: str, *, sort: str = ..., direction: str = ...
    ) -> Iterator[list[PullRequestSummary]]: ...

    def get_labels(self, number: int) -> frozenset[str]: ...

    def list_pull_request_commits(self, number: int) -> tuple[Commit, ...]: ...

    def get_commit(self, sha: str) -> Commit: ...


@dataclass(frozen=True)
class SelectionFilter:
    sprint_pattern: re.Pattern[str]
    environment_label: str
    pending_label: str
    lookback: timedelta

    @classmethod
    def from_tags(cls, tags: TagConfig, *, days_back: int) -> SelectionFilter:
        if days_back < 1:
            raise ValueError("days_back must be >= 1")
        return cls(
            sprint_pattern=compile_sprint_pattern(tags.sprint_pattern),
            environment_label=tags.environment,
            pending_label=tags.pending_tag,
            lookback=timedelta(days=days_back),
        )

    def qualifies(self, labels: AbstractSet[str] | Iterable[str]) -> bool:
        label_set = frozenset(labels)
        has_sprint = any(self.sprint_pattern.search(label) for label in label_set)
        return (
            has_sprint
            and self.environment_label in label_set
            and self.pending_label in label_set
        )


def effective_update_time(summary: PullRequestSummary, *, now: datetime) -> datetime:
    return summary.updated_at or summary.created_at or now


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CandidateSelector:
    def __init__(
        self,
        client: PullRequestSource,
        filters: SelectionFilter,
        *,
        base_branch: str,
        commit_mode: CommitMode = "range",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._filters = filters
        self._base_branch = base_branch
        self._commit_mode = commit_mode
        self._clock = clock

    def select(self) -> list[ChangeRequest]:
        now = self._clock()
        cutoff = now - self._filters.lookback
        log_event(
            LOGGER,
            "selection_started",
            base_branch=self._base_branch,
            cutoff=cutoff.isoformat(),
            commit_mode=self._commit_mode,
        )
        try:
            selected = self._scan(now=now, cutoff=cutoff)
        except Exception as exc:
            log_event(
                LOGGER,
                "selection_failed",
                base_branch=self._base_branch,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise SelectionError(f"Failed to select pull requests: {exc}") from exc
        log_event(LOGGER, "selection_finished", count=len(selected))
        return selected

    def _scan(self, *, now: datetime, cutoff: datetime) -> list[ChangeRequest]:
        selected: list[ChangeRequest] = []
        pages = self._client.iter_pull_request_pages(
            self._base_branch, sort="updated", direction="desc"
        )
        for page in pages:
            for summary in page:
                updated = effective_update_time(summary, now=now)
                # Items arrive newest-updated first, so nothing after this one is in range.
                if updated < cutoff:
                    log_event(
                        LOGGER,
                        "selection_cutoff_reached",
                        number=summary.number,
                        updated_at=updated.isoformat(),
                    )
                    return selected
                labels = self._client.get_labels(summary.number)
                if not self._filters.qualifies(labels):
                    continue
                selected.append(
                    ChangeRequest(
                        number=summary.number,
                        title=summary.title,
                        author=summary.author,
                        created_at=summary.created_at or now,
                        updated_at=updated,
                        labels=labels,
                        commits=self._commits_for(summary),
                        head_sha=summary.head_sha,
                        base_ref=summary.base_ref,
                        head_ref=summary.head_ref,
                    )
                )
                log_event(LOGGER, "selection_candidate_matched", number=summary.number)
        return selected

    def _commits_for(self, summary: PullRequestSummary) -> tuple[Commit, ...]:
        if self._commit_mode == "head":
            return (self._client.get_commit(summary.head_sha),)
        commits = self._client.list_pull_request_commits(summary.number)
        # Merge commits only bring the base branch into the PR; they cannot be replayed.
        merges = [commit for commit in commits if commit.is_merge]
        if merges:
            log_event(
                LOGGER,
                "selection_merge_commits_skipped",
                number=summary.number,
                commits=[commit.short_sha for commit in merges],
            )
        return tuple(commit for commit in commits if not commit.is_merge)
