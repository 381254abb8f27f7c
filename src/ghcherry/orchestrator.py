from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Iterable, Literal, Protocol

from ghcherry.config import TagConfig
from ghcherry.git_ops import ApplyError, IdentityError, PreconditionError
from ghcherry.models import (
    ApplicationResult,
    BranchResolution,
    ChangeRequest,
    Commit,
    RepositoryState,
    short_sha,
)
from ghcherry.observability import log_event, log_warning_event
from ghcherry.shell import CommandError


LOGGER = logging.getLogger("ghcherry.orchestrator")
ConflictDecision = Literal["continue", "abort"]


class LabelClient(Protocol):
    def get_labels(self, number: int) -> frozenset[str]: ...

    def set_labels(self, number: int, labels: Iterable[str]) -> None: ...

    def post_issue_comment(self, number: int, body: str) -> None: ...


class Repository(Protocol):
    @property
    def state(self) -> RepositoryState: ...

    def checkout_branch(self, name: str) -> BranchResolution: ...

    def apply(self, commit_id: str) -> ApplicationResult: ...

    def continue_after_resolution(self, message: str | None = None) -> str: ...

    def abort(self) -> None: ...


@dataclass(frozen=True)
class ConflictReport:
    commit: Commit
    paths: tuple[str, ...]


@dataclass(frozen=True)
class ApplicationOutcome:
    number: int
    target_branch: str
    success: bool
    applied_commit_ids: tuple[str, ...]
    conflict: ConflictReport | None = None
    error: str | None = None

    @property
    def needs_resolution(self) -> bool:
        return self.conflict is not None


@dataclass(frozen=True)
class PendingApplication:
    change_request: ChangeRequest
    target_branch: str
    applied_commit_ids: tuple[str, ...]
    conflicted_commit: Commit
    remaining: tuple[Commit, ...]


def render_summary_comment(target_branch: str, commit_ids: Iterable[str]) -> str:
    bullets = "\n".join(f"- {short_sha(sha)}" for sha in commit_ids)
    return f"🍒 **Cherry-picked to `{target_branch}`**\n\nCommits:\n{bullets}"


def updated_label_set(
    labels: Iterable[str], *, pending_label: str, completed_label: str
) -> frozenset[str]:
    return (frozenset(labels) - {pending_label}) | {completed_label}


class CherryPickOrchestrator:
    def __init__(self, github: LabelClient, repo: Repository, tags: TagConfig) -> None:
        self._github = github
        self._repo = repo
        self._tags = tags
        self._pending: PendingApplication | None = None

    @property
    def pending(self) -> PendingApplication | None:
        return self._pending

    def apply(self, change_request: ChangeRequest, target_branch: str) -> ApplicationOutcome:
        if self._pending is not None:
            raise PreconditionError(
                f"PR #{self._pending.change_request.number} is waiting for conflict "
                "resolution; continue or abort it first"
            )
        log_event(
            LOGGER,
            "change_request_started",
            number=change_request.number,
            target_branch=target_branch,
            commit_count=len(change_request.commits),
        )
        if not change_request.commits:
            log_warning_event(LOGGER, "change_request_empty", number=change_request.number)
            return ApplicationOutcome(
                number=change_request.number,
                target_branch=target_branch,
                success=False,
                applied_commit_ids=(),
                error=f"PR #{change_request.number} has no commits to cherry-pick",
            )
        try:
            self._repo.checkout_branch(target_branch)
        except (PreconditionError, CommandError) as exc:
            log_warning_event(
                LOGGER,
                "target_checkout_failed",
                number=change_request.number,
                target_branch=target_branch,
                error=str(exc),
            )
            return ApplicationOutcome(
                number=change_request.number,
                target_branch=target_branch,
                success=False,
                applied_commit_ids=(),
                error=f"Failed to checkout target branch: {exc}",
            )
        return self._apply_commits(
            change_request,
            target_branch,
            commits=change_request.commits,
            applied=(),
        )

    def resume(self, message: str | None = None) -> ApplicationOutcome:
        pending = self._pending
        if pending is None:
            raise PreconditionError("No cherry-pick is waiting for conflict resolution")
        new_sha = self._repo.continue_after_resolution(message)
        self._pending = None
        log_event(
            LOGGER,
            "change_request_resumed",
            number=pending.change_request.number,
            commit=short_sha(pending.conflicted_commit.sha),
            new_commit=short_sha(new_sha),
        )
        return self._apply_commits(
            pending.change_request,
            pending.target_branch,
            commits=pending.remaining,
            applied=pending.applied_commit_ids + (new_sha,),
        )

    def abort(self) -> ApplicationOutcome:
        pending = self._pending
        if pending is None:
            raise PreconditionError("No cherry-pick is waiting for conflict resolution")
        self._repo.abort()
        self._pending = None
        log_event(
            LOGGER,
            "change_request_aborted",
            number=pending.change_request.number,
            applied_count=len(pending.applied_commit_ids),
        )
        return ApplicationOutcome(
            number=pending.change_request.number,
            target_branch=pending.target_branch,
            success=False,
            applied_commit_ids=pending.applied_commit_ids,
            error="Cherry-pick aborted",
        )

    def run_batch(
        self,
        candidates: Iterable[ChangeRequest],
        target_branch: str,
        *,
        on_conflict: Callable[[ApplicationOutcome], ConflictDecision],
    ) -> list[ApplicationOutcome]:
        """Process candidates one after another, pausing on each conflict.

        A conflict is handed to ``on_conflict``; ``"continue"`` resumes after the
        operator's resolution, ``"abort"`` rolls back and ends the batch.
        """
        outcomes: list[ApplicationOutcome] = []
        for change_request in candidates:
            outcome = self.apply(change_request, target_branch)
            while outcome.needs_resolution:
                if on_conflict(outcome) == "abort":
                    outcomes.append(self.abort())
                    return outcomes
                try:
                    outcome = self.resume()
                except (PreconditionError, CommandError, IdentityError) as exc:
                    log_warning_event(
                        LOGGER,
                        "resume_rejected",
                        number=change_request.number,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
            outcomes.append(outcome)
        return outcomes

    def update_labels(self, number: int) -> frozenset[str]:
        current = self._github.get_labels(number)
        updated = updated_label_set(
            current,
            pending_label=self._tags.pending_tag,
            completed_label=self._tags.completed_tag,
        )
        self._github.set_labels(number, sorted(updated))
        log_event(LOGGER, "labels_updated", number=number, labels=sorted(updated))
        return updated

    def post_summary(self, number: int, target_branch: str, commit_ids: Iterable[str]) -> None:
        self._github.post_issue_comment(number, render_summary_comment(target_branch, commit_ids))

    def _apply_commits(
        self,
        change_request: ChangeRequest,
        target_branch: str,
        *,
        commits: tuple[Commit, ...],
        applied: tuple[str, ...],
    ) -> ApplicationOutcome:
        applied_ids = list(applied)
        for index, commit in enumerate(commits):
            try:
                result = self._repo.apply(commit.sha)
            except (ApplyError, PreconditionError, CommandError) as exc:
                log_warning_event(
                    LOGGER,
                    "cherry_pick_failed",
                    number=change_request.number,
                    commit=short_sha(commit.sha),
                    error=str(exc),
                )
                return ApplicationOutcome(
                    number=change_request.number,
                    target_branch=target_branch,
                    success=False,
                    applied_commit_ids=tuple(applied_ids),
                    error=f"Failed to cherry-pick commit {short_sha(commit.sha)}: {exc}",
                )
            if not result.success:
                self._pending = PendingApplication(
                    change_request=change_request,
                    target_branch=target_branch,
                    applied_commit_ids=tuple(applied_ids),
                    conflicted_commit=commit,
                    remaining=commits[index + 1 :],
                )
                return ApplicationOutcome(
                    number=change_request.number,
                    target_branch=target_branch,
                    success=False,
                    applied_commit_ids=tuple(applied_ids),
                    conflict=ConflictReport(commit=commit, paths=result.conflicts),
                )
            if result.new_commit_id is not None:
                applied_ids.append(result.new_commit_id)

        self._report_success(change_request.number, target_branch, tuple(applied_ids))
        return ApplicationOutcome(
            number=change_request.number,
            target_branch=target_branch,
            success=True,
            applied_commit_ids=tuple(applied_ids),
        )

    def _report_success(
        self, number: int, target_branch: str, commit_ids: tuple[str, ...]
    ) -> None:
        log_event(
            LOGGER,
            "change_request_applied",
            number=number,
            target_branch=target_branch,
            commits=[short_sha(sha) for sha in commit_ids],
        )
        # The local cherry-pick already succeeded; remote bookkeeping is best-effort.
        try:
            self.update_labels(number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "label_update_failed",
                number=number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        try:
            self.post_summary(number, target_branch, commit_ids)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "summary_comment_failed",
                number=number,
                error_type=type(exc).__name__,
                error=str(exc),
            )
