from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
import logging
from typing import Callable

from ghcherry.models import (
    ApplicationResult,
    BranchResolution,
    Commit,
    Identity,
    RepositoryState,
    short_sha,
)
from ghcherry.observability import log_event
from ghcherry.shell import CommandError, run, run_result


LOGGER = logging.getLogger("ghcherry.git_ops")
DEFAULT_RESOLVED_MESSAGE = "Cherry-pick (resolved conflicts)"
_COMMIT_FORMAT = "%H%x00%an%x00%aI%x00%B"


class PreconditionError(RuntimeError):
    """An operation was invoked in a state that does not allow it."""


class BranchNotFoundError(PreconditionError):
    pass


class UnresolvedConflictsError(PreconditionError):
    def __init__(self, paths: tuple[str, ...]) -> None:
        super().__init__(
            "There are still unresolved conflicts. Please resolve them first: "
            + ", ".join(paths)
        )
        self.paths = paths


class ApplyError(RuntimeError):
    """Cherry-picking failed for a reason other than a merge conflict."""


class IdentityError(RuntimeError):
    pass


@dataclass(frozen=True)
class _PendingApply:
    commit: Commit | None
    pre_apply_head: str


IdentityProvider = Callable[[], Identity]


class GitRepository:
    """Exclusive handle on one working copy.

    States move ``clean -> apply_in_progress -> clean | conflicted`` on ``apply``,
    ``conflicted -> clean`` on ``continue_after_resolution`` and
    ``conflicted | apply_in_progress -> clean`` on ``abort``. The working copy is
    assumed clean when the handle is created; callers check ``is_clean`` first.
    """

    def __init__(self, path: Path, *, identity_provider: IdentityProvider | None = None) -> None:
        self.path = path
        self._identity_provider = identity_provider or self.configured_identity
        self._state: RepositoryState = "clean"
        self._pending: _PendingApply | None = None

    @classmethod
    def discover(cls, start: Path | None = None) -> GitRepository:
        cwd = start or Path.cwd()
        result = run_result(["git", "-C", str(cwd), "rev-parse", "--show-toplevel"])
        if not result.ok:
            raise PreconditionError(
                f"No Git repository found at {cwd}. "
                "Please run this command from within a Git repository."
            )
        return cls(Path(result.stdout.strip()))

    @property
    def state(self) -> RepositoryState:
        return self._state

    @property
    def pending_commit(self) -> Commit | None:
        return self._pending.commit if self._pending is not None else None

    def git_dir(self) -> Path:
        raw = self._git("rev-parse", "--absolute-git-dir").strip()
        return Path(raw)

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def head_sha(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def is_clean(self) -> bool:
        return not self._git("status", "--porcelain").strip()

    def configured_identity(self) -> Identity:
        name = run_result(["git", "-C", str(self.path), "config", "user.name"])
        email = run_result(["git", "-C", str(self.path), "config", "user.email"])
        if not name.ok or not name.stdout.strip():
            raise IdentityError("Git user.name not configured")
        if not email.ok or not email.stdout.strip():
            raise IdentityError("Git user.email not configured")
        return Identity(name=name.stdout.strip(), email=email.stdout.strip())

    def fetch(self) -> None:
        log_event(LOGGER, "git_fetch_origin", path=str(self.path))
        self._git("fetch", "origin", "--prune")

    def read_commit(self, sha: str) -> Commit:
        raw = self._git("log", "-1", f"--format={_COMMIT_FORMAT}", sha, "--")
        parts = raw.split("\x00", 3)
        if len(parts) != 4:
            raise ApplyError(f"Unexpected git log output for commit {sha}")
        full_sha, author, date, message = parts
        return Commit(
            sha=full_sha.strip(),
            message=message.rstrip("\n"),
            author=author,
            date=datetime.fromisoformat(date) if date else None,
        )

    def list_unmerged_paths(self) -> tuple[str, ...]:
        out = self._git("diff", "--name-only", "--diff-filter=U")
        return tuple(sorted({line for line in out.splitlines() if line.strip()}))

    def resolve_branch(self, name: str) -> BranchResolution:
        if self._ref_exists(f"refs/heads/{name}"):
            return "found_local"
        if not self._ref_exists(f"refs/remotes/origin/{name}"):
            return "not_found"
        self._git("branch", "--track", name, f"origin/{name}")
        log_event(LOGGER, "git_tracking_branch_created", branch=name)
        return "created_tracking"

    def checkout_branch(self, name: str) -> BranchResolution:
        self._require("clean", operation="checkout_branch")
        resolution = self.resolve_branch(name)
        if resolution == "not_found":
            raise BranchNotFoundError(f"Branch '{name}' not found locally or on origin")
        self._git("checkout", "--quiet", name)
        log_event(LOGGER, "git_branch_checked_out", branch=name, resolution=resolution)
        return resolution

    def apply(self, commit_id: str) -> ApplicationResult:
        self._require("clean", operation="apply")
        if not run_result(self._argv("cat-file", "-e", f"{commit_id}^{{commit}}")).ok:
            raise ApplyError(f"Commit not found: {commit_id}")

        original = self.read_commit(commit_id)
        self._pending = _PendingApply(commit=original, pre_apply_head=self.head_sha())
        self._state = "apply_in_progress"
        log_event(LOGGER, "cherry_pick_started", commit=short_sha(original.sha))

        picked = run_result(self._argv("cherry-pick", "--no-commit", original.sha))
        if not picked.ok:
            conflicts = self.list_unmerged_paths()
            if conflicts:
                self._state = "conflicted"
                log_event(
                    LOGGER,
                    "cherry_pick_conflict",
                    commit=short_sha(original.sha),
                    conflicts=conflicts,
                )
                return ApplicationResult.conflicted(conflicts)
            self._rollback()
            raise ApplyError(
                f"Failed to cherry-pick commit {short_sha(original.sha)}: "
                f"{picked.stderr.strip() or picked.stdout.strip()}"
            )

        try:
            new_sha = self._commit(original.message)
        except (CommandError, IdentityError) as exc:
            self._rollback()
            raise ApplyError(
                f"Failed to commit cherry-pick of {short_sha(original.sha)}: {exc}"
            ) from exc
        self._finish()
        log_event(
            LOGGER,
            "cherry_pick_applied",
            commit=short_sha(original.sha),
            new_commit=short_sha(new_sha),
        )
        return ApplicationResult.applied(new_sha)

    def continue_after_resolution(self, message: str | None = None) -> str:
        self._require("conflicted", operation="continue_after_resolution")
        unresolved = self.list_unmerged_paths()
        if unresolved:
            raise UnresolvedConflictsError(unresolved)

        self._git("add", "--update")
        if message is None:
            pending_commit = self.pending_commit
            message = pending_commit.message if pending_commit else DEFAULT_RESOLVED_MESSAGE
        new_sha = self._commit(message)
        self._finish()
        log_event(LOGGER, "cherry_pick_continued", new_commit=short_sha(new_sha))
        return new_sha

    def abort(self) -> None:
        if self._state not in ("conflicted", "apply_in_progress"):
            raise PreconditionError(
                "abort requires state conflicted or apply_in_progress, "
                f"current state is {self._state}"
            )
        self._rollback()
        log_event(LOGGER, "cherry_pick_aborted", path=str(self.path))

    def recover(self) -> RepositoryState:
        """Adopt unmerged paths that a previous process left in the working copy.

        Cherry-picks run with ``--no-commit``, so the original commit is not
        recorded on disk and the adopted conflict resumes with
        ``DEFAULT_RESOLVED_MESSAGE`` unless the caller supplies a message.
        """
        if self._state != "clean":
            return self._state
        conflicts = self.list_unmerged_paths()
        if not conflicts:
            return self._state
        self._pending = _PendingApply(commit=None, pre_apply_head=self.head_sha())
        self._state = "conflicted"
        log_event(LOGGER, "cherry_pick_recovered", conflicts=conflicts)
        return self._state

    def _commit(self, message: str) -> str:
        identity = self._identity_provider()
        self._git(
            "-c",
            f"user.name={identity.name}",
            "-c",
            f"user.email={identity.email}",
            "commit",
            "--quiet",
            "--allow-empty",
            "--allow-empty-message",
            "--cleanup=verbatim",
            "--file=-",
            input_text=message,
        )
        return self.head_sha()

    def _rollback(self) -> None:
        pending = self._pending
        target = pending.pre_apply_head if pending is not None else "HEAD"
        self._git("reset", "--hard", "--quiet", target)
        self._state = "clean"
        self._pending = None

    def _finish(self) -> None:
        self._state = "clean"
        self._pending = None

    def _ref_exists(self, ref: str) -> bool:
        return run_result(self._argv("show-ref", "--verify", "--quiet", ref)).ok

    def _require(self, expected: RepositoryState, *, operation: str) -> None:
        if self._state != expected:
            raise PreconditionError(
                f"{operation} requires state {expected}, current state is {self._state}"
            )

    def _argv(self, *args: str) -> list[str]:
        return ["git", "-C", str(self.path), *args]

    def _git(self, *args: str, input_text: str | None = None) -> str:
        return run(self._argv(*args), input_text=input_text)
