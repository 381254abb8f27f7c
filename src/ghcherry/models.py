from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal


RepositoryState = Literal["clean", "apply_in_progress", "conflicted"]
BranchResolution = Literal["found_local", "created_tracking", "not_found"]
CommitMode = Literal["range", "head"]

SHORT_SHA_LENGTH = 8


def short_sha(sha: str) -> str:
    return sha[:SHORT_SHA_LENGTH]


@dataclass(frozen=True)
class Commit:
    """A content-addressed commit; two commits are equal iff their shas are."""

    sha: str
    message: str = field(compare=False)
    author: str = field(compare=False)
    date: datetime | None = field(compare=False)
    parents: tuple[str, ...] = field(default=(), compare=False)

    @property
    def short_sha(self) -> str:
        return short_sha(self.sha)

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def subject(self) -> str:
        lines = self.message.strip().splitlines()
        return lines[0] if lines else ""


@dataclass(frozen=True)
class PullRequestSummary:
    number: int
    title: str
    author: str
    created_at: datetime | None
    updated_at: datetime | None
    head_sha: str
    base_ref: str
    head_ref: str


@dataclass(frozen=True)
class ChangeRequest:
    number: int
    title: str
    author: str
    created_at: datetime
    updated_at: datetime
    labels: frozenset[str]
    commits: tuple[Commit, ...]
    head_sha: str
    base_ref: str
    head_ref: str


@dataclass(frozen=True)
class ApplicationResult:
    success: bool
    conflicts: tuple[str, ...]
    new_commit_id: str | None

    @classmethod
    def applied(cls, new_commit_id: str) -> ApplicationResult:
        return cls(success=True, conflicts=(), new_commit_id=new_commit_id)

    @classmethod
    def conflicted(cls, conflicts: tuple[str, ...]) -> ApplicationResult:
        if not conflicts:
            raise ValueError("A conflicted result must name at least one path")
        return cls(success=False, conflicts=conflicts, new_commit_id=None)


@dataclass(frozen=True)
class Identity:
    name: str
    email: str


@dataclass(frozen=True)
class AuthenticatedUser:
    login: str
    name: str


@dataclass(frozen=True)
class RepositoryRef:
    owner: str
    name: str
    fork: bool
