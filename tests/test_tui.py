from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest
from textual.widgets import DataTable

from ghcherry import tui
from ghcherry.git_ops import IdentityError, PreconditionError
from ghcherry.models import ChangeRequest, Commit
from ghcherry.orchestrator import ApplicationOutcome, ConflictReport
from ghcherry.selector import SelectionError


WHEN = datetime(2026, 10, 19, tzinfo=timezone.utc)


def _change_request(number: int, title: str, author: str = "alice") -> ChangeRequest:
    commit = Commit(sha=f"{number:040d}", message=title, author=author, date=None)
    return ChangeRequest(
        number=number,
        title=title,
        author=author,
        created_at=WHEN,
        updated_at=WHEN,
        labels=frozenset({"S1", "DEV", "pending cherrypick"}),
        commits=(commit,),
        head_sha=commit.sha,
        base_ref="develop",
        head_ref=f"feature/{number}",
    )


@dataclass
class FakeSelector:
    results: list[ChangeRequest]
    error: Exception | None = None
    calls: int = 0

    def select(self) -> list[ChangeRequest]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.results)


@dataclass
class FakeOrchestrator:
    conflict_numbers: set[int] = field(default_factory=set)
    applied: list[int] = field(default_factory=list)
    pending: ChangeRequest | None = None
    resume_errors: list[Exception] = field(default_factory=list)

    def apply(self, change_request: ChangeRequest, target_branch: str) -> ApplicationOutcome:
        if self.pending is not None:
            raise PreconditionError("PR is waiting for conflict resolution")
        self.applied.append(change_request.number)
        if change_request.number in self.conflict_numbers:
            self.pending = change_request
            return ApplicationOutcome(
                number=change_request.number,
                target_branch=target_branch,
                success=False,
                applied_commit_ids=(),
                conflict=ConflictReport(commit=change_request.commits[0], paths=("a.txt",)),
            )
        return _success(change_request.number, target_branch)

    def resume(self, message: str | None = None) -> ApplicationOutcome:
        _ = message
        if self.pending is None:
            raise PreconditionError("No cherry-pick is waiting for conflict resolution")
        if self.resume_errors:
            raise self.resume_errors.pop(0)
        number, self.pending = self.pending.number, None
        return _success(number, "main")

    def abort(self) -> ApplicationOutcome:
        if self.pending is None:
            raise PreconditionError("No cherry-pick is waiting for conflict resolution")
        number, self.pending = self.pending.number, None
        return ApplicationOutcome(
            number=number,
            target_branch="main",
            success=False,
            applied_commit_ids=(),
            error="Cherry-pick aborted",
        )


def _success(number: int, target_branch: str) -> ApplicationOutcome:
    return ApplicationOutcome(
        number=number,
        target_branch=target_branch,
        success=True,
        applied_commit_ids=("f" * 40,),
    )


def _app(
    selector: FakeSelector, orchestrator: FakeOrchestrator, *, page_size: int = 2
) -> tui.CherryPickApp:
    return tui.CherryPickApp(
        selector=selector,  # type: ignore[arg-type]
        orchestrator=orchestrator,  # type: ignore[arg-type]
        target_branch="main",
        repo_full_name="o/r",
        page_size=page_size,
    )


def test_matches_filter() -> None:
    item = _change_request(42, "Fix Login Bug", author="Bob")
    assert tui.matches_filter(item, None)
    assert tui.matches_filter(item, "  ")
    assert tui.matches_filter(item, "#42")
    assert tui.matches_filter(item, "42")
    assert tui.matches_filter(item, "login")
    assert tui.matches_filter(item, "bob")
    assert not tui.matches_filter(item, "carol")


def test_describe_outcome_variants() -> None:
    item = _change_request(7, "Title")
    assert tui.describe_outcome(_success(7, "main")) == "Successfully cherry-picked PR #7 to main"

    conflict = ApplicationOutcome(
        number=7,
        target_branch="main",
        success=False,
        applied_commit_ids=(),
        conflict=ConflictReport(commit=item.commits[0], paths=("a.txt", "b.txt")),
    )
    assert tui.describe_outcome(conflict).startswith("Conflicts in commit 00000000: a.txt, b.txt.")

    failed = ApplicationOutcome(
        number=7,
        target_branch="main",
        success=False,
        applied_commit_ids=("abcdef0123456789",),
        error="boom",
    )
    assert tui.describe_outcome(failed) == "PR #7 not applied: boom (applied: abcdef01)"
    assert tui._truncate("x" * 10, 6) == "xxx..."
    assert tui._truncate("short", 6) == "short"


def test_run_tui_runs_app(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    class FakeApp:
        def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
            called["kwargs"] = kwargs

        def run(self) -> None:
            called["ran"] = True

    monkeypatch.setattr(tui, "CherryPickApp", FakeApp)
    tui.run_tui(
        selector=FakeSelector([]),  # type: ignore[arg-type]
        orchestrator=FakeOrchestrator(),  # type: ignore[arg-type]
        target_branch="main",
        repo_full_name="o/r",
        page_size=5,
    )
    assert called["ran"] is True
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["page_size"] == 5
    assert kwargs["target_branch"] == "main"


def test_app_pages_filters_and_applies() -> None:
    selector = FakeSelector(
        [
            _change_request(1, "First"),
            _change_request(2, "Second", author="bob"),
            _change_request(3, "Third", author="bob"),
        ]
    )
    orchestrator = FakeOrchestrator(conflict_numbers={3})
    app = _app(selector, orchestrator)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            table = app.query_one("#candidates", DataTable)
            assert table.row_count == 2
            assert app.status_text == "Loaded 3 matching PRs"
            assert [item.number for item in app.visible_candidates] == [1, 2]

            app.action_next_page()
            assert [item.number for item in app.visible_candidates] == [3]
            app.action_next_page()
            assert [item.number for item in app.visible_candidates] == [3]
            app.action_previous_page()
            assert [item.number for item in app.visible_candidates] == [1, 2]

            app.apply_filter("bob")
            assert [item.number for item in app.visible_candidates] == [2, 3]

            app.cherry_pick_row(0)
            assert orchestrator.applied == [2]
            assert app.status_text == "Successfully cherry-picked PR #2 to main"
            assert [item.number for item in app.visible_candidates] == [3]

            app.cherry_pick_row(0)
            assert app.status_text.startswith("Conflicts in commit")
            assert [item.number for item in app.visible_candidates] == [3]

            app.cherry_pick_row(0)
            assert app.status_text.startswith("Error: PR is waiting")

            app.action_abort_pick()
            assert app.status_text.startswith("PR #3 not applied: Cherry-pick aborted")

            app.action_continue_pick()
            assert app.status_text.startswith("Error: No cherry-pick is waiting")

            app.cherry_pick_row(0)
            app.action_continue_pick()
            assert app.status_text == "Successfully cherry-picked PR #3 to main"
            assert app.visible_candidates == ()

            app.cherry_pick_row(5)
            app.apply_filter("")
            assert [item.number for item in app.visible_candidates] == [1]

            app.action_reload()
            assert selector.calls == 2
            assert table.row_count == 2

    asyncio.run(run_app())


def test_app_reports_selection_failure() -> None:
    selector = FakeSelector([], error=SelectionError("Failed to select pull requests: down"))
    app = _app(selector, FakeOrchestrator())

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            assert app.status_text == "Failed to load PRs: Failed to select pull requests: down"
            assert app.query_one("#candidates", DataTable).row_count == 0
            app.action_filter()
            app.action_cancel_filter()

    asyncio.run(run_app())


def test_app_keeps_conflict_when_commit_after_resolution_fails() -> None:
    orchestrator = FakeOrchestrator(
        conflict_numbers={1},
        resume_errors=[IdentityError("Git user.email not configured")],
    )
    app = _app(FakeSelector([_change_request(1, "First")]), orchestrator)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            app.cherry_pick_row(0)
            app.action_continue_pick()
            assert app.status_text == "Error: Git user.email not configured"
            assert orchestrator.pending is not None

            app.action_continue_pick()
            assert app.status_text == "Successfully cherry-picked PR #1 to main"
            assert app.visible_candidates == ()

    asyncio.run(run_app())
