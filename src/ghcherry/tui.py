from __future__ import annotations

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Input, Static

from ghcherry.git_ops import IdentityError, PreconditionError
from ghcherry.models import ChangeRequest, short_sha
from ghcherry.orchestrator import ApplicationOutcome, CherryPickOrchestrator
from ghcherry.selector import CandidateSelector, SelectionError
from ghcherry.shell import CommandError


_TITLE_MAX_CHARS = 60


class CherryPickApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "reload", "Reload"),
        Binding("f", "filter", "Filter"),
        Binding("n", "next_page", "Next page"),
        Binding("p", "previous_page", "Prev page"),
        Binding("c", "continue_pick", "Continue"),
        Binding("a", "abort_pick", "Abort"),
        Binding("escape", "cancel_filter", "Cancel", show=False),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    #summary {
        height: 1;
        padding: 0 1;
    }
    #filter {
        display: none;
    }
    #filter.active {
        display: block;
    }
    DataTable {
        height: 1fr;
    }
    #status {
        height: auto;
        min-height: 3;
        padding: 0 1;
        border: round $accent;
    }
    """

    def __init__(
        self,
        *,
        selector: CandidateSelector,
        orchestrator: CherryPickOrchestrator,
        target_branch: str,
        repo_full_name: str,
        page_size: int = 20,
    ) -> None:
        super().__init__()
        self._selector = selector
        self._orchestrator = orchestrator
        self._target_branch = target_branch
        self._repo_full_name = repo_full_name
        self._page_size = max(page_size, 1)
        self._candidates: tuple[ChangeRequest, ...] = ()
        self._filter_query: str | None = None
        self._page = 0
        self._visible: tuple[ChangeRequest, ...] = ()
        self._status_text = ""

    def compose(self) -> ComposeResult:
        yield Header()
        with Vertical():
            yield Static("", id="summary")
            yield Input(placeholder="Filter by #, title or author", id="filter")
            yield DataTable(id="candidates", cursor_type="row")
            yield Static("", id="status")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#candidates", DataTable)
        table.add_columns("PR", "Title", "Author", "Updated", "Commits")
        self.action_reload()

    @property
    def visible_candidates(self) -> tuple[ChangeRequest, ...]:
        return self._visible

    @property
    def status_text(self) -> str:
        return self._status_text

    def action_reload(self) -> None:
        self._set_status("Loading PRs...")
        try:
            self._candidates = tuple(self._selector.select())
        except SelectionError as exc:
            self._candidates = ()
            self._set_status(f"Failed to load PRs: {exc}")
        else:
            self._set_status(f"Loaded {len(self._candidates)} matching PRs")
        self._page = 0
        self._refresh_table()

    def action_filter(self) -> None:
        field = self.query_one("#filter", Input)
        field.value = self._filter_query or ""
        field.add_class("active")
        field.focus()

    def action_cancel_filter(self) -> None:
        field = self.query_one("#filter", Input)
        field.remove_class("active")
        self.query_one("#candidates", DataTable).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        self.apply_filter(event.value)

    def apply_filter(self, query: str) -> None:
        self._filter_query = query.strip() or None
        self._page = 0
        self.action_cancel_filter()
        self._refresh_table()

    def action_next_page(self) -> None:
        if (self._page + 1) * self._page_size < len(self._filtered()):
            self._page += 1
            self._refresh_table()

    def action_previous_page(self) -> None:
        if self._page > 0:
            self._page -= 1
            self._refresh_table()

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        self.cherry_pick_row(event.cursor_row)

    def cherry_pick_row(self, row_index: int) -> None:
        if row_index < 0 or row_index >= len(self._visible):
            return
        change_request = self._visible[row_index]
        self._set_status(f"Cherry-picking PR #{change_request.number}: {change_request.title}")
        try:
            outcome = self._orchestrator.apply(change_request, self._target_branch)
        except PreconditionError as exc:
            self._set_status(f"Error: {exc}")
            return
        self._show_outcome(outcome)

    def action_continue_pick(self) -> None:
        try:
            outcome = self._orchestrator.resume()
        except (PreconditionError, CommandError, IdentityError) as exc:
            self._set_status(f"Error: {exc}")
            return
        self._show_outcome(outcome)

    def action_abort_pick(self) -> None:
        try:
            outcome = self._orchestrator.abort()
        except PreconditionError as exc:
            self._set_status(f"Error: {exc}")
            return
        self._show_outcome(outcome)

    def _show_outcome(self, outcome: ApplicationOutcome) -> None:
        self._set_status(describe_outcome(outcome))
        if outcome.success:
            self._candidates = tuple(
                item for item in self._candidates if item.number != outcome.number
            )
            self._refresh_table()

    def _filtered(self) -> tuple[ChangeRequest, ...]:
        return tuple(item for item in self._candidates if matches_filter(item, self._filter_query))

    def _refresh_table(self) -> None:
        filtered = self._filtered()
        start = self._page * self._page_size
        self._visible = filtered[start : start + self._page_size]
        table = self.query_one("#candidates", DataTable)
        table.clear(columns=False)
        for item in self._visible:
            table.add_row(
                f"#{item.number}",
                _truncate(item.title, _TITLE_MAX_CHARS),
                item.author,
                item.updated_at.strftime("%Y-%m-%d"),
                str(len(item.commits)),
            )
        page_count = max(1, -(-len(filtered) // self._page_size))
        filter_text = f" filter={self._filter_query!r}" if self._filter_query else ""
        self.query_one("#summary", Static).update(
            f"{self._repo_full_name} -> {self._target_branch}  "
            f"prs={len(filtered)} page={self._page + 1}/{page_count}{filter_text}"
        )

    def _set_status(self, text: str) -> None:
        self._status_text = text
        self.query_one("#status", Static).update(text)


def matches_filter(change_request: ChangeRequest, query: str | None) -> bool:
    if not query:
        return True
    needle = query.strip().lower()
    if not needle:
        return True
    return (
        needle in f"#{change_request.number}"
        or needle in change_request.title.lower()
        or needle in change_request.author.lower()
    )


def describe_outcome(outcome: ApplicationOutcome) -> str:
    if outcome.success:
        return f"Successfully cherry-picked PR #{outcome.number} to {outcome.target_branch}"
    if outcome.conflict is not None:
        paths = ", ".join(outcome.conflict.paths)
        return (
            f"Conflicts in commit {outcome.conflict.commit.short_sha}: {paths}. "
            "Resolve and stage them, then press c to continue or a to abort."
        )
    applied = ", ".join(short_sha(sha) for sha in outcome.applied_commit_ids) or "none"
    return f"PR #{outcome.number} not applied: {outcome.error} (applied: {applied})"


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[: limit - 3]}..."


def run_tui(
    *,
    selector: CandidateSelector,
    orchestrator: CherryPickOrchestrator,
    target_branch: str,
    repo_full_name: str,
    page_size: int,
) -> None:
    app = CherryPickApp(
        selector=selector,
        orchestrator=orchestrator,
        target_branch=target_branch,
        repo_full_name=repo_full_name,
        page_size=page_size,
    )
    app.run()
