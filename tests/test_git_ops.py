from __future__ import annotations

from pathlib import Path
import shutil

import pytest

from ghcherry.git_ops import (
    DEFAULT_RESOLVED_MESSAGE,
    ApplyError,
    BranchNotFoundError,
    GitRepository,
    IdentityError,
    PreconditionError,
    UnresolvedConflictsError,
)
from ghcherry.models import Identity
from ghcherry.shell import CommandResult, run


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
IDENTITY = Identity(name="Cherry Bot", email="cherry@example.com")


def _git(path: Path, *args: str) -> str:
    return run(["git", "-C", str(path), *args])


def _init_repo(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    _git(path, "init", "-q", "-b", "main")
    _git(path, "config", "user.name", "Test User")
    _git(path, "config", "user.email", "test@example.com")
    _git(path, "config", "commit.gpgsign", "false")


def _commit_file(path: Path, name: str, content: str, message: str) -> str:
    (path / name).write_text(content, encoding="utf-8")
    _git(path, "add", name)
    _git(path, "commit", "-q", "-m", message)
    return _git(path, "rev-parse", "HEAD").strip()


@pytest.fixture
def source_repo(tmp_path: Path) -> tuple[Path, dict[str, str]]:
    """main has a.txt; develop carries two commits that are not on main."""
    path = tmp_path / "work"
    _init_repo(path)
    shas = {"base": _commit_file(path, "a.txt", "base\n", "Initial")}
    _git(path, "checkout", "-q", "-b", "develop")
    shas["change_a"] = _commit_file(path, "a.txt", "develop\n", "Change a\n\nLonger body line")
    shas["add_b"] = _commit_file(path, "b.txt", "bee\n", "Add b")
    _git(path, "checkout", "-q", "main")
    return path, shas


def _repo(path: Path) -> GitRepository:
    return GitRepository(path, identity_provider=lambda: IDENTITY)


@requires_git
def test_apply_clean_commit_preserves_message(source_repo: tuple[Path, dict[str, str]]) -> None:
    path, shas = source_repo
    repo = _repo(path)
    before = repo.head_sha()

    result = repo.apply(shas["change_a"])

    assert result.success is True
    assert result.conflicts == ()
    assert result.new_commit_id == repo.head_sha()
    assert result.new_commit_id != before
    assert repo.state == "clean"
    assert repo.is_clean()
    assert (path / "a.txt").read_text(encoding="utf-8") == "develop\n"
    picked = repo.read_commit(result.new_commit_id or "")
    assert picked.message == "Change a\n\nLonger body line"
    author = _git(path, "log", "-1", "--format=%an <%ae>").strip()
    assert author == "Cherry Bot <cherry@example.com>"
    assert _git(path, "rev-parse", "HEAD~1").strip() == before


@requires_git
def test_conflict_then_abort_restores_head_and_tree(
    source_repo: tuple[Path, dict[str, str]],
) -> None:
    path, shas = source_repo
    _commit_file(path, "a.txt", "main side\n", "Main edit")
    repo = _repo(path)
    before = repo.head_sha()

    result = repo.apply(shas["change_a"])

    assert result.success is False
    assert result.conflicts == ("a.txt",)
    assert result.new_commit_id is None
    assert repo.state == "conflicted"
    assert repo.pending_commit is not None
    assert repo.pending_commit.sha == shas["change_a"]

    with pytest.raises(PreconditionError, match="apply requires state clean"):
        repo.apply(shas["add_b"])

    repo.abort()

    assert repo.state == "clean"
    assert repo.head_sha() == before
    assert repo.is_clean()
    assert (path / "a.txt").read_text(encoding="utf-8") == "main side\n"


@requires_git
def test_continue_requires_resolution_then_commits(
    source_repo: tuple[Path, dict[str, str]],
) -> None:
    path, shas = source_repo
    _commit_file(path, "a.txt", "main side\n", "Main edit")
    repo = _repo(path)
    before = repo.head_sha()
    repo.apply(shas["change_a"])

    with pytest.raises(UnresolvedConflictsError, match="still unresolved conflicts") as excinfo:
        repo.continue_after_resolution()
    assert excinfo.value.paths == ("a.txt",)
    assert repo.state == "conflicted"

    (path / "a.txt").write_text("merged\n", encoding="utf-8")
    _git(path, "add", "a.txt")
    new_sha = repo.continue_after_resolution()

    assert repo.state == "clean"
    assert repo.is_clean()
    assert new_sha == repo.head_sha()
    assert _git(path, "rev-parse", "HEAD~1").strip() == before
    assert repo.read_commit(new_sha).message == "Change a\n\nLonger body line"
    assert (path / "a.txt").read_text(encoding="utf-8") == "merged\n"


@requires_git
def test_recover_adopts_conflict_left_by_another_handle(
    source_repo: tuple[Path, dict[str, str]],
) -> None:
    path, shas = source_repo
    _commit_file(path, "a.txt", "main side\n", "Main edit")
    _repo(path).apply(shas["change_a"])

    fresh = _repo(path)
    assert fresh.state == "clean"
    assert fresh.recover() == "conflicted"
    assert fresh.pending_commit is None

    (path / "a.txt").write_text("merged\n", encoding="utf-8")
    _git(path, "add", "a.txt")
    new_sha = fresh.continue_after_resolution()

    assert fresh.read_commit(new_sha).message == DEFAULT_RESOLVED_MESSAGE
    assert fresh.recover() == "clean"


@requires_git
def test_commit_failure_rolls_back(source_repo: tuple[Path, dict[str, str]]) -> None:
    path, shas = source_repo

    def no_identity() -> Identity:
        raise IdentityError("Git user.name not configured")

    repo = GitRepository(path, identity_provider=no_identity)
    before = repo.head_sha()

    with pytest.raises(ApplyError, match="user.name not configured"):
        repo.apply(shas["add_b"])

    assert repo.state == "clean"
    assert repo.head_sha() == before
    assert repo.is_clean()
    assert not (path / "b.txt").exists()


@requires_git
def test_apply_unknown_commit_and_abort_when_clean(
    source_repo: tuple[Path, dict[str, str]],
) -> None:
    path, _ = source_repo
    repo = _repo(path)

    with pytest.raises(ApplyError, match="Commit not found"):
        repo.apply("0" * 40)
    assert repo.state == "clean"

    with pytest.raises(PreconditionError, match="abort requires state"):
        repo.abort()
    with pytest.raises(PreconditionError, match="continue_after_resolution requires state"):
        repo.continue_after_resolution()


@requires_git
def test_checkout_branch_resolution(tmp_path: Path) -> None:
    upstream = tmp_path / "upstream"
    _init_repo(upstream)
    _commit_file(upstream, "a.txt", "base\n", "Initial")
    _git(upstream, "branch", "release")

    work = tmp_path / "work"
    run(["git", "clone", "-q", str(upstream), str(work)])
    repo = _repo(work)

    assert repo.resolve_branch("main") == "found_local"
    assert repo.checkout_branch("release") == "created_tracking"
    assert repo.current_branch() == "release"
    assert _git(work, "rev-parse", "--abbrev-ref", "release@{upstream}").strip() == (
        "origin/release"
    )
    assert repo.checkout_branch("main") == "found_local"
    assert repo.current_branch() == "main"

    with pytest.raises(BranchNotFoundError, match="'missing' not found"):
        repo.checkout_branch("missing")


@requires_git
def test_discover_finds_toplevel(source_repo: tuple[Path, dict[str, str]], tmp_path: Path) -> None:
    path, _ = source_repo
    nested = path / "nested" / "dir"
    nested.mkdir(parents=True)

    repo = GitRepository.discover(nested)

    assert repo.path.resolve() == path.resolve()
    assert repo.git_dir().resolve() == (path / ".git").resolve()

    outside = tmp_path / "outside"
    outside.mkdir()
    with pytest.raises(PreconditionError, match="No Git repository found"):
        GitRepository.discover(outside)


def test_configured_identity_reads_git_config(monkeypatch: pytest.MonkeyPatch) -> None:
    values = {"user.name": "Alice", "user.email": ""}

    def fake_run_result(argv: list[str], **kwargs: object) -> CommandResult:
        _ = kwargs
        key = argv[-1]
        value = values.get(key, "")
        return CommandResult(
            argv=tuple(argv),
            returncode=0 if value else 1,
            stdout=f"{value}\n" if value else "",
            stderr="",
        )

    monkeypatch.setattr("ghcherry.git_ops.run_result", fake_run_result)
    repo = GitRepository(Path("/tmp/repo"))

    with pytest.raises(IdentityError, match="user.email"):
        repo.configured_identity()

    values["user.email"] = "alice@example.com"
    assert repo.configured_identity() == Identity(name="Alice", email="alice@example.com")


def test_git_commands_target_repository_path(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return "a.txt\nb.txt\na.txt\n"

    monkeypatch.setattr("ghcherry.git_ops.run", fake_run)
    repo = GitRepository(Path("/tmp/repo"))

    assert repo.list_unmerged_paths() == ("a.txt", "b.txt")
    repo.fetch()
    assert calls == [
        ["git", "-C", "/tmp/repo", "diff", "--name-only", "--diff-filter=U"],
        ["git", "-C", "/tmp/repo", "fetch", "origin", "--prune"],
    ]
