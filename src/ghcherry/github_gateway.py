from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import json
import logging
from typing import Iterable, Iterator, Literal, cast
from urllib.parse import urlencode

from ghcherry.models import AuthenticatedUser, Commit, PullRequestSummary, RepositoryRef
from ghcherry.observability import log_event
from ghcherry.shell import run


LOGGER = logging.getLogger("ghcherry.github_gateway")
PullRequestSort = Literal["created", "updated", "popularity", "long-running"]
SortDirection = Literal["asc", "desc"]
PullRequestState = Literal["open", "closed", "all"]
_MAX_PER_PAGE = 100


class GitHubApiError(RuntimeError):
    """A GitHub API call failed or returned an unexpected payload."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def iter_pull_request_pages(
        self,
        base: str,
        *,
        sort: PullRequestSort = "updated",
        direction: SortDirection = "desc",
        state: PullRequestState = "all",
        per_page: int = _MAX_PER_PAGE,
    ) -> Iterator[list[PullRequestSummary]]:
        """Yield pull requests against ``base`` one page at a time.

        Pages are fetched lazily so a caller that stops iterating never requests
        the remaining pages.
        """
        if per_page < 1 or per_page > _MAX_PER_PAGE:
            raise ValueError(f"per_page must be between 1 and {_MAX_PER_PAGE}")
        page = 1
        while True:
            query = urlencode(
                {
                    "state": state,
                    "base": base,
                    "sort": sort,
                    "direction": direction,
                    "per_page": per_page,
                    "page": page,
                }
            )
            payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls?{query}")
            if not isinstance(payload, list):
                raise GitHubApiError("Unexpected GitHub response: expected list for pull requests")

            summaries: list[PullRequestSummary] = []
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                summaries.append(_parse_pull_request_summary(item_obj))
            log_event(
                LOGGER,
                "github_read",
                endpoint="pulls",
                base=base,
                page=page,
                count=len(summaries),
            )
            if summaries:
                yield summaries
            if len(payload) < per_page:
                return
            page += 1

    def get_labels(self, number: int) -> frozenset[str]:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/issues/{number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for issue")
        labels = _label_names(payload_obj.get("labels"))
        log_event(LOGGER, "github_read", endpoint="issue_labels", number=number, count=len(labels))
        return labels

    def set_labels(self, number: int, labels: Iterable[str]) -> None:
        ordered = sorted(set(labels))
        path = f"/repos/{self.owner}/{self.name}/issues/{number}/labels"
        self._api_json("PUT", path, payload={"labels": ordered})
        log_event(LOGGER, "github_labels_set", number=number, labels=ordered)

    def post_issue_comment(self, number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{number}/comments"
        self._api_json("POST", path, payload={"body": body})
        log_event(LOGGER, "github_issue_comment_posted", number=number)

    def list_pull_request_commits(self, number: int) -> tuple[Commit, ...]:
        commits: list[Commit] = []
        page = 1
        while True:
            query = urlencode({"per_page": _MAX_PER_PAGE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/pulls/{number}/commits?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubApiError(
                    "Unexpected GitHub response: expected list of pull request commits"
                )
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                commits.append(_parse_commit(item_obj))
            if len(payload) < _MAX_PER_PAGE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_commits",
            number=number,
            count=len(commits),
        )
        return tuple(commits)

    def get_commit(self, sha: str) -> Commit:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/commits/{sha}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for commit")
        return _parse_commit(payload_obj)

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        return _request_json(method, path, payload)


@dataclass(frozen=True)
class GitHubAccount:
    """Endpoints about the authenticated `gh` user rather than one repository."""

    def get_authenticated_user(self) -> AuthenticatedUser:
        payload = _as_object_dict(self._api_json("GET", "/user"))
        if payload is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for user")
        login = _as_string(payload.get("login"))
        if not login:
            raise GitHubApiError("Unexpected GitHub response: user without login")
        return AuthenticatedUser(login=login, name=_as_string(payload.get("name")) or login)

    def list_organizations(self) -> tuple[str, ...]:
        logins: list[str] = []
        for item in self._paged("/user/orgs", {}):
            login = _as_string(item.get("login"))
            if login:
                logins.append(login)
        log_event(LOGGER, "github_read", endpoint="user_orgs", count=len(logins))
        return tuple(logins)

    def list_repositories(self) -> tuple[RepositoryRef, ...]:
        repos: list[RepositoryRef] = []
        query = {"affiliation": "owner,collaborator,organization_member", "sort": "full_name"}
        for item in self._paged("/user/repos", query):
            owner_obj = _as_object_dict(item.get("owner")) or {}
            owner = _as_string(owner_obj.get("login"))
            name = _as_string(item.get("name"))
            if not owner or not name:
                continue
            repos.append(RepositoryRef(owner=owner, name=name, fork=item.get("fork") is True))
        log_event(LOGGER, "github_read", endpoint="user_repos", count=len(repos))
        return tuple(repos)

    def _paged(self, path: str, query: dict[str, str]) -> Iterator[dict[str, object]]:
        page = 1
        while True:
            encoded = urlencode({**query, "per_page": _MAX_PER_PAGE, "page": page})
            payload = self._api_json("GET", f"{path}?{encoded}")
            if not isinstance(payload, list):
                raise GitHubApiError(f"Unexpected GitHub response: expected list for {path}")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    yield item_obj
            if len(payload) < _MAX_PER_PAGE:
                return
            page += 1

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        return _request_json(method, path, payload)


def _request_json(method: str, path: str, payload: dict[str, object] | None = None) -> object:
    method_upper = method.upper()
    cmd = ["gh", "api", "--method", method_upper, "--include", path]
    stdin_payload: str | None = None
    if payload is not None:
        cmd.extend(["--input", "-"])
        stdin_payload = json.dumps(payload)
    raw = run(cmd, input_text=stdin_payload, check=False)
    try:
        status_code, _headers, body = _parse_http_response(raw)
        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            raise GitHubApiError(
                f"GitHub API request failed with status {status_code}: {message}"
            )
        if not body.strip():
            return None
        return json.loads(body)
    except (GitHubApiError, ValueError) as exc:
        log_event(
            LOGGER,
            "github_request_failed",
            method=method_upper,
            path=path,
            error_type=type(exc).__name__,
            error=str(exc),
            raw_preview=_preview_for_log(raw),
        )
        if isinstance(exc, GitHubApiError):
            raise
        raise GitHubApiError(f"GitHub {method_upper} failed for path {path}: {exc}") from exc


def _parse_pull_request_summary(item: dict[str, object]) -> PullRequestSummary:
    user_obj = _as_object_dict(item.get("user"))
    head_obj = _as_object_dict(item.get("head")) or {}
    base_obj = _as_object_dict(item.get("base")) or {}
    return PullRequestSummary(
        number=_as_int(item.get("number"), field="number"),
        title=_as_string(item.get("title")),
        author=_as_string(user_obj.get("login") if user_obj else None),
        created_at=_as_optional_datetime(item.get("created_at"), field="created_at"),
        updated_at=_as_optional_datetime(item.get("updated_at"), field="updated_at"),
        head_sha=_as_string(head_obj.get("sha")),
        base_ref=_as_string(base_obj.get("ref")),
        head_ref=_as_string(head_obj.get("ref")),
    )


def _parse_commit(item: dict[str, object]) -> Commit:
    sha = _as_string(item.get("sha"))
    if not sha:
        raise GitHubApiError("Unexpected GitHub response: commit without sha")
    commit_obj = _as_object_dict(item.get("commit")) or {}
    author_obj = _as_object_dict(commit_obj.get("author")) or {}
    author = _as_string(author_obj.get("name")) or "Unknown"
    return Commit(
        sha=sha,
        message=_as_string(commit_obj.get("message")),
        author=author,
        date=_as_optional_datetime(author_obj.get("date"), field="commit.author.date"),
        parents=_parent_shas(item.get("parents")),
    )


def _parent_shas(value: object) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    shas: list[str] = []
    for entry in value:
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        sha = _as_string(entry_obj.get("sha"))
        if sha:
            shas.append(sha)
    return tuple(shas)


def _label_names(value: object) -> frozenset[str]:
    names: set[str] = set()
    if not isinstance(value, list):
        return frozenset()
    for entry in value:
        if isinstance(entry, str):
            names.add(entry)
            continue
        entry_obj = _as_object_dict(entry)
        if entry_obj is None:
            continue
        name = entry_obj.get("name")
        if isinstance(name, str) and name:
            names.add(name)
    return frozenset(names)


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index
            break

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(
                f"Unexpected GitHub response value for {field}: {value}"
            ) from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")


def _as_optional_datetime(value: object, *, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    # GitHub timestamps are ISO 8601 with a trailing Z.
    normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub timestamp for {field}: {value}") from exc
