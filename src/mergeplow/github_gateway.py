from __future__ import annotations

import base64
from collections import OrderedDict
from dataclasses import dataclass, field, replace
import json
import logging
from typing import Literal, cast
from urllib.parse import quote, urlencode

from mergeplow.models import MergeMethod, PullRequestSnapshot
from mergeplow.observability import log_event
from mergeplow.shell import run


LOGGER = logging.getLogger("mergeplow.github_gateway")
CompareCommitsStatus = Literal["ahead", "identical", "behind", "diverged"]
_PAGE_SIZE = 100
_ETAG_CACHE_LIMIT = 256


class GitHubPollingError(RuntimeError):
    """Malformed or unreadable response from the gh CLI."""


class GitHubApiError(RuntimeError):
    """GitHub answered with a non-2xx status."""

    def __init__(self, *, method: str, path: str, status_code: int, message: str) -> None:
        super().__init__(
            f"GitHub API {method} {path} failed with status {status_code}: {message}"
        )
        self.method = method
        self.path = path
        self.status_code = status_code
        self.message = message


class CredentialError(ValueError):
    pass


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    token: str | None = field(default=None, repr=False)
    timeout_seconds: float | None = None
    # path -> (etag, payload), least recently used first.
    _etag_cache: OrderedDict[str, tuple[str, object]] = field(
        default_factory=OrderedDict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def with_token(self, token: str) -> GitHubGateway:
        """Return a gateway for the same repository acting as a different identity."""
        normalized = token.strip()
        if not normalized:
            raise CredentialError("GitHub token must be non-empty")
        if any(ch.isspace() for ch in normalized):
            raise CredentialError("GitHub token must not contain whitespace")
        return replace(self, token=normalized)

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise GitHubPollingError("Unexpected GitHub response: expected object for pull request")
        snapshot = _parse_pull_request(payload_obj)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
        )
        return snapshot

    def list_open_pull_requests(self, *, base: str | None = None) -> list[PullRequestSnapshot]:
        pulls: list[PullRequestSnapshot] = []
        page = 1
        while True:
            query_items: dict[str, object] = {"state": "open", "per_page": _PAGE_SIZE, "page": page}
            if base is not None:
                query_items["base"] = base
            path = f"/repos/{self.owner}/{self.name}/pulls?{urlencode(query_items)}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubPollingError(
                    "Unexpected GitHub response: expected list of pull requests"
                )
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                pulls.append(_parse_pull_request(item_obj))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="open_pull_requests",
            base=base,
            count=len(pulls),
        )
        return pulls

    def list_issue_comments(self, issue_number: int) -> tuple[str, ...]:
        """Return comment bodies, oldest first."""
        bodies: list[str] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubPollingError(
                    "Unexpected GitHub response: expected list of issue comments"
                )

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                bodies.append(_as_string(item_obj.get("body")))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(bodies),
        )
        return tuple(bodies)

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                level=logging.WARNING,
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def get_file_contents(self, file_path: str, *, ref: str) -> bytes | None:
        """Fetch a file at `ref`; None when the file or ref does not exist."""
        query = urlencode({"ref": ref})
        path = f"/repos/{self.owner}/{self.name}/contents/{quote(file_path)}?{query}"
        try:
            payload = self._api_json("GET", path)
        except GitHubApiError as exc:
            if exc.status_code == 404:
                log_event(
                    LOGGER,
                    "github_read",
                    endpoint="contents",
                    file_path=file_path,
                    ref=ref,
                    found=False,
                )
                return None
            raise

        payload_obj = _as_object_dict(payload)
        if payload_obj is None or payload_obj.get("type") != "file":
            raise GitHubPollingError(f"Unexpected GitHub response: {file_path} is not a file")
        encoding = _as_string(payload_obj.get("encoding"))
        if encoding != "base64":
            raise GitHubPollingError(f"Unexpected GitHub content encoding: {encoding!r}")
        content = base64.b64decode(_as_string(payload_obj.get("content")))
        log_event(
            LOGGER,
            "github_read",
            endpoint="contents",
            file_path=file_path,
            ref=ref,
            found=True,
            size=len(content),
        )
        return content

    def merge_pull_request(
        self,
        pr_number: int,
        *,
        method: MergeMethod,
        expected_head_sha: str,
    ) -> str:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge"
        request: dict[str, object] = {"merge_method": method, "sha": expected_head_sha}
        try:
            payload_obj = _as_object_dict(self._api_json("PUT", path, payload=request))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_merge_failed",
                level=logging.WARNING,
                repo_full_name=self.full_name,
                pr_number=pr_number,
                method=method,
                error_type=type(exc).__name__,
            )
            raise
        merge_sha = _as_string(payload_obj.get("sha") if payload_obj else None)
        log_event(
            LOGGER,
            "github_pr_merged",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            method=method,
            merge_sha=merge_sha,
        )
        return merge_sha

    def update_pull_request_branch(self, pr_number: int, *, expected_head_sha: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/update-branch"
        try:
            self._api_json("PUT", path, payload={"expected_head_sha": expected_head_sha})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_branch_update_failed",
                level=logging.WARNING,
                repo_full_name=self.full_name,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_branch_updated",
            repo_full_name=self.full_name,
            pr_number=pr_number,
        )

    def delete_branch(self, branch: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{quote(branch)}"
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_branch_deleted", repo_full_name=self.full_name, branch=branch)

    def compare_commits(self, base: str, head: str) -> CompareCommitsStatus:
        path = f"/repos/{self.owner}/{self.name}/compare/{quote(base)}...{quote(head)}"
        payload_obj = _as_object_dict(self._api_json("GET", path, cacheable=False))
        if payload_obj is None:
            raise GitHubPollingError(
                "Unexpected GitHub response: expected object for compare commits"
            )

        status_raw = _as_string(payload_obj.get("status")).strip().lower()
        valid_statuses = {"ahead", "identical", "behind", "diverged"}
        if status_raw not in valid_statuses:
            raise GitHubPollingError(f"Unexpected GitHub compare status: {status_raw!r}")
        status = cast(CompareCommitsStatus, status_raw)

        log_event(
            LOGGER,
            "github_read",
            endpoint="compare_commits",
            base=base,
            head=head,
            status=status,
        )
        return status

    def _api_json(
        self,
        method: str,
        path: str,
        payload: dict[str, object] | None = None,
        *,
        cacheable: bool = True,
    ) -> object:
        method_upper = method.upper()
        cacheable = cacheable and method_upper == "GET"
        cmd = ["gh", "api", "--method", method_upper]
        cached = self._etag_cache.get(path) if cacheable else None
        if cached is not None:
            self._etag_cache.move_to_end(path)
            cmd.extend(["--header", f"If-None-Match: {cached[0]}"])
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        cmd.extend(["--include", path])

        raw = run(
            cmd,
            input_text=stdin_payload,
            check=False,
            env={"GH_TOKEN": self.token} if self.token else None,
            timeout=self.timeout_seconds,
        )
        try:
            status_code, headers, body = _parse_http_response(raw)

            if status_code == 304 and method_upper == "GET":
                if cached is None:
                    raise GitHubPollingError(f"GitHub returned 304 for uncached path: {path}")
                return cached[1]

            if status_code < 200 or status_code >= 300:
                raise GitHubApiError(
                    method=method_upper,
                    path=path,
                    status_code=status_code,
                    message=_api_error_message(body),
                )

            if not body.strip():
                return None
            payload_obj = json.loads(body)
            etag = headers.get("etag")
            if cacheable and etag:
                self._remember(path, etag, payload_obj)
            return payload_obj
        except GitHubApiError as exc:
            log_event(
                LOGGER,
                "github_api_error",
                method=method_upper,
                path=path,
                status_code=exc.status_code,
                error=exc.message,
            )
            raise
        except Exception as exc:
            log_event(
                LOGGER,
                "github_response_unreadable",
                level=logging.WARNING,
                method=method_upper,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(
                f"GitHub {method_upper} failed for path {path}: {exc}"
            ) from exc

    def _remember(self, path: str, etag: str, payload_obj: object) -> None:
        self._etag_cache[path] = (etag, payload_obj)
        self._etag_cache.move_to_end(path)
        while len(self._etag_cache) > _ETAG_CACHE_LIMIT:
            self._etag_cache.popitem(last=False)


def _parse_pull_request(payload_obj: dict[str, object]) -> PullRequestSnapshot:
    head = _as_object_dict(payload_obj.get("head"))
    base = _as_object_dict(payload_obj.get("base"))
    if head is None or base is None:
        raise GitHubPollingError("Unexpected GitHub response: missing pull request head/base")
    head_repo = _as_object_dict(head.get("repo"))

    label_names: list[str] = []
    labels_obj = payload_obj.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            label = entry_obj.get("name")
            if isinstance(label, str):
                label_names.append(label)

    return PullRequestSnapshot(
        number=_as_int(payload_obj.get("number"), field="number"),
        state=_as_string(payload_obj.get("state")).strip().lower(),
        draft=_as_bool(payload_obj.get("draft", False)),
        merged=_as_bool(payload_obj.get("merged", False)),
        labels=tuple(label_names),
        head_ref=_as_string(head.get("ref")),
        head_sha=_as_string(head.get("sha")),
        head_repo_full_name=_as_string(head_repo.get("full_name") if head_repo else None),
        base_ref=_as_string(base.get("ref")),
    )


def _api_error_message(body: str) -> str:
    stripped = body.strip()
    if not stripped:
        return "<empty>"
    try:
        parsed = json.loads(stripped)
    except ValueError:
        return stripped
    parsed_obj = _as_object_dict(parsed)
    if parsed_obj is None:
        return stripped
    message = _as_string(parsed_obj.get("message")).strip()
    return message or stripped


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubPollingError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubPollingError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubPollingError(
            f"Unexpected GitHub response status line: {status_line!r}"
        ) from exc

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
        raise GitHubPollingError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubPollingError(
                f"Unexpected GitHub response value for {field}: {value}"
            ) from exc
    raise GitHubPollingError(f"Unexpected GitHub response type for {field}")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise GitHubPollingError("Unexpected GitHub response type for bool field")
