"""
GitHub Gateway — Postbox

PURPOSE:
    Every call Postbox makes to the GitHub REST API: reading the site config,
    committing entry files, and the branch + pull request dance for moderated
    entries.

    The blocking methods are plain `requests` calls. The pipeline awaits the
    `*_async` wrappers, which run the blocking call in a worker thread so a
    slow GitHub response never stalls the event loop.

AUTH:
    A token with contents:write and pull-requests:write on the target repo
    (a bot account's personal access token, or an installation token).

ERRORS:
    Failures are raised as EntryError with one of:
        GITHUB_READING_FILE         config file missing or unreadable
        GITHUB_FILE_ALREADY_EXISTS  the entry path is already taken
        GITHUB_WRITING_FILE         any other commit failure
        GITHUB_CREATING_PR          branch or pull request creation failed
        GITHUB_GET_REVIEW           pull request lookup failed
"""

import asyncio
import base64
import logging
from dataclasses import dataclass

import requests

from _entry_agent.error_codes import EntryError

logger = logging.getLogger(__name__)


@dataclass
class Review:
    """The parts of a pull request the merge handler cares about."""
    title: str
    body: str
    state: str          # "open" | "closed" | "merged"
    source_branch: str
    target_branch: str

    @property
    def merged(self) -> bool:
        return self.state == "merged"


class GitHubGateway:
    """
    Thin wrapper around the GitHub REST API for one repository and branch.

    `branch` is the target branch entries are merged into; moderated entries
    branch off its head and open their pull request against it.
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        branch: str,
        token: str,
        base_url: str = "https://api.github.com",
        timeout: int = 30
    ):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.timeout = timeout
        self.base_url = f"{base_url.rstrip('/')}/repos/{owner}/{repo}"
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "Postbox",
        }

    # -----------------------------------------------------------------------
    # Blocking API calls
    # -----------------------------------------------------------------------

    def read_file(self, path: str, ref: str = None) -> str:
        """Return the decoded text of a file on `ref` (default: target branch)."""
        url = f"{self.base_url}/contents/{path}"
        try:
            resp = requests.get(
                url,
                headers=self.headers,
                params={"ref": ref or self.branch},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            content = resp.json().get("content", "")
            return base64.b64decode(content).decode("utf-8")
        except (requests.RequestException, ValueError) as e:
            raise EntryError(
                "GITHUB_READING_FILE",
                data={"path": path},
                message=f"Could not read {path}: {e}",
            )

    def write_file(self, path: str, content: str, branch: str, message: str) -> dict:
        """
        Create a new file on `branch`.

        Never overwrites: GitHub answers 422 ("sha" wasn't supplied) when the
        path exists, which we report as GITHUB_FILE_ALREADY_EXISTS.
        """
        url = f"{self.base_url}/contents/{path}"
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        data = {
            "message": message,
            "content": encoded,
            "branch": branch,
        }

        try:
            resp = requests.put(url, headers=self.headers, json=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise EntryError("GITHUB_WRITING_FILE", message=str(e))

        if resp.status_code == 422 and "\"sha\" wasn't supplied" in _error_message(resp):
            raise EntryError("GITHUB_FILE_ALREADY_EXISTS", data={"path": path})

        if not resp.ok:
            raise EntryError(
                "GITHUB_WRITING_FILE",
                message=f"GitHub returned {resp.status_code}: {_error_message(resp)}",
            )
        return resp.json()

    def get_branch_head_commit(self, branch: str) -> str:
        """Get the SHA of the HEAD commit on `branch`."""
        url = f"{self.base_url}/branches/{branch}"
        resp = requests.get(url, headers=self.headers, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()["commit"]["sha"]

    def create_branch(self, branch_name: str, sha: str) -> dict:
        """Create a new branch from the given SHA."""
        url = f"{self.base_url}/git/refs"
        data = {"ref": f"refs/heads/{branch_name}", "sha": sha}
        resp = requests.post(url, headers=self.headers, json=data, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def delete_branch(self, branch_name: str) -> None:
        url = f"{self.base_url}/git/refs/heads/{branch_name}"
        resp = requests.delete(url, headers=self.headers, timeout=self.timeout)
        resp.raise_for_status()

    def create_review(self, title: str, branch: str, body: str) -> int:
        """Open a pull request from `branch` into the target branch. Returns its number."""
        url = f"{self.base_url}/pulls"
        data = {"title": title, "body": body, "head": branch, "base": self.branch}
        resp = requests.post(url, headers=self.headers, json=data, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()["number"]

    def get_review(self, review_id: int) -> Review:
        url = f"{self.base_url}/pulls/{review_id}"
        try:
            resp = requests.get(url, headers=self.headers, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise EntryError("GITHUB_GET_REVIEW", data={"review_id": review_id}, message=str(e))

        pr = resp.json()
        state = pr.get("state", "open")
        if pr.get("merged") and state == "closed":
            state = "merged"

        return Review(
            title=pr.get("title", ""),
            body=pr.get("body") or "",
            state=state,
            source_branch=pr["head"]["ref"],
            target_branch=pr["base"]["ref"],
        )

    def write_file_and_send_review(
        self,
        path: str,
        content: str,
        branch: str,
        commit_title: str,
        review_body: str
    ) -> int:
        """
        Branch off the target branch, commit the file there, open a PR.

        A branch created before a later step fails is left behind; callers
        that care can remove it with delete_branch().
        """
        try:
            sha = self.get_branch_head_commit(self.branch)
            self.create_branch(branch, sha)
            self.write_file(path, content, branch, commit_title)
            return self.create_review(commit_title, branch, review_body)
        except (EntryError, requests.RequestException) as e:
            raise EntryError(
                "GITHUB_CREATING_PR",
                data={"branch": branch},
                message=f"Could not open pull request from {branch}: {e}",
            )

    # -----------------------------------------------------------------------
    # Async wrappers used by the pipeline
    # -----------------------------------------------------------------------

    async def read_file_async(self, path: str, ref: str = None) -> str:
        return await asyncio.to_thread(self.read_file, path, ref)

    async def write_file_async(self, path: str, content: str, branch: str, message: str) -> dict:
        return await asyncio.to_thread(self.write_file, path, content, branch, message)

    async def write_file_and_send_review_async(
        self, path: str, content: str, branch: str, commit_title: str, review_body: str
    ) -> int:
        return await asyncio.to_thread(
            self.write_file_and_send_review, path, content, branch, commit_title, review_body
        )

    async def get_review_async(self, review_id: int) -> Review:
        return await asyncio.to_thread(self.get_review, review_id)

    async def delete_branch_async(self, branch_name: str) -> None:
        await asyncio.to_thread(self.delete_branch, branch_name)


def _error_message(resp) -> str:
    try:
        return str(resp.json().get("message", ""))
    except ValueError:
        return resp.text or ""
