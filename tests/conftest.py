"""
Shared fixtures and fakes for the entry pipeline tests.

FakeGateway stands in for GitHub: it serves a site config from memory and
records every write, branch and pull request so tests can assert on them.
"""
from unittest.mock import MagicMock

import pytest
import yaml

from _entry_agent.config import ServiceConfig
from _entry_agent.error_codes import EntryError
from _entry_agent.github_gateway import Review
from _entry_agent.stage_1_load_site_config import SiteConfig


class FakeGateway:
    """In-memory version-control gateway."""

    def __init__(self, files=None, branch="main"):
        self.files = dict(files or {})
        self.branch = branch
        self.branches = []
        self.writes = []
        self.reviews = []
        self.deleted_branches = []
        self.fail_write_with = None
        self.review_to_return = None

    async def read_file_async(self, path, ref=None):
        if path not in self.files:
            raise EntryError("GITHUB_READING_FILE", data={"path": path})
        return self.files[path]

    async def write_file_async(self, path, content, branch, message):
        if self.fail_write_with:
            raise EntryError(self.fail_write_with)
        self.writes.append(
            {"path": path, "content": content, "branch": branch, "message": message}
        )
        return {"content": {"path": path}}

    async def write_file_and_send_review_async(self, path, content, branch, commit_title, review_body):
        if self.fail_write_with:
            raise EntryError("GITHUB_CREATING_PR")
        self.branches.append(branch)
        self.writes.append(
            {"path": path, "content": content, "branch": branch, "message": commit_title}
        )
        self.reviews.append({"title": commit_title, "branch": branch, "body": review_body})
        return len(self.reviews)

    async def get_review_async(self, review_id):
        return self.review_to_return

    async def delete_branch_async(self, branch_name):
        self.deleted_branches.append(branch_name)


class FakeSubscriptions:
    """Records subscribe/send calls instead of talking to Mailgun."""

    def __init__(self, fail=False):
        self.subscribed = []
        self.sent = []
        self.fail = fail

    async def subscribe_async(self, thread_id, address):
        if self.fail:
            raise EntryError("NOTIFICATION_FAILED")
        self.subscribed.append((thread_id, address))

    async def send_async(self, thread_id, fields, options, site_name=""):
        if self.fail:
            raise EntryError("NOTIFICATION_FAILED")
        self.sent.append((thread_id, fields, options))
        return True


def site_config_block(**overrides) -> dict:
    """A minimal valid site config block. Override any key."""
    block = {
        "allowedFields": ["name", "email", "message"],
        "requiredFields": ["name", "message"],
        "branch": "main",
        "format": "json",
        "path": "_data/comments",
        "moderation": False,
        "commitMessage": "Add comment from {fields.name}",
    }
    block.update(overrides)
    return block


def make_site_config(**overrides) -> SiteConfig:
    return SiteConfig(site_config_block(**overrides))


def config_file(**overrides) -> str:
    """The YAML config file text with a `comments` block."""
    return yaml.safe_dump({"comments": site_config_block(**overrides)}, sort_keys=False)


def make_review(body="", state="merged", source_branch="postbox_abc", target_branch="main"):
    return Review(
        title="Add comment",
        body=body,
        state=state,
        source_branch=source_branch,
        target_branch=target_branch,
    )


def generate_private_pem() -> str:
    """A throwaway RSA private key in PEM form."""
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import rsa

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ).decode("ascii")


def mock_response(status_code=200, json_data=None, text=""):
    """A requests.Response stand-in."""
    import requests

    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.text = text
    resp.json.return_value = json_data if json_data is not None else {}
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    else:
        resp.raise_for_status.return_value = None
    return resp


@pytest.fixture
def service_config() -> ServiceConfig:
    return ServiceConfig(
        github_token="test-token",
        email_api_key="key-test",
        email_domain="mg.example.com",
        branch_prefix="postbox",
    )


@pytest.fixture
def parameters() -> dict:
    return {"username": "ada", "repository": "blog", "branch": "main"}


@pytest.fixture
def config_path() -> dict:
    return {"file": "postbox.yml", "path": "comments"}
