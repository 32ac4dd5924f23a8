"""Tests for the GitHub gateway, with requests patched out."""
import base64
from unittest.mock import patch

import pytest
import requests

from _entry_agent.error_codes import EntryError
from _entry_agent.github_gateway import GitHubGateway

from conftest import mock_response


@pytest.fixture
def gateway():
    return GitHubGateway(owner="ada", repo="blog", branch="main", token="t0ken")


def test_read_file_decodes_content(gateway):
    encoded = base64.b64encode("comments:\n  branch: main\n".encode()).decode()
    with patch("_entry_agent.github_gateway.requests.get",
               return_value=mock_response(json_data={"content": encoded})) as mock_get:
        assert gateway.read_file("postbox.yml") == "comments:\n  branch: main\n"

    url = mock_get.call_args[0][0]
    assert url == "https://api.github.com/repos/ada/blog/contents/postbox.yml"
    assert mock_get.call_args[1]["params"] == {"ref": "main"}
    assert mock_get.call_args[1]["headers"]["Authorization"] == "Bearer t0ken"


def test_read_file_missing(gateway):
    with patch("_entry_agent.github_gateway.requests.get", return_value=mock_response(404)):
        with pytest.raises(EntryError) as exc_info:
            gateway.read_file("postbox.yml")

    assert exc_info.value.code == "GITHUB_READING_FILE"
    assert exc_info.value.errors[0]["data"] == {"path": "postbox.yml"}


def test_write_file_encodes_content(gateway):
    with patch("_entry_agent.github_gateway.requests.put",
               return_value=mock_response(201, {"content": {"path": "a.json"}})) as mock_put:
        gateway.write_file("a.json", '{"name":"Zoë"}', "main", "Add entry")

    body = mock_put.call_args[1]["json"]
    assert body["branch"] == "main"
    assert body["message"] == "Add entry"
    assert "sha" not in body
    assert base64.b64decode(body["content"]).decode("utf-8") == '{"name":"Zoë"}'


def test_write_file_existing_path(gateway):
    resp = mock_response(422, {"message": "Invalid request.\n\n\"sha\" wasn't supplied."})
    with patch("_entry_agent.github_gateway.requests.put", return_value=resp):
        with pytest.raises(EntryError) as exc_info:
            gateway.write_file("a.json", "{}", "main", "Add entry")

    assert exc_info.value.code == "GITHUB_FILE_ALREADY_EXISTS"


@pytest.mark.parametrize("resp", [
    mock_response(422, {"message": "Validation Failed"}),
    mock_response(500, {"message": "Server Error"}),
])
def test_write_file_other_failures(gateway, resp):
    with patch("_entry_agent.github_gateway.requests.put", return_value=resp):
        with pytest.raises(EntryError) as exc_info:
            gateway.write_file("a.json", "{}", "main", "Add entry")

    assert exc_info.value.code == "GITHUB_WRITING_FILE"


def test_write_file_connection_error(gateway):
    with patch("_entry_agent.github_gateway.requests.put",
               side_effect=requests.ConnectionError("down")):
        with pytest.raises(EntryError) as exc_info:
            gateway.write_file("a.json", "{}", "main", "Add entry")

    assert exc_info.value.code == "GITHUB_WRITING_FILE"


def test_write_file_and_send_review(gateway):
    branch_resp = mock_response(json_data={"commit": {"sha": "deadbeef"}})
    ref_resp = mock_response(201, {"ref": "refs/heads/postbox_abc"})
    pr_resp = mock_response(201, {"number": 42})

    with patch("_entry_agent.github_gateway.requests.get", return_value=branch_resp), \
            patch("_entry_agent.github_gateway.requests.post",
                  side_effect=[ref_resp, pr_resp]) as mock_post, \
            patch("_entry_agent.github_gateway.requests.put",
                  return_value=mock_response(201, {})) as mock_put:
        review_id = gateway.write_file_and_send_review(
            "a.json", "{}", "postbox_abc", "Add entry", "body"
        )

    assert review_id == 42
    ref_call, pr_call = mock_post.call_args_list
    assert ref_call[1]["json"] == {"ref": "refs/heads/postbox_abc", "sha": "deadbeef"}
    assert pr_call[1]["json"] == {
        "title": "Add entry", "body": "body", "head": "postbox_abc", "base": "main",
    }
    assert mock_put.call_args[1]["json"]["branch"] == "postbox_abc"


def test_write_file_and_send_review_wraps_failures(gateway):
    with patch("_entry_agent.github_gateway.requests.get", return_value=mock_response(404)):
        with pytest.raises(EntryError) as exc_info:
            gateway.write_file_and_send_review("a.json", "{}", "postbox_abc", "Add", "body")

    assert exc_info.value.code == "GITHUB_CREATING_PR"
    assert exc_info.value.errors[0]["data"] == {"branch": "postbox_abc"}


@pytest.mark.parametrize("pr,expected_state", [
    ({"state": "closed", "merged": True}, "merged"),
    ({"state": "closed", "merged": False}, "closed"),
    ({"state": "open", "merged": False}, "open"),
])
def test_get_review_state(gateway, pr, expected_state):
    pr = {**pr, "title": "Add entry", "body": None,
          "head": {"ref": "postbox_abc"}, "base": {"ref": "main"}}
    with patch("_entry_agent.github_gateway.requests.get", return_value=mock_response(json_data=pr)):
        review = gateway.get_review(42)

    assert review.state == expected_state
    assert review.merged == (expected_state == "merged")
    assert review.body == ""
    assert review.source_branch == "postbox_abc"
    assert review.target_branch == "main"


def test_get_review_failure(gateway):
    with patch("_entry_agent.github_gateway.requests.get", return_value=mock_response(404)):
        with pytest.raises(EntryError) as exc_info:
            gateway.get_review(42)

    assert exc_info.value.code == "GITHUB_GET_REVIEW"


@pytest.mark.asyncio
async def test_async_wrappers_delegate(gateway):
    encoded = base64.b64encode(b"x: 1\n").decode()
    with patch("_entry_agent.github_gateway.requests.get",
               return_value=mock_response(json_data={"content": encoded})):
        assert await gateway.read_file_async("postbox.yml") == "x: 1\n"

    with patch("_entry_agent.github_gateway.requests.delete",
               return_value=mock_response(204)) as mock_delete:
        await gateway.delete_branch_async("postbox_abc")

    assert mock_delete.call_args[0][0].endswith("/git/refs/heads/postbox_abc")
