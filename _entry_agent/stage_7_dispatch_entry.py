"""
Stage 7: Dispatch Entry — Postbox

PURPOSE:
    Put the serialized entry into the repository. Two paths, chosen by the
    site's `moderation` setting:

    IF MODERATED (default):
      1. Create branch <prefix>_<entry id> from the target branch head
      2. Commit the entry file on that branch
      3. Open a pull request with the field table and the hidden callback
         payload as its body

    IF NOT MODERATED:
      1. Commit the entry file straight to the target branch

CALLED BY:
    entry_pipeline_main.py — after path resolution.

COST:
    4 GitHub API calls moderated, 1 unmoderated.
"""

from typing import Optional

from _entry_agent.review_payload import ReviewPayload


async def dispatch_entry(
    gateway,
    site_config,
    content: str,
    file_path: str,
    commit_message: str,
    target_branch: str,
    review_branch: str,
    fields: dict,
    payload: Optional[ReviewPayload] = None
) -> dict:
    """
    Commit the entry directly or via a pull request.

    Args:
        gateway:        GitHubGateway (or a fake with the same async methods).
        site_config:    SiteConfig for this request.
        content:        Serialized file contents from stage 6.
        file_path:      Resolved path of the new file.
        commit_message: Resolved commit message; also the PR title.
        target_branch:  Branch the entry belongs on.
        review_branch:  Branch name to use when moderated.
        fields:         Fields shown in the PR body table.
        payload:        Callback payload to embed, or None.

    Returns:
        dict with keys:
            - 'moderated' (bool)
            - 'branch' (str): branch the file was committed to
            - 'review_id' (int or None): PR number when moderated
        Gateway failures propagate as EntryError.
    """
    if site_config.get("moderation"):
        review_body = build_review_body(site_config, fields, payload)
        review_id = await gateway.write_file_and_send_review_async(
            file_path, content, review_branch, commit_message, review_body
        )
        return {"moderated": True, "branch": review_branch, "review_id": review_id}

    await gateway.write_file_async(file_path, content, target_branch, commit_message)
    return {"moderated": False, "branch": target_branch, "review_id": None}


def build_review_body(site_config, fields: dict, payload: Optional[ReviewPayload] = None) -> str:
    """
    The pull request body: the site's intro text, then a Field | Content
    table, then the callback payload if there is one.
    """
    lines = [
        "| Field | Content |",
        "|-------|---------|",
    ]
    for name, value in fields.items():
        lines.append(f"| {_table_cell(name)} | {_table_cell(value)} |")

    body = (site_config.get("pullRequestBody") or "") + "\n".join(lines)

    if payload is not None:
        body += "\n\n" + payload.to_comment()

    return body


def _table_cell(value) -> str:
    # Pipes and newlines would break the Markdown table row; angle brackets
    # are escaped so submitted HTML (comments included) renders as text
    text = "" if value is None else str(value)
    text = text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    return text.replace("|", "\\|").replace("\r\n", "<br>").replace("\n", "<br>")
