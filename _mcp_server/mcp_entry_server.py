"""
MCP Server — Postbox

PURPOSE:
    Exposes the entry pipeline to AI agents over MCP (Model Context Protocol).
    An agent that wants to leave a comment on a static site, or a bot that
    relays form posts, calls these tools instead of talking to GitHub itself:

    1. submit_entry — Run a submission through the full pipeline
    2. process_merged_review — Send held-back notifications once a moderated
       entry's pull request has been merged (call it from a webhook relay)

    The server holds the GitHub, Akismet and Mailgun credentials. Agents never
    see them.

ARCHITECTURE:
    Uses the official MCP Python SDK (mcp package) with stdio transport.
    Tools are registered via the @mcp.tool() decorator and return the
    pipeline's result dicts unchanged.

INSTALLATION:
    pip install -e .

    Then add to your MCP config (e.g., Claude Desktop mcp.json):
    {
      "mcpServers": {
        "postbox": {
          "command": "python",
          "args": ["/path/to/_mcp_server/mcp_entry_server.py"],
          "env": {
            "GITHUB_TOKEN": "...",
            "RSA_PRIVATE_KEY": "..."
          }
        }
      }
    }
"""

import logging
from typing import Optional

from mcp.server.mcpserver import MCPServer

from _entry_agent.config import load_config
from _entry_agent.entry_pipeline_main import (
    build_error_result,
    handle_merged_review,
    process_entry,
)
from _entry_agent.github_gateway import GitHubGateway

# -----------------------------------------------------------------------
# CONFIGURATION
# -----------------------------------------------------------------------
# The site config file the pipeline reads from each target repository.
# A repo can hold several config blocks; `property` picks one.
# -----------------------------------------------------------------------

DEFAULT_CONFIG_FILE = "postbox.yml"

mcp = MCPServer("Postbox")


@mcp.tool()
async def submit_entry(
    username: str,
    repository: str,
    branch: str,
    fields: dict,
    options: Optional[dict] = None,
    property: str = "",
    config_file: str = DEFAULT_CONFIG_FILE,
    ip: str = "",
    user_agent: str = ""
) -> dict:
    """
    Submit an entry (e.g. a blog comment) to a static site's repository.

    The site's own config file decides which fields are allowed, how they are
    stored, and whether the entry is committed directly or opened as a pull
    request for moderation.

    Args:
        username: GitHub owner of the site repository.
        repository: Repository name.
        branch: Branch the site is built from (must match the site config).
        fields: The form fields, e.g. {"name": "Ada", "message": "Hi"}.
        options: Optional directives: parent (thread id), subscribe (name of
                 the email field), redirect (URL), origin (page URL).
        property: Config block to use inside the config file (e.g. 'comments').
        config_file: Path of the site config file in the repository.
        ip: Submitter IP, used for spam checking.
        user_agent: Submitter user agent, used for spam checking.
    """
    if not isinstance(fields, dict) or not fields:
        return build_error_result("MISSING_REQUIRED_FIELDS", [])

    parameters = {
        "username": username,
        "repository": repository,
        "branch": branch,
        "property": property,
    }
    return await process_entry(
        parameters,
        fields,
        options or {},
        config_path={"file": config_file, "path": property},
        ip=ip or None,
        user_agent=user_agent or None,
    )


@mcp.tool()
async def process_merged_review(
    username: str,
    repository: str,
    branch: str,
    review_id: int
) -> dict:
    """
    Handle a merged pull request for a moderated entry.

    Sends reply notifications to the thread's subscribers and deletes the
    entry branch. Pull requests that weren't opened by Postbox, or weren't
    merged, are ignored.

    Args:
        username: GitHub owner of the site repository.
        repository: Repository name.
        branch: Target branch the pull request was merged into.
        review_id: Pull request number.
    """
    service_config = load_config()
    gateway = GitHubGateway(
        owner=username,
        repo=repository,
        branch=branch,
        token=service_config.github_token,
        base_url=service_config.github_base_url,
        timeout=service_config.request_timeout_seconds,
    )
    return await handle_merged_review(gateway, review_id, service_config=service_config)


# -----------------------------------------------------------------------
# ENTRY POINT
# -----------------------------------------------------------------------
# Run the server via stdio transport. Agents connect by launching this
# script as a subprocess (configured in their mcp.json or equivalent).
# -----------------------------------------------------------------------

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    mcp.run()
