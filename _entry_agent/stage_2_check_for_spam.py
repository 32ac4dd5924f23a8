"""
Stage 2: Check For Spam — Postbox

PURPOSE:
    Ask Akismet whether a submission looks like spam before we spend any
    GitHub API calls on it. Only runs when the site config turns it on
    (`akismet.enabled: true`).

    The site config says WHICH submitted fields hold the author name, email,
    URL and comment body (e.g. `akismet.content: message`), since every site
    names its form fields differently.

CALLED BY:
    entry_pipeline_main.py — right after the site config is loaded, before
    field validation.

EXTERNAL APIS USED:
    - Akismet comment-check (https://<api-key>.rest.akismet.com/1.1/comment-check)
      Returns the literal body "true" (spam) or "false" (ham). Anything else,
      usually "invalid", means the key or the request was bad.

DESIGN DECISIONS:
    - A classifier failure fails the request with SPAM_CHECK_FAILED; the
      submission is never let through unchecked.
    - The HTTP call is blocking (requests), so it runs in a worker thread.
"""

import asyncio
import logging
from typing import Optional

import requests

from _entry_agent.error_codes import EntryError, make_error

logger = logging.getLogger(__name__)

AKISMET_URL_TEMPLATE = "https://{api_key}.rest.akismet.com/1.1/comment-check"


class AkismetClient:
    """Minimal Akismet client: just the comment-check call."""

    def __init__(self, site: str, api_key: str, timeout: int = 30):
        self.site = site
        self.api_key = api_key
        self.timeout = timeout

    def check_spam(self, payload: dict) -> bool:
        """
        Classify one submission.

        Args:
            payload: dict with ip, user_agent, type, author, author_email,
                     author_url, content.

        Returns:
            True if Akismet says spam. Raises EntryError(SPAM_CHECK_FAILED)
            on transport errors or an unexpected response body.
        """
        data = {
            "blog": self.site,
            "user_ip": payload.get("ip") or "",
            "user_agent": payload.get("user_agent") or "",
            "comment_type": payload.get("type") or "",
            "comment_author": payload.get("author") or "",
            "comment_author_email": payload.get("author_email") or "",
            "comment_author_url": payload.get("author_url") or "",
            "comment_content": payload.get("content") or "",
        }
        url = AKISMET_URL_TEMPLATE.format(api_key=self.api_key)

        try:
            resp = requests.post(url, data=data, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise EntryError("SPAM_CHECK_FAILED", message=f"Akismet request failed: {e}")

        verdict = resp.text.strip()
        if verdict == "true":
            return True
        if verdict == "false":
            return False

        raise EntryError(
            "SPAM_CHECK_FAILED",
            message=f"Unexpected Akismet response: {verdict[:100]}",
        )

    async def check_spam_async(self, payload: dict) -> bool:
        return await asyncio.to_thread(self.check_spam, payload)


async def check_for_spam(
    fields: dict,
    site_config,
    spam_checker,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None
) -> dict:
    """
    Run the spam check if the site has it enabled.

    Args:
        fields:       Submitted fields (not yet validated).
        site_config:  SiteConfig for this request.
        spam_checker: Object with an async check_spam_async(payload) -> bool,
                      or None when the service has no Akismet credentials.
        ip:           Submitter IP, forwarded to the classifier.
        user_agent:   Submitter user agent, forwarded to the classifier.

    Returns:
        dict with 'valid' (False when spam), 'errors', and 'checked'
        (whether the classifier was actually consulted). Classifier failures
        propagate as EntryError.
    """
    if not site_config.get("akismet.enabled"):
        return {"valid": True, "errors": [], "checked": False}

    if spam_checker is None:
        raise EntryError(
            "SPAM_CHECK_FAILED",
            message="Spam checking is enabled for this site but no classifier is configured",
        )

    payload = {
        "ip": ip,
        "user_agent": user_agent,
        "type": site_config.get("akismet.type"),
        "author": fields.get(site_config.get("akismet.author")),
        "author_email": fields.get(site_config.get("akismet.authorEmail")),
        "author_url": fields.get(site_config.get("akismet.authorUrl")),
        "content": fields.get(site_config.get("akismet.content")),
    }

    is_spam = await spam_checker.check_spam_async(payload)

    if is_spam:
        logger.info("Submission from %s classified as spam", ip or "unknown ip")
        return {"valid": False, "errors": [make_error("IS_SPAM")], "checked": True}

    return {"valid": True, "errors": [], "checked": True}
