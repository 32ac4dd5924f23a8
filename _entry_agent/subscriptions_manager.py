"""
Subscriptions Manager — Postbox

PURPOSE:
    Reply notifications for threaded entries (comment threads). Someone who
    ticks "notify me of replies" is subscribed to the thread's mailing list;
    when a reply lands on the thread, one email goes to that list.

    Mailgun mailing lists do the bookkeeping: Postbox keeps no subscriber
    database of its own, and Mailgun handles unsubscribe links.

LIST ADDRESSES:
    One list per thread, named after an MD5 of "<owner>-<repo>-<parent id>":

        5f0e3b1c...@<mailgun domain>

    So the same thread always maps to the same list, and the repo name isn't
    exposed in list addresses.

EXTERNAL APIS USED:
    - Mailgun lists API (GET/POST /lists, POST /lists/<address>/members)
    - Mailgun messages API (POST /<domain>/messages)

CALLED BY:
    entry_pipeline_main.py — subscribe() and send() after an entry is written,
    and send() again from the merge handler for moderated entries.
"""

import asyncio
import hashlib
import logging
from html import escape
from typing import Optional

import requests

from _entry_agent.error_codes import EntryError

logger = logging.getLogger(__name__)


class MailgunClient:
    """The handful of Mailgun calls the subscriptions manager needs."""

    def __init__(
        self,
        api_key: str,
        domain: str,
        api_base_url: str = "https://api.mailgun.net/v3",
        timeout: int = 30
    ):
        self.domain = domain
        self.api_base_url = api_base_url.rstrip("/")
        self.auth = ("api", api_key)
        self.timeout = timeout

    def get_list(self, address: str) -> Optional[dict]:
        """Return the list, or None if Mailgun has no list at that address."""
        url = f"{self.api_base_url}/lists/{address}"
        resp = requests.get(url, auth=self.auth, timeout=self.timeout)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json().get("list")

    def create_list(self, address: str, description: str) -> dict:
        url = f"{self.api_base_url}/lists"
        data = {"address": address, "description": description}
        resp = requests.post(url, auth=self.auth, data=data, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def add_member(self, list_address: str, member_address: str) -> dict:
        url = f"{self.api_base_url}/lists/{list_address}/members"
        data = {"address": member_address, "upsert": "yes"}
        resp = requests.post(url, auth=self.auth, data=data, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def send_message(self, sender: str, to: str, subject: str, html: str) -> dict:
        url = f"{self.api_base_url}/{self.domain}/messages"
        data = {"from": sender, "to": to, "subject": subject, "html": html}
        resp = requests.post(url, auth=self.auth, data=data, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()


class SubscriptionsManager:
    """
    Subscribe addresses to threads and notify a thread's subscribers.

    Args:
        parameters:   Request parameters (`username`, `repository`) that
                      namespace the thread lists.
        mailer:       A MailgunClient (or anything with the same methods).
        from_address: Sender address for notification emails.
    """

    def __init__(self, parameters: dict, mailer, from_address: str):
        self.parameters = parameters
        self.mailer = mailer
        self.from_address = from_address

    def list_address(self, thread_id: str) -> str:
        compound_id = "{}-{}-{}".format(
            self.parameters.get("username"),
            self.parameters.get("repository"),
            thread_id,
        )
        digest = hashlib.md5(compound_id.encode("utf-8")).hexdigest()
        return f"{digest}@{self.mailer.domain}"

    def subscribe(self, thread_id: str, address: str) -> None:
        """Add `address` to the thread's list, creating the list on first use."""
        list_address = self.list_address(thread_id)
        try:
            if self.mailer.get_list(list_address) is None:
                description = "Subscribers to thread {} in {}/{}".format(
                    thread_id,
                    self.parameters.get("username"),
                    self.parameters.get("repository"),
                )
                self.mailer.create_list(list_address, description)

            self.mailer.add_member(list_address, address)
        except requests.RequestException as e:
            raise EntryError(
                "NOTIFICATION_FAILED",
                data={"thread": thread_id},
                message=f"Could not subscribe to thread {thread_id}: {e}",
            )

    def send(self, thread_id: str, fields: dict, options: dict, site_name: str = "") -> bool:
        """
        Email everyone subscribed to `thread_id`.

        Returns False without sending when the thread has no list yet (no one
        ever subscribed), True once the message is handed to Mailgun.
        """
        list_address = self.list_address(thread_id)
        try:
            if self.mailer.get_list(list_address) is None:
                return False

            sender = f"{site_name or 'Postbox'} <{self.from_address}>"
            subject = f'New reply on "{site_name}"' if site_name else "New reply"
            html = build_notification_html(fields, options, site_name)

            self.mailer.send_message(sender, list_address, subject, html)
        except requests.RequestException as e:
            raise EntryError(
                "NOTIFICATION_FAILED",
                data={"thread": thread_id},
                message=f"Could not notify thread {thread_id}: {e}",
            )

        logger.info("Sent reply notification for thread %s", thread_id)
        return True

    async def subscribe_async(self, thread_id: str, address: str) -> None:
        await asyncio.to_thread(self.subscribe, thread_id, address)

    async def send_async(
        self, thread_id: str, fields: dict, options: dict, site_name: str = ""
    ) -> bool:
        return await asyncio.to_thread(self.send, thread_id, fields, options, site_name)


def build_notification_html(fields: dict, options: dict, site_name: str = "") -> str:
    """The body of a reply notification. Links back to the page when we know it."""
    where = f" on <b>{escape(site_name)}</b>" if site_name else ""
    origin = options.get("origin")
    link = f'<a href="{escape(str(origin))}">Click here</a> to see it. ' if origin else ""

    return (
        "<html><body>"
        "Dear human,<br><br>"
        f"Someone replied to a comment you subscribed to{where}.<br><br>"
        f"{link}"
        "If you do not wish to receive any further notifications for this thread, "
        '<a href="%mailing_list_unsubscribe_url%">click here</a>.<br><br>'
        "Postbox"
        "</body></html>"
    )
