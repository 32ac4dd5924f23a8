"""
Review Callback Payload — Postbox

PURPOSE:
    When an entry goes through moderation, the notification for the thread
    can only be sent once a human merges the pull request, possibly days
    later, on a different process that has none of the original request in
    memory. Instead of keeping server-side state, we tuck everything needed
    into the pull request body itself, inside an HTML comment GitHub doesn't
    render:

        <!--postbox_notification:{"version":1,"configPath":...,"fields":...}-->

    The merge handler reads the PR back, pulls this payload out, and has
    enough to re-load the site config and notify subscribers.

CALLED BY:
    stage_7_dispatch_entry.py — embeds the payload in the PR body.
    entry_pipeline_main.py — handle_merged_review() extracts it again.
"""

import json
import re
from dataclasses import dataclass
from typing import Optional

from _entry_agent.error_codes import EntryError

PAYLOAD_MARKER = "postbox_notification"
PAYLOAD_VERSION = 1

_PAYLOAD_PATTERN = re.compile(
    r"<!--" + re.escape(PAYLOAD_MARKER) + r":(.+?)-->", re.DOTALL
)


@dataclass
class ReviewPayload:
    config_path: dict
    fields: dict
    options: dict
    parameters: dict
    version: int = PAYLOAD_VERSION

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "configPath": self.config_path,
            "fields": self.fields,
            "options": self.options,
            "parameters": self.parameters,
        }

    def to_comment(self) -> str:
        """Serialize into the invisible HTML comment appended to a PR body."""
        encoded = json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))
        # Angle brackets only occur inside JSON strings, so escaping them keeps
        # values from opening or closing an HTML comment
        encoded = encoded.replace("<", "\\u003c").replace(">", "\\u003e")
        return f"<!--{PAYLOAD_MARKER}:{encoded}-->"

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewPayload":
        if not isinstance(data, dict):
            raise EntryError("INVALID_REVIEW_PAYLOAD", message="Payload is not an object")

        version = data.get("version", PAYLOAD_VERSION)
        if version != PAYLOAD_VERSION:
            raise EntryError(
                "INVALID_REVIEW_PAYLOAD",
                data={"version": version},
                message=f"Unsupported payload version {version}",
            )

        return cls(
            config_path=data.get("configPath") or {},
            fields=data.get("fields") or {},
            options=data.get("options") or {},
            parameters=data.get("parameters") or {},
            version=version,
        )

    @classmethod
    def from_review_body(cls, body: Optional[str]) -> Optional["ReviewPayload"]:
        """
        Extract the payload from a PR body.

        Only the last marker counts: build_review_body() appends the real
        payload after the field table, so anything earlier came from
        submitted content.

        Returns None when the body carries no payload. Raises
        EntryError(INVALID_REVIEW_PAYLOAD) if a payload is there but unreadable.
        """
        matches = list(_PAYLOAD_PATTERN.finditer(body or ""))
        if not matches:
            return None
        match = matches[-1]

        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError as e:
            raise EntryError("INVALID_REVIEW_PAYLOAD", message=str(e))

        return cls.from_dict(data)
