"""
Stage 5: Apply Transforms — Postbox

PURPOSE:
    Apply the one-way field transforms declared under `transforms` in the
    site config, then stamp the internal fields (`_id`, `_parent`) onto the
    entry.

        transforms:
          email: md5              # store a Gravatar-style hash, not the address
          message: frontmatterContent

    `md5` is the only value-changing transform. `frontmatterContent` is a
    marker the serializer (stage 6) reads to decide which field becomes the
    Markdown body; it doesn't touch the value here.

CALLED BY:
    entry_pipeline_main.py — after generated fields, before serialization.

DESIGN DECISIONS:
    - apply_transforms() is async; the pipeline awaits it like the I/O stages.
    - Internal fields go first in the mapping and always win over submitted
      keys of the same name.
"""

import hashlib
from enum import Enum
from typing import Optional


class TransformRule(Enum):
    MD5 = "md5"
    FRONTMATTER_CONTENT = "frontmatterContent"


def parse_transform_rule(raw) -> Optional[TransformRule]:
    """Map a configured transform name to a rule; unknown names give None."""
    try:
        return TransformRule(raw)
    except ValueError:
        return None


async def apply_transforms(fields: dict, site_config) -> dict:
    """Return a copy of `fields` with every configured transform applied."""
    transforms = site_config.get("transforms") or {}
    result = dict(fields)

    for name, raw_rule in transforms.items():
        if not result.get(name):
            continue

        rule = parse_transform_rule(raw_rule)
        if rule is TransformRule.MD5:
            result[name] = md5_hex(result[name])

    return result


def md5_hex(value) -> str:
    return hashlib.md5(str(value).encode("utf-8")).hexdigest()


def apply_internal_fields(fields: dict, entry_id: str, options: dict) -> dict:
    """Return a new mapping with `_id` (and `_parent`, when set) prepended."""
    internal_fields = {"_id": entry_id}

    if options.get("parent"):
        internal_fields["_parent"] = options["parent"]

    extended = dict(internal_fields)
    for name, value in fields.items():
        if name not in internal_fields:
            extended[name] = value
    return extended
