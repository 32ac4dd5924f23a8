"""
Stage 4: Apply Generated Fields — Postbox

PURPOSE:
    Add fields the submitter never sent but the site wants in every entry,
    as declared under `generatedFields` in the site config:

        generatedFields:
          date:
            type: date
            options:
              format: timestamp-seconds
          slug:
            type: slugify
          layout: comment          # literal value, copied as-is

RULE TYPES:
    - date:    current time as `timestamp` (epoch ms), `timestamp-seconds`
               (epoch seconds, floored) or `iso8601` (the default).
    - slugify: slug of the submitted field named by the REQUEST option
               `options.field`. Skipped when that option isn't a string.
    - literal: anything that isn't a mapping is written verbatim.

    Mappings with a type we don't know are ignored, so a config written for a
    newer version of the service still works here, minus that one field.

CALLED BY:
    entry_pipeline_main.py — after field validation, before transforms.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Union


@dataclass(frozen=True)
class DateRule:
    format: str = "iso8601"


@dataclass(frozen=True)
class SlugifyRule:
    pass


@dataclass(frozen=True)
class LiteralRule:
    value: object = field(default=None)


GeneratedFieldRule = Union[DateRule, SlugifyRule, LiteralRule]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_generated_field_rule(raw) -> Optional[GeneratedFieldRule]:
    """Turn one `generatedFields` entry into a rule, or None if the type is unknown."""
    if not isinstance(raw, dict):
        return LiteralRule(raw)

    rule_options = raw.get("options") or {}
    rule_type = raw.get("type")

    if rule_type == "date":
        return DateRule(rule_options.get("format") or "iso8601")
    if rule_type == "slugify":
        return SlugifyRule()
    return None


def apply_generated_fields(
    fields: dict,
    site_config,
    options: dict,
    now: Optional[datetime] = None
) -> dict:
    """
    Return a copy of `fields` with every generated field applied.

    Args:
        fields:      Validated fields.
        site_config: SiteConfig for this request.
        options:     Request options (`field` names the slug source).
        now:         Clock override for tests. Defaults to the current UTC time.
    """
    generated_fields = site_config.get("generatedFields") or {}
    result = dict(fields)

    for name, raw_rule in generated_fields.items():
        rule = parse_generated_field_rule(raw_rule)

        if isinstance(rule, LiteralRule):
            result[name] = rule.value
        elif isinstance(rule, DateRule):
            result[name] = create_date(rule.format, now)
        elif isinstance(rule, SlugifyRule):
            source_field = options.get("field")
            if isinstance(source_field, str):
                result[name] = slugify(result.get(source_field)).lower()

    return result


def create_date(date_format: str, now: Optional[datetime] = None):
    """Render the current time in one of the supported date formats."""
    if now is None:
        now = datetime.now(timezone.utc)
    epoch_ms = (now - _EPOCH) // timedelta(milliseconds=1)

    if date_format == "timestamp":
        return epoch_ms
    if date_format == "timestamp-seconds":
        return epoch_ms // 1000

    # iso8601 and anything unrecognized
    utc = now.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def slugify(value) -> str:
    """
    Make a URL slug: strip accents, keep letters, digits and dashes.

    slugify("Héllo, World!") -> "Hello-World"
    (case is preserved; callers lower-case when they need to)
    """
    if value is None:
        return ""
    text = unicodedata.normalize("NFKD", str(value))
    text = text.encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^\w\s-]", "", text).strip()
    return re.sub(r"[-\s_]+", "-", text).strip("-")
