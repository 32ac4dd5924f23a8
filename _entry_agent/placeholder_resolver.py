"""
Placeholder Resolver — Postbox

PURPOSE:
    Fill in `{...}` placeholders in the path, filename and commit message
    templates from the site config. For example, with the template

        _data/comments/{options.slug}/{@id}

    and options {"slug": "hello-world"}, the entry ends up under
    `_data/comments/hello-world/<entry id>`.

GRAMMAR:
    {@timestamp}      current time in epoch milliseconds
    {@id}             the unique entry id of this submission
    {a.b.c}           dotted lookup into the context ({"fields", "options"})

    Anything that doesn't resolve (or resolves to a falsy value) becomes "".
    There are no filters and no nested placeholders.

CALLED BY:
    entry_pipeline_main.py — path resolution and commit message.
    stage_1_load_site_config.py — reuses get_path() for dotted config lookups.
"""

import re
import time
from typing import Optional

PLACEHOLDER_PATTERN = re.compile(r"{(.*?)}")

_MISSING = object()


def get_path(obj, path: str, default=None):
    """
    Dotted-path lookup into nested dicts (and lists, by integer index).

    get_path({"a": {"b": 1}}, "a.b") -> 1
    """
    if path is None or path == "":
        return obj

    current = obj
    for part in str(path).split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def resolve_placeholders(
    subject: str,
    context: dict,
    entry_id: str,
    now_ms: Optional[int] = None
) -> str:
    """
    Replace every `{...}` placeholder in `subject`.

    Each distinct placeholder is resolved once, so `{@timestamp}` used twice
    in the same template yields the same value in both places. Substitution
    is a single pass over `subject`: text that comes out of a replacement is
    never scanned for further placeholders.

    Args:
        subject:  The template string.
        context:  Lookup root, normally {"fields": ..., "options": ...}.
        entry_id: Value for {@id}.
        now_ms:   Value for {@timestamp}. Defaults to the current time.

    Returns:
        The resolved string. A template with no placeholders comes back as-is.
    """
    tokens = []
    for match in PLACEHOLDER_PATTERN.finditer(subject):
        if match.group(0) not in tokens:
            tokens.append(match.group(0))

    if not tokens:
        return subject

    if now_ms is None:
        now_ms = int(time.time() * 1000)

    replacements = {}
    for token in tokens:
        name = token[1:-1]
        if name == "@timestamp":
            replacements[token] = str(now_ms)
        elif name == "@id":
            replacements[token] = str(entry_id)
        elif not name.strip():
            # "{}" names nothing; get_path("") would return the whole context
            replacements[token] = ""
        else:
            replacements[token] = _stringify(get_path(context, name))

    literal_pattern = re.compile("|".join(re.escape(token) for token in tokens))
    return literal_pattern.sub(lambda m: replacements[m.group(0)], subject)


def _stringify(value) -> str:
    # Falsy values (None, "", 0, False) resolve to nothing
    if not value:
        return ""
    if value is True:
        return "true"
    return str(value)
