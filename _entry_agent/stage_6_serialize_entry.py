"""
Stage 6: Serialize Entry — Postbox

PURPOSE:
    Render the final field mapping into the file that gets committed, in the
    format the site config asks for:

        json         {"_id":"...","name":"Ada","message":"Hi"}
        yaml / yml   one `key: value` line per field
        frontmatter  a Markdown file: YAML header between `---` lines, then
                     the body taken from the field marked `frontmatterContent`

    Jekyll, Hugo and Eleventy read all of them natively.

CALLED BY:
    entry_pipeline_main.py — after transforms and internal fields.

RETURNS:
    dict with 'valid', 'errors', 'content' (str) and 'extension'.
"""

import json
from enum import Enum
from typing import Optional

import yaml

from _entry_agent.error_codes import make_error
from _entry_agent.stage_5_apply_transforms import TransformRule, parse_transform_rule


class Format(Enum):
    JSON = "json"
    YAML = "yaml"
    FRONTMATTER = "frontmatter"


_FORMAT_ALIASES = {
    "json": Format.JSON,
    "yaml": Format.YAML,
    "yml": Format.YAML,
    "frontmatter": Format.FRONTMATTER,
}

_EXTENSIONS = {
    Format.JSON: "json",
    Format.YAML: "yml",
    Format.FRONTMATTER: "md",
}


def parse_format(raw) -> Optional[Format]:
    """Case-insensitive lookup of a configured format; None if unsupported."""
    return _FORMAT_ALIASES.get(str(raw).lower()) if raw is not None else None


def serialize_entry(fields: dict, site_config) -> dict:
    """
    Serialize `fields` according to `site_config.get("format")`.

    This is the ONLY public function in this file that the pipeline calls.

    Args:
        fields:      Final mapping, internal fields included.
        site_config: SiteConfig for this request.

    Returns:
        dict with keys:
            - 'valid' (bool)
            - 'errors' (list[dict]): INVALID_FORMAT,
              NO_FRONTMATTER_CONTENT_TRANSFORM or SERIALIZATION_FAILED
            - 'content' (str or None): the file contents
            - 'extension' (str or None): file extension for this format
    """
    entry_format = parse_format(site_config.get("format"))

    if entry_format is None:
        return _invalid(make_error("INVALID_FORMAT", site_config.get("format")))

    try:
        if entry_format is Format.JSON:
            content = json.dumps(fields, ensure_ascii=False, separators=(",", ":"))
        elif entry_format is Format.YAML:
            content = _dump_yaml(fields)
        else:
            content_field = _find_frontmatter_content_field(site_config)
            if content_field is None:
                return _invalid(make_error("NO_FRONTMATTER_CONTENT_TRANSFORM"))

            header = dict(fields)
            body = header.pop(content_field, None)
            body = "" if body is None else body
            content = f"---\n{_dump_yaml(header)}---\n{body}\n"
    except (yaml.YAMLError, TypeError, ValueError) as e:
        return _invalid(make_error("SERIALIZATION_FAILED", message=str(e)))

    return {
        "valid": True,
        "errors": [],
        "content": content,
        "extension": _EXTENSIONS[entry_format],
    }


# ---------------------------------------------------------------------------
# HELPER FUNCTIONS (private to this module)
# ---------------------------------------------------------------------------


def _dump_yaml(data: dict) -> str:
    # Keep the field order the entry was built in (internal fields first)
    return yaml.safe_dump(
        data,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )


def _find_frontmatter_content_field(site_config) -> Optional[str]:
    transforms = site_config.get("transforms") or {}
    for name, raw_rule in transforms.items():
        if parse_transform_rule(raw_rule) is TransformRule.FRONTMATTER_CONTENT:
            return name
    return None


def _invalid(error: dict) -> dict:
    return {"valid": False, "errors": [error], "content": None, "extension": None}
