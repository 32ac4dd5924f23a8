"""
Stage 3: Validate Fields — Postbox

PURPOSE:
    Check the submitted fields against the site's `allowedFields` and
    `requiredFields` lists, trimming string values along the way.

    This is the main trust boundary: whatever survives this stage ends up in
    a file in someone's repository, so anything the site didn't ask for is
    rejected outright rather than quietly dropped.

CALLED BY:
    entry_pipeline_main.py — after the spam check.

DESIGN DECISIONS:
    - A field that is not in allowedFields is only rejected when it has a
      value. Forms often post empty inputs the site never declared (hidden
      honeypots, optional extras); an empty string is tolerated and kept.
    - Trimming happens for every string field before the required check, so
      a required field containing only whitespace counts as missing.
    - All problems are collected in one pass so the submitter sees every
      missing and every disallowed field at once.

RETURNS:
    dict with 'valid', 'errors' (MISSING_REQUIRED_FIELDS then INVALID_FIELDS)
    and 'fields' (a trimmed copy of the input).
"""

from _entry_agent.error_codes import make_error


def validate_fields(fields: dict, site_config) -> dict:
    """
    Validate and trim submitted fields.

    This is the ONLY public function in this file.

    Args:
        fields:      The raw submitted fields.
        site_config: SiteConfig for this request.

    Returns:
        dict with keys:
            - 'valid' (bool)
            - 'errors' (list[dict]): structured errors, empty if valid
            - 'fields' (dict): copy of the fields with strings trimmed
    """
    allowed_fields = site_config.get("allowedFields") or []
    required_fields = site_config.get("requiredFields") or []

    trimmed = {}
    invalid_fields = []

    for field, value in fields.items():
        if field not in allowed_fields and value != "":
            invalid_fields.append(field)

        trimmed[field] = value.strip() if isinstance(value, str) else value

    missing_required_fields = [
        field for field in required_fields
        if trimmed.get(field) is None or trimmed.get(field) == ""
    ]

    errors = []
    if missing_required_fields:
        errors.append(make_error("MISSING_REQUIRED_FIELDS", missing_required_fields))
    if invalid_fields:
        errors.append(make_error("INVALID_FIELDS", invalid_fields))

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "fields": trimmed,
    }
