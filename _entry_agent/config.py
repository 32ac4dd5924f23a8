"""
Service configuration for Postbox.

Config file: ~/.postbox/config.json (or the path in POSTBOX_CONFIG_FILE)
Environment variables override file values:
    GITHUB_TOKEN, GITHUB_BASE_URL, AKISMET_SITE, AKISMET_API_KEY,
    RSA_PRIVATE_KEY, EMAIL_API_KEY, EMAIL_DOMAIN, EMAIL_FROM,
    POSTBOX_BRANCH_PREFIX

This is the service-wide configuration (credentials, API endpoints). The
per-repository configuration lives in the target repo and is loaded by
stage_1_load_site_config.py.
"""
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


_DEFAULTS = {
    "github_base_url": "https://api.github.com",
    "github_token": None,
    "akismet": {
        "site": None,
        "api_key": None,
    },
    "rsa_private_key": None,
    "email": {
        "api_key": None,
        "domain": "postbox.dev",
        "from_address": "noreply@postbox.dev",
        "api_base_url": "https://api.mailgun.net/v3",
    },
    "branch_prefix": "postbox",
    "request_timeout_seconds": 30,
}

# env var -> (section, key); section None means top level
_ENV_OVERRIDES = {
    "GITHUB_TOKEN": (None, "github_token"),
    "GITHUB_BASE_URL": (None, "github_base_url"),
    "AKISMET_SITE": ("akismet", "site"),
    "AKISMET_API_KEY": ("akismet", "api_key"),
    "RSA_PRIVATE_KEY": (None, "rsa_private_key"),
    "EMAIL_API_KEY": ("email", "api_key"),
    "EMAIL_DOMAIN": ("email", "domain"),
    "EMAIL_FROM": ("email", "from_address"),
    "POSTBOX_BRANCH_PREFIX": (None, "branch_prefix"),
}


@dataclass
class ServiceConfig:
    """Service configuration."""
    github_base_url: str = "https://api.github.com"
    github_token: Optional[str] = None
    akismet_site: Optional[str] = None
    akismet_api_key: Optional[str] = None
    rsa_private_key: Optional[str] = None
    email_api_key: Optional[str] = None
    email_domain: str = "postbox.dev"
    email_from_address: str = "noreply@postbox.dev"
    email_api_base_url: str = "https://api.mailgun.net/v3"
    branch_prefix: str = "postbox"
    request_timeout_seconds: int = 30


def _load_json_file(path: Path) -> dict:
    """Load a JSON file, return empty dict if missing or invalid."""
    try:
        if path.exists():
            with open(path, "r") as f:
                return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Ignoring unreadable config file %s: %s", path, e)
    return {}


def _config_path() -> Path:
    env_path = os.environ.get("POSTBOX_CONFIG_FILE")
    if env_path:
        return Path(env_path)
    return Path.home() / ".postbox" / "config.json"


def load_config() -> ServiceConfig:
    """
    Load service configuration.

    Merges defaults with config file values, then applies environment
    variable overrides. Private keys stored in env vars with literal "\\n"
    sequences (the usual way to squeeze a PEM into one line) are unescaped.
    """
    data = _load_json_file(_config_path())

    merged = {**_DEFAULTS, **data}
    akismet = {**_DEFAULTS["akismet"], **merged.get("akismet", {})}
    email = {**_DEFAULTS["email"], **merged.get("email", {})}
    sections = {"akismet": akismet, "email": email}

    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        if section is None:
            merged[key] = value
        else:
            sections[section][key] = value

    rsa_private_key = merged.get("rsa_private_key")
    if rsa_private_key:
        rsa_private_key = rsa_private_key.replace("\\n", "\n")

    return ServiceConfig(
        github_base_url=merged["github_base_url"],
        github_token=merged.get("github_token"),
        akismet_site=akismet["site"],
        akismet_api_key=akismet["api_key"],
        rsa_private_key=rsa_private_key,
        email_api_key=email["api_key"],
        email_domain=email["domain"],
        email_from_address=email["from_address"],
        email_api_base_url=email["api_base_url"],
        branch_prefix=merged["branch_prefix"],
        request_timeout_seconds=int(merged["request_timeout_seconds"]),
    )
