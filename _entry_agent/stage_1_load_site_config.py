"""
Stage 1: Load Site Config — Postbox

PURPOSE:
    Read the per-repository configuration file (e.g. `postbox.yml` at the repo
    root), pick out the config block for this request, validate it, and wrap
    it in a SiteConfig that every later stage reads from.

    The repo owner controls this file, so it is the authority on what a
    submission may contain and where it ends up. This stage is also where the
    request gets authorized against it: the requested branch has to match the
    configured one, and if the site lists allowed origins the request must
    come from one of them.

CALLED BY:
    entry_pipeline_main.py — EntryPipeline.get_site_config(), once per request.

DEPENDS ON:
    - The version-control gateway (github_gateway.py) to read the config file
    - An optional decrypt capability (RSADecrypter below) for encrypted values

DESIGN DECISIONS:
    - Validation checks the raw block BEFORE defaults are applied, so a repo
      that forgets `path` gets MISSING_CONFIG_FIELDS instead of a silent
      default path.
    - Encrypted values (notification API key and domain) are decrypted on
      first read, not at load time.
    - A config file can hold several blocks (e.g. `comments:` and `reviews:`);
      `config_path["path"]` selects one with a dotted path.

RETURNS:
    A dict with 'valid', 'errors' and (when valid) 'site_config'.
"""

import base64
import copy
import json
from typing import Callable, Optional
from urllib.parse import urlparse

import yaml
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from _entry_agent.error_codes import make_error
from _entry_agent.placeholder_resolver import get_path


REQUIRED_CONFIG_FIELDS = ["allowedFields", "branch", "format", "path"]

# Keys whose values may be stored encrypted in the repo config
ENCRYPTED_KEYS = ("notifications.apiKey", "notifications.domain")

DEFAULT_PULL_REQUEST_BODY = (
    "Dear human,\n\n"
    "Here's a new entry for your approval. :tada:\n\n"
    "Merge the pull request to accept it, or close it to send it away.\n\n"
    "---\n"
)

_SITE_CONFIG_DEFAULTS = {
    "allowedOrigins": [],
    "commitMessage": "New entry",
    "filename": "",
    "generatedFields": {},
    "moderation": True,
    "name": "",
    "pullRequestBody": DEFAULT_PULL_REQUEST_BODY,
    "requiredFields": [],
    "transforms": {},
    "akismet": {
        "enabled": False,
        "type": "comment",
        "author": "",
        "authorEmail": "",
        "authorUrl": "",
        "content": "",
    },
    "notifications": {
        "enabled": False,
        "apiKey": None,
        "domain": None,
        "fromAddress": None,
    },
}


class SiteConfig:
    """
    Validated, request-scoped site configuration.

    Read with dotted keys: `site_config.get("akismet.enabled")`. Values for
    ENCRYPTED_KEYS are passed through the decrypt capability the first time
    they are read; the plaintext is cached on this instance only.
    """

    def __init__(self, raw: dict, decrypt: Optional[Callable[[str], str]] = None):
        self._data = _apply_defaults(raw)
        self._decrypt = decrypt
        self._decrypted = {}

    def get(self, key: str, default=None):
        if key in ENCRYPTED_KEYS:
            return self._get_decrypted(key, default)
        value = get_path(self._data, key)
        return default if value is None else value

    def _get_decrypted(self, key: str, default=None):
        if key in self._decrypted:
            return self._decrypted[key]

        value = get_path(self._data, key)
        if value is None:
            return default
        if self._decrypt is not None:
            value = self._decrypt(value)

        self._decrypted[key] = value
        return value


class RSADecrypter:
    """
    Decrypts base64 RSA ciphertext (OAEP, SHA-1) with the service's private key.

    Site owners encrypt secrets against the service's public key, so a
    Mailgun key can sit in a public repo without being usable by anyone else.
    """

    def __init__(self, private_key_pem: str):
        self._key = serialization.load_pem_private_key(
            private_key_pem.encode("utf-8"), password=None
        )

    def __call__(self, ciphertext: str) -> str:
        """
        Decrypt one value. Raises ValueError for anything that isn't valid
        ciphertext for our key (wrong type, bad base64, wrong key).
        """
        try:
            plaintext = self._key.decrypt(
                base64.b64decode(ciphertext),
                padding.OAEP(
                    mgf=padding.MGF1(algorithm=hashes.SHA1()),
                    algorithm=hashes.SHA1(),
                    label=None,
                ),
            )
            return plaintext.decode("utf-8")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Could not decrypt config value: {e}") from e


async def load_site_config(
    gateway,
    config_path: Optional[dict],
    parameters: dict,
    options: dict,
    decrypt: Optional[Callable[[str], str]] = None
) -> dict:
    """
    Read, parse and validate the site config for this request.

    Args:
        gateway:     Version-control gateway with an async read_file_async(path).
        config_path: {"file": "postbox.yml", "path": "comments"}.
        parameters:  Request parameters; `branch` is the requested branch.
        options:     Request options; `origin` is checked against allowedOrigins.
        decrypt:     Optional decrypt capability for encrypted config values.

    Returns:
        dict with keys 'valid', 'errors', 'site_config' (None when invalid).
        Gateway read failures propagate as EntryError(GITHUB_READING_FILE).
    """
    if not config_path:
        return _invalid(make_error("NO_CONFIG_PATH"))

    config_file = config_path.get("file")
    content = await gateway.read_file_async(config_file)

    try:
        parsed = parse_config_file(config_file, content)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        return _invalid(make_error("CONFIG_PARSE_ERROR", message=str(e)))

    config = get_path(parsed, config_path.get("path"))
    return validate_site_config(config, parameters, options, decrypt)


def parse_config_file(filename: str, content: str):
    """Parse the config file as JSON or YAML depending on its extension."""
    if str(filename).lower().endswith(".json"):
        return json.loads(content)
    return yaml.safe_load(content)


def validate_site_config(
    config,
    parameters: dict,
    options: dict,
    decrypt: Optional[Callable[[str], str]] = None
) -> dict:
    """
    Validate a raw config block and authorize the request against it.

    Checks, in order: block present, required keys present, origin allowed,
    branch matches. The first failing check decides the error.
    """
    if not config or not isinstance(config, dict):
        return _invalid(make_error("MISSING_CONFIG_BLOCK"))

    missing_fields = [
        field for field in REQUIRED_CONFIG_FIELDS
        if get_path(config, field) is None
    ]
    if missing_fields:
        return _invalid(make_error("MISSING_CONFIG_FIELDS", missing_fields))

    allowed_origins = config.get("allowedOrigins") or []
    if isinstance(allowed_origins, str):
        allowed_origins = [allowed_origins]
    if allowed_origins:
        origin = options.get("origin")
        if not origin:
            return _invalid(make_error("MISSING_ORIGIN"))

        hostname = urlparse(str(origin)).hostname
        if hostname not in allowed_origins:
            return _invalid(make_error("INVALID_ORIGIN"))

    if str(config.get("branch")) != str(parameters.get("branch")):
        return _invalid(make_error("BRANCH_MISMATCH"))

    return {
        "valid": True,
        "errors": [],
        "site_config": SiteConfig(config, decrypt),
    }


# ---------------------------------------------------------------------------
# HELPER FUNCTIONS (private to this module)
# ---------------------------------------------------------------------------


def _invalid(error: dict) -> dict:
    return {"valid": False, "errors": [error], "site_config": None}


def _apply_defaults(raw: dict) -> dict:
    """Merge the config block over the defaults, one level deep for sections."""
    data = copy.deepcopy(_SITE_CONFIG_DEFAULTS)
    for key, value in copy.deepcopy(raw).items():
        if isinstance(data.get(key), dict) and isinstance(value, dict):
            data[key] = {**data[key], **value}
        elif value is not None:
            data[key] = value
    return data
