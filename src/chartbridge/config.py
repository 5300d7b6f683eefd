"""Configuration management for chartbridge.

Handles loading and generating TOML config files for the organization that
authors documents (author, custodian and device blocks) and for logging.
"""

from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path

DEFAULT_CONFIG_PATH = "chartbridge.toml"

DEFAULT_CONFIG_TEMPLATE = """\
# chartbridge configuration
#
# [organization] is the authoring and custodian organization written into
# every generated document header.

[organization]
name = "Tribal Health Organization"
oid = "2.16.840.1.113883.19.5"
street = "Tribal Health Facility"
city = "Community"
state = "US"
postal_code = "00000"
country = "US"
phone = "+1-555-000-0000"

[document]
# Root OID for generated document ids (the extension is a fresh UUID)
id_root = "2.16.840.1.113883.19.5.99999.1"
author_npi = "000000000"
software_name = "Tribal EHR v1.0"
device_model = "Tribal EHR System"

[logging]
# DEBUG, INFO, WARNING, ERROR
level = "WARNING"
"""


@dataclass
class OrganizationSettings:
    """Organization and authoring-device details for document headers."""

    name: str = "Tribal Health Organization"
    oid: str = "2.16.840.1.113883.19.5"
    street: str = "Tribal Health Facility"
    city: str = "Community"
    state: str = "US"
    postal_code: str = "00000"
    country: str = "US"
    phone: str = "+1-555-000-0000"
    document_id_root: str = "2.16.840.1.113883.19.5.99999.1"
    author_npi: str = "000000000"
    software_name: str = "Tribal EHR v1.0"
    device_model: str = "Tribal EHR System"


# [document] keys that are named differently on OrganizationSettings
_DOCUMENT_KEYS = {"id_root": "document_id_root"}


def load_config(config_path: str = DEFAULT_CONFIG_PATH, quiet: bool = False) -> dict:
    """Load configuration from a TOML file.

    Returns a dict with:
    - organization: OrganizationSettings instance
    - logging: dict with a "level" key

    Falls back to defaults if the config file doesn't exist.
    """
    path = Path(config_path)
    if not path.exists():
        if not quiet:
            print(
                f"Warning: Config file '{config_path}' not found, using defaults. "
                f"Run 'python -m chartbridge init-config' to generate one.",
                file=sys.stderr,
            )
        return _default_config()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    config = _default_config()
    known = {f.name for f in fields(OrganizationSettings)}
    org = config["organization"]

    for key, value in raw.get("organization", {}).items():
        if key in known:
            setattr(org, key, str(value))
    for key, value in raw.get("document", {}).items():
        key = _DOCUMENT_KEYS.get(key, key)
        if key in known:
            setattr(org, key, str(value))

    if "logging" in raw:
        config["logging"].update(raw["logging"])

    return config


def _default_config() -> dict:
    """Return default configuration."""
    return {
        "organization": OrganizationSettings(),
        "logging": {
            "level": "WARNING",
        },
    }


def write_default_config(config_path: str = DEFAULT_CONFIG_PATH) -> str:
    """Write the default config template. Returns the path written."""
    Path(config_path).write_text(DEFAULT_CONFIG_TEMPLATE)
    return config_path
