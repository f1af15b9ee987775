"""Resolve exporter options and store credentials from CLI flags, env and files."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE_NAMES_FILE = "gp-packages.txt"


@dataclass(frozen=True)
class AppStoreConnectCredentials:
    issuer_id: str
    key_id: str
    private_key: str = field(repr=False)


@dataclass(frozen=True)
class GooglePlayCredentials:
    service_account_json: str = field(repr=False)
    package_names: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExporterSettings:
    output_dir: Path
    dry_run: bool = False
    verbose: bool = False
    app_store: Optional[AppStoreConnectCredentials] = None
    google_play: Optional[GooglePlayCredentials] = None

    @property
    def has_any_backend(self) -> bool:
        return self.app_store is not None or self.google_play is not None


def is_valid_value(value: Optional[str]) -> bool:
    """Blank strings and unexpanded ``${VAR}`` placeholders count as unset."""
    if value is None:
        return False
    stripped = value.strip()
    return bool(stripped) and not stripped.startswith("${")


def env_value(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value if is_valid_value(value) else None


def parse_package_names(value: Optional[str]) -> List[str]:
    if not value:
        return []
    names: List[str] = []
    for token in value.split(","):
        candidate = token.strip()
        if not candidate:
            continue
        if candidate not in names:
            names.append(candidate)
    return names


def read_package_names_file(path: Path) -> List[str]:
    names: List[str] = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        candidate = raw.strip()
        if not candidate or candidate.startswith("#"):
            continue
        if candidate not in names:
            names.append(candidate)
    return names


def _read_optional_file(path_value: Optional[str], description: str) -> Optional[str]:
    if not is_valid_value(path_value):
        return None
    path = Path(path_value).expanduser()
    if not path.is_file():
        logger.warning("%s not found: %s", description, path)
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("Unable to read %s %s: %s", description, path, exc)
        return None


def resolve_app_store_credentials(
    issuer_id: Optional[str],
    key_id: Optional[str],
    private_key_file: Optional[str],
    private_key: Optional[str],
) -> Optional[AppStoreConnectCredentials]:
    if not is_valid_value(issuer_id) or not is_valid_value(key_id):
        return None
    # A key file takes precedence over inline key content.
    key_text = _read_optional_file(private_key_file, "App Store Connect private key file")
    if key_text is None and is_valid_value(private_key):
        key_text = private_key
    if key_text is None:
        logger.warning("App Store Connect private key not found, skipping App Store Connect")
        return None
    return AppStoreConnectCredentials(
        issuer_id=issuer_id.strip(), key_id=key_id.strip(), private_key=key_text
    )


def resolve_package_names(
    package_names: Optional[str],
    package_names_file: Optional[str],
    default_file: str = DEFAULT_PACKAGE_NAMES_FILE,
) -> List[str]:
    if is_valid_value(package_names):
        return parse_package_names(package_names)

    candidate: Optional[Path] = None
    if is_valid_value(package_names_file):
        candidate = Path(package_names_file).expanduser()
    elif Path(default_file).is_file():
        candidate = Path(default_file)

    if candidate is None or not candidate.is_file():
        return []
    logger.debug("Reading package names from %s", candidate.resolve())
    try:
        return read_package_names_file(candidate)
    except OSError as exc:
        logger.warning("Unable to read package names file %s: %s", candidate, exc)
        return []


def resolve_google_play_credentials(
    service_account_file: Optional[str],
    service_account: Optional[str],
    package_names: Optional[str],
    package_names_file: Optional[str],
) -> Optional[GooglePlayCredentials]:
    account_json = _read_optional_file(service_account_file, "Google Play service account file")
    if account_json is None and is_valid_value(service_account):
        account_json = service_account
    if account_json is None:
        return None

    names = resolve_package_names(package_names, package_names_file)
    if not names:
        logger.warning("No Google Play package names provided, skipping Google Play")
        return None
    return GooglePlayCredentials(service_account_json=account_json, package_names=names)


def resolve_settings(args: Any) -> ExporterSettings:
    """Build settings from parsed CLI arguments; attributes mirror the CLI flags."""
    output_dir = args.output_dir if is_valid_value(args.output_dir) else "."
    return ExporterSettings(
        output_dir=Path(output_dir).expanduser(),
        dry_run=bool(args.dry_run),
        verbose=bool(args.verbose),
        app_store=resolve_app_store_credentials(
            args.asc_issuer_id,
            args.asc_key_id,
            args.asc_private_key_file,
            args.asc_private_key,
        ),
        google_play=resolve_google_play_credentials(
            args.gp_service_account_file,
            args.gp_service_account,
            args.gp_package_names,
            args.gp_package_names_file,
        ),
    )
