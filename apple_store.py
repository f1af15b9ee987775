"""App Store Connect integration: token minting and listing metadata reads."""

from __future__ import annotations

import base64
import datetime as _dt
import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import requests
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from localization_merge import AppInfoLocalization, LocaleMerger, VersionLocalization
from metadata_models import AppInfoData, AppMetadata, VersionData
from store_errors import (
    BackendRequestError,
    CredentialError,
    summarize_api_errors,
)

logger = logging.getLogger(__name__)

_APPLE_API_BASE = os.getenv(
    "APP_STORE_API_BASE_URL", "https://api.appstoreconnect.apple.com"
)
_APPLE_API_TIMEOUT = int(os.getenv("APP_STORE_API_TIMEOUT", "60"))

TOKEN_AUDIENCE = "appstoreconnect-v1"
TOKEN_ALGORITHM = "ES256"
TOKEN_LIFETIME_SECONDS = 20 * 60
TOKEN_REFRESH_MARGIN_SECONDS = 60
SIGNATURE_COMPONENT_SIZE = 32

READY_FOR_SALE = "READY_FOR_SALE"
_PAGE_LIMIT = 200

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_KEY_ID_RE = re.compile(r"^[A-Z0-9]{10}$")
_PEM_RE = re.compile(r"-----BEGIN ([A-Z ]+)-----(.*?)-----END \1-----", re.DOTALL)
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}$")


class AppStoreConnectApiError(BackendRequestError):
    """Represents an error response returned by the App Store Connect API."""

    def __init__(
        self,
        status_code: int,
        body_text: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        *,
        url: str = "",
    ) -> None:
        self.url = url
        super().__init__(
            self._build_message(status_code, body_text, errors or []),
            status_code=status_code,
            body_text=body_text,
            errors=errors,
        )

    @staticmethod
    def _build_message(
        status_code: int, body_text: str, errors: List[Dict[str, Any]]
    ) -> str:
        if errors:
            summary = summarize_api_errors(errors)
            if summary:
                return f"App Store Connect API error {status_code}: {summary}"
        if body_text:
            return f"App Store Connect API error {status_code}: {body_text}"
        return f"App Store Connect API error {status_code}"


class AppStoreConnectAuthError(BackendRequestError):
    """Raised when App Store Connect rejects the bearer token."""


# ---------------------------------------------------------------------------
# Credential minting
# ---------------------------------------------------------------------------


def normalize_private_key(key_text: str) -> str:
    """Return ``key_text`` as a canonical PEM block.

    Accepts raw base64 (PKCS#8 without envelope) or PEM text whose newlines
    may be real or escaped as ``\\n``. The body is re-wrapped at 64
    characters because PEM loaders reject other line layouts.
    """
    if not key_text or not key_text.strip():
        raise CredentialError("App Store Connect private key is empty.")

    text = (
        key_text.lstrip("\ufeff")
        .replace("\\r\\n", "\n")
        .replace("\\n", "\n")
        .replace("\r\n", "\n")
        .strip()
    )

    label = "PRIVATE KEY"
    match = _PEM_RE.search(text)
    if match:
        label = match.group(1).strip()
        body = match.group(2)
    elif "-----" in text:
        raise CredentialError(
            "App Store Connect private key has an incomplete PEM envelope."
        )
    else:
        body = text

    body = re.sub(r"\s+", "", body)
    if not body or not _BASE64_RE.match(body):
        raise CredentialError(
            "App Store Connect private key is not valid base64. "
            "Check that the .p8 file content was copied completely."
        )

    lines = [body[index:index + 64] for index in range(0, len(body), 64)]
    return "\n".join([f"-----BEGIN {label}-----", *lines, f"-----END {label}-----"]) + "\n"


def load_private_key(key_text: str) -> ec.EllipticCurvePrivateKey:
    pem = normalize_private_key(key_text)
    try:
        private_key_obj = serialization.load_pem_private_key(
            pem.encode("utf-8"), password=None
        )
    except (TypeError, ValueError, UnsupportedAlgorithm) as exc:
        raise CredentialError(
            "Unable to read the App Store Connect private key. Make sure the key file is not damaged."
        ) from exc

    if not isinstance(private_key_obj, ec.EllipticCurvePrivateKey):
        raise CredentialError(
            "The App Store Connect private key must be an ES256 (ECDSA, P-256) key."
        )

    curve_name = getattr(private_key_obj.curve, "name", "")
    if curve_name not in {"secp256r1", "prime256v1"}:
        raise CredentialError(
            "The App Store Connect private key must use the P-256 curve."
        )
    return private_key_obj


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _read_der_length(data: bytes, offset: int) -> Tuple[int, int]:
    if offset >= len(data):
        raise CredentialError("Malformed ECDSA signature: truncated length.")
    first = data[offset]
    offset += 1
    if first < 0x80:
        return first, offset
    count = first & 0x7F
    if count == 0 or count > 2 or offset + count > len(data):
        raise CredentialError("Malformed ECDSA signature: invalid length encoding.")
    return int.from_bytes(data[offset:offset + count], "big"), offset + count


def _read_der_integer(data: bytes, offset: int) -> Tuple[bytes, int]:
    if offset >= len(data) or data[offset] != 0x02:
        raise CredentialError("Malformed ECDSA signature: expected INTEGER tag 0x02.")
    length, offset = _read_der_length(data, offset + 1)
    end = offset + length
    if length == 0 or end > len(data):
        raise CredentialError("Malformed ECDSA signature: truncated integer.")
    return data[offset:end], end


def _to_fixed_width(component: bytes, size: int) -> bytes:
    if len(component) > size:
        excess = len(component) - size
        if any(component[:excess]):
            raise CredentialError(
                f"Malformed ECDSA signature: component wider than {size} bytes."
            )
        component = component[excess:]
    return component.rjust(size, b"\x00")


def der_signature_to_raw(der: bytes, size: int = SIGNATURE_COMPONENT_SIZE) -> bytes:
    """Convert a DER ``SEQUENCE { r INTEGER, s INTEGER }`` into fixed-width ``r || s``."""
    if not der or der[0] != 0x30:
        raise CredentialError("Malformed ECDSA signature: expected SEQUENCE tag 0x30.")
    sequence_length, offset = _read_der_length(der, 1)
    if offset + sequence_length != len(der):
        raise CredentialError("Malformed ECDSA signature: sequence length mismatch.")
    r, offset = _read_der_integer(der, offset)
    s, offset = _read_der_integer(der, offset)
    if offset != len(der):
        raise CredentialError("Malformed ECDSA signature: trailing bytes.")
    return _to_fixed_width(r, size) + _to_fixed_width(s, size)


def mint_token(
    issuer_id: str,
    key_id: str,
    private_key: Union[str, ec.EllipticCurvePrivateKey],
    *,
    now: Optional[int] = None,
    lifetime: int = TOKEN_LIFETIME_SECONDS,
) -> str:
    """Build an ES256 bearer token for the App Store Connect API."""
    if isinstance(private_key, str):
        private_key = load_private_key(private_key)

    issued_at = int(time.time()) if now is None else int(now)
    header = {"alg": TOKEN_ALGORITHM, "kid": key_id, "typ": "JWT"}
    payload = {
        "iss": issuer_id,
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "aud": TOKEN_AUDIENCE,
    }

    signing_segments = []
    for segment in (header, payload):
        json_segment = json.dumps(segment, separators=(",", ":"), ensure_ascii=False)
        signing_segments.append(_b64url(json_segment.encode("utf-8")))

    signing_input = ".".join(signing_segments)
    signature_der = private_key.sign(
        signing_input.encode("utf-8"), ec.ECDSA(hashes.SHA256())
    )
    size = (private_key.key_size + 7) // 8
    signing_segments.append(_b64url(der_signature_to_raw(signature_der, size)))
    return ".".join(signing_segments)


def validate_issuer_id(value: str) -> str:
    value = (value or "").strip()
    if not _UUID_RE.match(value):
        raise CredentialError("App Store Connect issuer ID must be a UUID.")
    return value


def validate_key_id(value: str) -> str:
    value = (value or "").strip().upper()
    if not _KEY_ID_RE.match(value):
        raise CredentialError(
            "App Store Connect key ID must be 10 uppercase alphanumeric characters."
        )
    return value


class AppStoreTokenProvider:
    """Hands out a cached bearer token, re-minting it shortly before expiry."""

    def __init__(
        self,
        issuer_id: str,
        key_id: str,
        private_key: str,
        *,
        lifetime: int = TOKEN_LIFETIME_SECONDS,
        refresh_margin: int = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.issuer_id = validate_issuer_id(issuer_id)
        self.key_id = validate_key_id(key_id)
        self._private_key = load_private_key(private_key)
        self._lifetime = lifetime
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[Tuple[str, int]] = None
        self.token()

    def token(self) -> str:
        now = int(self._clock())
        with self._lock:
            cached = self._cached
            if cached and now < cached[1] - self._refresh_margin:
                return cached[0]

            token = mint_token(
                self.issuer_id,
                self.key_id,
                self._private_key,
                now=now,
                lifetime=self._lifetime,
            )
            self._cached = (token, now + self._lifetime)
            logger.debug(
                "Minted App Store Connect token (kid=%s, expires_at=%d)",
                self.key_id,
                now + self._lifetime,
            )
            return token

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None


# ---------------------------------------------------------------------------
# Relationship walking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AppSummary:
    app_id: str
    bundle_id: str
    name: Optional[str] = None


@dataclass(frozen=True)
class LiveVersion:
    version_id: str
    version_string: Optional[str]
    created_date: Optional[_dt.datetime] = None


def _parse_timestamp(value: Optional[str]) -> Optional[_dt.datetime]:
    if not value:
        return None
    try:
        parsed = _dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Ignoring unparsable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_dt.timezone.utc)
    return parsed.astimezone(_dt.timezone.utc)


def _format_authorization_error(body_text: str) -> str:
    guidance = (
        "App Store Connect authentication failed. Check the issuer ID, key ID and "
        "private key, and verify that the system clock is accurate."
    )
    if not body_text:
        return guidance
    try:
        payload = json.loads(body_text)
    except json.JSONDecodeError:
        return f"{guidance} Original error: {body_text}"

    errors = payload.get("errors") if isinstance(payload, dict) else None
    if isinstance(errors, list) and errors:
        entry = errors[0] or {}
        code = entry.get("code") or entry.get("status")
        detail = entry.get("detail") or entry.get("title")
        if code or detail:
            suffix = " ".join(filter(None, [f"[{code}]" if code else "", detail]))
            return f"{guidance} {suffix}".strip()
    return f"{guidance} Original error: {body_text}"


def _attributes(resource: Dict[str, Any]) -> Dict[str, Any]:
    attributes = resource.get("attributes")
    return attributes if isinstance(attributes, dict) else {}


class AppStoreConnectClient:
    """Reads app listing metadata from the App Store Connect API.

    The token is minted when the client is built, so bad credentials fail
    here rather than on the first request.
    """

    max_retries = 3
    retry_delay = 2

    def __init__(
        self,
        issuer_id: str,
        key_id: str,
        private_key: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._tokens = AppStoreTokenProvider(issuer_id, key_id, private_key)
        self._base_url = (base_url or _APPLE_API_BASE).rstrip("/")
        self._timeout = timeout or _APPLE_API_TIMEOUT
        self._session = session or requests.Session()

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._tokens.token()}",
            "Accept": "application/json",
        }

    def _build_url(self, path: str) -> str:
        if path.startswith("https://") or path.startswith("http://"):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return self._base_url + path

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = self._build_url(path)
        logger.debug("App Store Connect request %s %s", method, url)
        if logger.isEnabledFor(logging.DEBUG) and params:
            logger.debug("  Params: %s", params)

        response = None
        for attempt in range(self.max_retries):
            try:
                response = self._session.request(
                    method,
                    url,
                    headers=self._auth_headers(),
                    params=params,
                    timeout=self._timeout,
                )
                break
            except requests.exceptions.Timeout as exc:
                if attempt < self.max_retries - 1:
                    wait_time = self.retry_delay * (attempt + 1)
                    logger.warning(
                        "Timeout on %s %s (attempt %d/%d), retrying in %ds...",
                        method, url, attempt + 1, self.max_retries, wait_time
                    )
                    time.sleep(wait_time)
                    continue
                logger.error(
                    "Timeout on %s %s after %d attempts, giving up",
                    method, url, self.max_retries
                )
                raise BackendRequestError(
                    f"App Store Connect request timed out: {method} {url}"
                ) from exc
            except requests.exceptions.RequestException as exc:
                logger.error("Request error on %s %s: %s", method, url, exc)
                raise BackendRequestError(
                    f"App Store Connect request failed: {method} {url}: {exc}"
                ) from exc

        if response.status_code >= 400:
            body_text = (response.text or "").strip()
            errors: List[Dict[str, Any]] = []
            if body_text:
                try:
                    payload = response.json()
                except ValueError:
                    payload = None
                if isinstance(payload, dict):
                    raw_errors = payload.get("errors")
                    if isinstance(raw_errors, list):
                        errors = [entry for entry in raw_errors if isinstance(entry, dict)]

            summary = summarize_api_errors(errors) if errors else body_text
            logger.error(
                "App Store Connect API error %s: %s | URL: %s",
                response.status_code,
                summary or "No response body",
                url,
                extra={"status": response.status_code, "url": url},
            )
            if response.status_code == 401:
                self._tokens.invalidate()
                raise AppStoreConnectAuthError(
                    _format_authorization_error(body_text),
                    status_code=401,
                    body_text=body_text,
                    errors=errors,
                )
            raise AppStoreConnectApiError(response.status_code, body_text, errors, url=url)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise BackendRequestError(
                f"App Store Connect returned a non-JSON response for {url}",
                status_code=response.status_code,
                body_text=response.text or "",
            ) from exc
        if not isinstance(payload, dict):
            raise BackendRequestError(
                f"App Store Connect returned an unexpected payload for {url}",
                status_code=response.status_code,
            )
        return payload

    def _fetch_all_pages(
        self,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        url: Optional[str] = path
        page_params: Optional[Dict[str, Any]] = dict(params) if params else None
        visited = set()

        while url:
            response = self._request("GET", url, params=page_params)
            data = response.get("data") or []
            if not isinstance(data, list):
                raise BackendRequestError(
                    f"App Store Connect returned a non-list 'data' member for {url}"
                )
            entries.extend(entry for entry in data if isinstance(entry, dict))

            # The next link already carries the cursor and original query.
            links = response.get("links") or {}
            if not isinstance(links, dict):
                raise BackendRequestError(
                    f"App Store Connect returned a malformed 'links' member for {url}"
                )
            next_link = links.get("next")
            if not next_link or next_link in visited:
                break
            visited.add(next_link)
            url = next_link
            page_params = None

        return entries

    def list_apps(self) -> List[AppSummary]:
        apps: List[AppSummary] = []
        for entry in self._fetch_all_pages(
            "/v1/apps",
            params={"fields[apps]": "bundleId,name", "limit": _PAGE_LIMIT},
        ):
            attributes = _attributes(entry)
            app_id = entry.get("id")
            bundle_id = attributes.get("bundleId")
            if not app_id or not bundle_id:
                logger.warning("Skipping app entry without id or bundleId: %s", entry)
                continue
            apps.append(AppSummary(app_id=app_id, bundle_id=bundle_id, name=attributes.get("name")))
        logger.info("Found %d apps in App Store Connect", len(apps))
        return apps

    def fetch_app_info_localizations(self, app_id: str) -> List[AppInfoLocalization]:
        records: List[AppInfoLocalization] = []
        app_infos = self._fetch_all_pages(
            f"/v1/apps/{app_id}/appInfos", params={"limit": _PAGE_LIMIT}
        )
        for app_info in app_infos:
            app_info_id = app_info.get("id")
            if not app_info_id:
                continue
            localizations = self._fetch_all_pages(
                f"/v1/appInfos/{app_info_id}/appInfoLocalizations",
                params={
                    "fields[appInfoLocalizations]": "locale,name,subtitle,privacyPolicyUrl,privacyChoicesUrl",
                    "limit": _PAGE_LIMIT,
                },
            )
            for localization in localizations:
                attributes = _attributes(localization)
                locale = attributes.get("locale")
                if not locale:
                    logger.warning(
                        "App info localization %s has no locale; ignoring", localization.get("id")
                    )
                    continue
                records.append(
                    AppInfoLocalization(
                        locale=locale,
                        app_info=AppInfoData(
                            name=attributes.get("name"),
                            subtitle=attributes.get("subtitle"),
                            privacyPolicyUrl=attributes.get("privacyPolicyUrl"),
                            privacyChoicesUrl=attributes.get("privacyChoicesUrl"),
                        ),
                    )
                )
        logger.debug(
            "Fetched %d app info localizations across %d app infos for app %s",
            len(records), len(app_infos), app_id,
        )
        return records

    def fetch_live_version(self, app_id: str) -> Optional[LiveVersion]:
        versions = self._fetch_all_pages(
            f"/v1/apps/{app_id}/appStoreVersions",
            params={
                "filter[appStoreState]": READY_FOR_SALE,
                "fields[appStoreVersions]": "versionString,appStoreState,createdDate,platform",
                "limit": _PAGE_LIMIT,
            },
        )
        if not versions:
            logger.info("App %s has no version in %s state", app_id, READY_FOR_SALE)
            return None
        if len(versions) > 1:
            logger.debug(
                "App %s has %d versions in %s state; using the first one",
                app_id, len(versions), READY_FOR_SALE,
            )
        live = versions[0]
        version_id = live.get("id")
        if not version_id:
            raise BackendRequestError(
                f"App Store Connect returned a {READY_FOR_SALE} version without an id for app {app_id}"
            )
        attributes = _attributes(live)
        return LiveVersion(
            version_id=version_id,
            version_string=attributes.get("versionString"),
            created_date=_parse_timestamp(attributes.get("createdDate")),
        )

    def fetch_version_localizations(self, version: LiveVersion) -> List[VersionLocalization]:
        records: List[VersionLocalization] = []
        localizations = self._fetch_all_pages(
            f"/v1/appStoreVersions/{version.version_id}/appStoreVersionLocalizations",
            params={
                "fields[appStoreVersionLocalizations]": (
                    "locale,description,keywords,whatsNew,promotionalText,marketingUrl,supportUrl"
                ),
                "limit": _PAGE_LIMIT,
            },
        )
        for localization in localizations:
            attributes = _attributes(localization)
            locale = attributes.get("locale")
            if not locale:
                logger.warning(
                    "Version localization %s has no locale; ignoring", localization.get("id")
                )
                continue
            records.append(
                VersionLocalization(
                    locale=locale,
                    version=VersionData(
                        versionString=version.version_string,
                        description=attributes.get("description"),
                        keywords=attributes.get("keywords"),
                        whatsNew=attributes.get("whatsNew"),
                        promotionalText=attributes.get("promotionalText"),
                        marketingUrl=attributes.get("marketingUrl"),
                        supportUrl=attributes.get("supportUrl"),
                    ),
                )
            )
        return records

    def fetch_app_metadata(self, app_id: str, bundle_id: str) -> AppMetadata:
        merger = LocaleMerger()
        for record in self.fetch_app_info_localizations(app_id):
            merger.add_app_info(record.locale, record.app_info)

        live_version = self.fetch_live_version(app_id)
        if live_version is not None:
            for record in self.fetch_version_localizations(live_version):
                merger.add_version(record.locale, record.version)

        localizations = merger.build()
        logger.info(
            "Collected %d localizations for %s (current version: %s)",
            len(localizations),
            bundle_id,
            live_version.version_string if live_version else None,
        )
        return AppMetadata(
            appId=app_id,
            bundleId=bundle_id,
            currentVersion=live_version.version_string if live_version else None,
            versionTimestamp=live_version.created_date if live_version else None,
            localizations=tuple(localizations),
        )
