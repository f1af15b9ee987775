import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from google.auth.exceptions import GoogleAuthError
from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import Error as GoogleApiClientError
from googleapiclient.errors import HttpError

from localization_merge import LocaleMerger
from metadata_models import AppInfoData, AppMetadata, VersionData
from store_errors import (
    BackendRequestError,
    CredentialError,
    SessionCleanupError,
    TrackNotFoundError,
)

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
PRODUCTION_TRACK = "production"


def build_android_publisher(service_account_json: str):
    try:
        info = json.loads(service_account_json)
    except (TypeError, json.JSONDecodeError) as exc:
        raise CredentialError("Google Play service account is not valid JSON.") from exc
    if not isinstance(info, dict):
        raise CredentialError("Google Play service account JSON must be an object.")

    try:
        creds = Credentials.from_service_account_info(info, scopes=[ANDROID_PUBLISHER_SCOPE])
    except (KeyError, ValueError, GoogleAuthError) as exc:
        raise CredentialError(f"Google Play service account is incomplete: {exc}") from exc

    logger.info("Initializing Google Play Android Publisher service client")
    try:
        return build("androidpublisher", "v3", credentials=creds, cache_discovery=False)
    except GoogleAuthError as exc:
        raise CredentialError(f"Google Play credentials were rejected: {exc}") from exc
    except GoogleApiClientError as exc:
        raise BackendRequestError(
            f"Unable to build the Android Publisher client: {exc}",
            status_code=_http_status(exc) if isinstance(exc, HttpError) else None,
        ) from exc


def _http_status(exc: HttpError) -> Optional[int]:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _http_body(exc: HttpError) -> str:
    content = getattr(exc, "content", None)
    if isinstance(content, bytes):
        return content.decode("utf-8", errors="ignore")
    if isinstance(content, str):
        return content
    return ""


def _to_backend_error(
    exc: HttpError, action: str, package_name: str, error_cls=BackendRequestError
) -> BackendRequestError:
    return error_cls(
        f"Google Play API error while {action} for {package_name}: {exc}",
        status_code=_http_status(exc),
        body_text=_http_body(exc),
    )


class SessionState(Enum):
    OPENED = "opened"
    READING = "reading"
    CLOSED = "closed"


class EditSession:
    """A draft edit opened only to read listing data.

    Google Play has no read-only view of a listing, so reads go through an
    edit that is deleted on exit. The delete runs exactly once; its failure
    is logged and never replaces the outcome of the reads.
    """

    def __init__(self, service, package_name: str) -> None:
        self._service = service
        self.package_name = package_name
        self.edit_id: Optional[str] = None
        self.state: Optional[SessionState] = None

    def __enter__(self) -> "EditSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def open(self) -> "EditSession":
        if self.state is not None:
            raise RuntimeError(f"Edit session for {self.package_name} was already opened")
        try:
            edit = (
                self._service.edits()
                .insert(packageName=self.package_name, body={})
                .execute()
            )
        except HttpError as exc:
            raise _to_backend_error(exc, "opening an edit", self.package_name) from exc

        edit_id = (edit or {}).get("id")
        if not edit_id:
            raise BackendRequestError(
                f"Google Play did not return an edit id for {self.package_name}"
            )
        self.edit_id = edit_id
        self.state = SessionState.OPENED
        logger.debug("Opened edit %s for %s", edit_id, self.package_name)
        return self

    def _begin_read(self) -> None:
        if self.state not in (SessionState.OPENED, SessionState.READING):
            raise RuntimeError(
                f"Edit session for {self.package_name} is not open (state={self.state})"
            )
        self.state = SessionState.READING

    def list_listings(self) -> List[Dict[str, Any]]:
        self._begin_read()
        try:
            response = (
                self._service.edits()
                .listings()
                .list(packageName=self.package_name, editId=self.edit_id)
                .execute()
            )
        except HttpError as exc:
            raise _to_backend_error(exc, "listing store listings", self.package_name) from exc
        listings = (response or {}).get("listings") or []
        logger.debug("Fetched %d listings for %s", len(listings), self.package_name)
        return list(listings)

    def get_track(self, track: str) -> Dict[str, Any]:
        self._begin_read()
        try:
            return (
                self._service.edits()
                .tracks()
                .get(packageName=self.package_name, editId=self.edit_id, track=track)
                .execute()
            ) or {}
        except HttpError as exc:
            error_cls = TrackNotFoundError if _http_status(exc) == 404 else BackendRequestError
            raise _to_backend_error(
                exc, f"reading track '{track}'", self.package_name, error_cls
            ) from exc

    def close(self) -> None:
        if self.state is None or self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        try:
            (
                self._service.edits()
                .delete(packageName=self.package_name, editId=self.edit_id)
                .execute()
            )
            logger.debug("Deleted edit %s for %s", self.edit_id, self.package_name)
        except Exception as exc:
            cleanup_error = SessionCleanupError(
                f"Failed to delete edit {self.edit_id} for {self.package_name}: {exc}"
            )
            logger.warning("%s", cleanup_error, exc_info=logger.isEnabledFor(logging.DEBUG))


def _release_version(release: Dict[str, Any]) -> Optional[str]:
    name = release.get("name")
    if isinstance(name, str) and name.strip():
        return name
    version_codes = release.get("versionCodes") or []
    if version_codes:
        return str(version_codes[0])
    return None


def read_production_version(session: EditSession) -> Optional[str]:
    try:
        track = session.get_track(PRODUCTION_TRACK)
    except TrackNotFoundError:
        logger.info("No production track for %s", session.package_name)
        return None
    releases = track.get("releases") or []
    if not releases:
        return None
    return _release_version(releases[0])


def _merge_listings(listings: List[Dict[str, Any]], package_name: str) -> LocaleMerger:
    merger = LocaleMerger()
    for listing in listings:
        language = listing.get("language")
        if not language:
            logger.warning("Skipping listing without language for %s", package_name)
            continue
        # Play listings do not split app-level and release-level text.
        merger.add_app_info(
            language,
            AppInfoData(name=listing.get("title"), subtitle=listing.get("shortDescription")),
        )
        merger.add_version(language, VersionData(description=listing.get("fullDescription")))
    return merger


class GooglePlayClient:
    def __init__(self, service_account_json: Optional[str] = None, *, service=None) -> None:
        if service is None:
            if not service_account_json:
                raise CredentialError("Google Play service account JSON is required.")
            service = build_android_publisher(service_account_json)
        self._service = service

    def edit_session(self, package_name: str) -> EditSession:
        return EditSession(self._service, package_name)

    def fetch_app_metadata(self, package_name: str) -> AppMetadata:
        with self.edit_session(package_name) as session:
            listings = session.list_listings()
            current_version = read_production_version(session)

        localizations = _merge_listings(listings, package_name).build()
        logger.info(
            "Collected %d localizations for %s (current version: %s)",
            len(localizations), package_name, current_version,
        )
        return AppMetadata(
            appId=package_name,
            bundleId=package_name,
            currentVersion=current_version,
            localizations=tuple(localizations),
        )
