"""Google Play edit session lifecycle and listing extraction."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError, UnknownApiNameOrVersion

import google_play
from google_play import (
    PRODUCTION_TRACK,
    EditSession,
    GooglePlayClient,
    SessionState,
    build_android_publisher,
)
from store_errors import BackendRequestError, CredentialError, TrackNotFoundError

PACKAGE = "com.example.app"


def _http_error(status: int, message: str = "boom") -> HttpError:
    content = ('{"error": {"code": %d, "message": "%s"}}' % (status, message)).encode("utf-8")
    return HttpError(httplib2.Response({"status": str(status)}), content)


def _service(
    *,
    listings=None,
    listings_error=None,
    track=None,
    track_error=None,
    delete_error=None,
    insert_error=None,
) -> MagicMock:
    service = MagicMock()
    edits = service.edits.return_value
    if insert_error is not None:
        edits.insert.return_value.execute.side_effect = insert_error
    else:
        edits.insert.return_value.execute.return_value = {"id": "edit-1"}

    listing_call = edits.listings.return_value.list.return_value.execute
    if listings_error is not None:
        listing_call.side_effect = listings_error
    else:
        listing_call.return_value = {"listings": listings or []}

    track_call = edits.tracks.return_value.get.return_value.execute
    if track_error is not None:
        track_call.side_effect = track_error
    else:
        track_call.return_value = track or {"track": PRODUCTION_TRACK, "releases": []}

    if delete_error is not None:
        edits.delete.return_value.execute.side_effect = delete_error
    return service


def _delete_calls(service: MagicMock) -> int:
    return service.edits.return_value.delete.return_value.execute.call_count


LISTINGS = [
    {"language": "en-US", "title": "Foo", "shortDescription": "Short", "fullDescription": "Long"},
    {"language": "de-DE", "title": "Fu", "shortDescription": "", "fullDescription": "Lang"},
]


def test_fetch_app_metadata_maps_listings_and_release_name() -> None:
    service = _service(
        listings=LISTINGS,
        track={"releases": [{"name": "5.2.0", "versionCodes": ["520"]}, {"name": "5.1.0"}]},
    )

    metadata = GooglePlayClient(service=service).fetch_app_metadata(PACKAGE)

    assert metadata.appId == metadata.bundleId == PACKAGE
    assert metadata.currentVersion == "5.2.0"
    assert metadata.versionTimestamp is None
    assert [loc.to_export_dict() for loc in metadata.localizations] == [
        {
            "locale": "en-US",
            "appInfo": {"name": "Foo", "subtitle": "Short"},
            "version": {"description": "Long"},
        },
        {"locale": "de-DE", "appInfo": {"name": "Fu"}, "version": {"description": "Lang"}},
    ]
    edits = service.edits.return_value
    edits.insert.assert_called_once_with(packageName=PACKAGE, body={})
    edits.tracks.return_value.get.assert_called_once_with(
        packageName=PACKAGE, editId="edit-1", track=PRODUCTION_TRACK
    )
    edits.delete.assert_called_once_with(packageName=PACKAGE, editId="edit-1")
    assert _delete_calls(service) == 1


def test_release_without_name_falls_back_to_version_code() -> None:
    service = _service(track={"releases": [{"versionCodes": ["1042", "1041"]}]})

    assert GooglePlayClient(service=service).fetch_app_metadata(PACKAGE).currentVersion == "1042"


def test_empty_release_list_means_no_current_version() -> None:
    service = _service(listings=LISTINGS, track={"track": PRODUCTION_TRACK, "releases": []})

    assert GooglePlayClient(service=service).fetch_app_metadata(PACKAGE).currentVersion is None


def test_missing_production_track_is_not_a_failure() -> None:
    service = _service(listings=LISTINGS, track_error=_http_error(404, "Track not found"))

    metadata = GooglePlayClient(service=service).fetch_app_metadata(PACKAGE)

    assert metadata.currentVersion is None
    assert len(metadata.localizations) == 2
    assert _delete_calls(service) == 1


@pytest.mark.parametrize(
    ("listings_error", "track_error"),
    [
        (None, None),
        (None, _http_error(500)),
        (_http_error(503), None),
    ],
    ids=["success-success", "success-failure", "failure-success"],
)
def test_edit_is_deleted_exactly_once(listings_error, track_error) -> None:
    service = _service(listings=LISTINGS, listings_error=listings_error, track_error=track_error)
    client = GooglePlayClient(service=service)

    if listings_error is None and track_error is None:
        assert client.fetch_app_metadata(PACKAGE).currentVersion is None
    else:
        with pytest.raises(BackendRequestError) as excinfo:
            client.fetch_app_metadata(PACKAGE)
        assert not isinstance(excinfo.value, TrackNotFoundError)

    assert _delete_calls(service) == 1


def test_cleanup_failure_does_not_change_successful_result(caplog) -> None:
    service = _service(
        listings=LISTINGS,
        track={"releases": [{"name": "1.0"}]},
        delete_error=_http_error(500, "delete failed"),
    )

    with caplog.at_level(logging.WARNING, logger="google_play"):
        metadata = GooglePlayClient(service=service).fetch_app_metadata(PACKAGE)

    assert metadata.currentVersion == "1.0"
    assert "Failed to delete edit edit-1" in caplog.text
    assert _delete_calls(service) == 1


def test_cleanup_failure_does_not_mask_read_failure() -> None:
    service = _service(
        listings_error=_http_error(403, "forbidden"),
        delete_error=_http_error(500, "delete failed"),
    )

    with pytest.raises(BackendRequestError, match="forbidden") as excinfo:
        GooglePlayClient(service=service).fetch_app_metadata(PACKAGE)

    assert excinfo.value.status_code == 403
    assert _delete_calls(service) == 1


def test_insert_failure_raises_without_delete() -> None:
    service = _service(insert_error=_http_error(404, "Package not found"))

    with pytest.raises(BackendRequestError) as excinfo:
        GooglePlayClient(service=service).fetch_app_metadata(PACKAGE)

    assert excinfo.value.status_code == 404
    assert _delete_calls(service) == 0


def test_session_state_transitions_and_single_close() -> None:
    service = _service(listings=LISTINGS)
    session = EditSession(service, PACKAGE)
    assert session.state is None

    with session:
        assert session.state is SessionState.OPENED
        session.list_listings()
        assert session.state is SessionState.READING

    assert session.state is SessionState.CLOSED
    session.close()
    assert _delete_calls(service) == 1

    with pytest.raises(RuntimeError):
        session.list_listings()
    with pytest.raises(RuntimeError):
        session.open()


def test_track_404_raises_track_not_found_from_session() -> None:
    service = _service(track_error=_http_error(404))

    with EditSession(service, PACKAGE) as session:
        with pytest.raises(TrackNotFoundError):
            session.get_track(PRODUCTION_TRACK)


def test_build_android_publisher_rejects_invalid_json() -> None:
    with pytest.raises(CredentialError, match="not valid JSON"):
        build_android_publisher("{not json")
    with pytest.raises(CredentialError):
        build_android_publisher("[]")


def test_client_requires_service_account() -> None:
    with pytest.raises(CredentialError):
        GooglePlayClient("")


def test_discovery_failure_becomes_backend_request_error(monkeypatch) -> None:
    def failing_build(*args, **kwargs):
        raise UnknownApiNameOrVersion("name: androidpublisher  version: v3")

    monkeypatch.setattr(google_play.Credentials, "from_service_account_info", lambda info, scopes: object())
    monkeypatch.setattr(google_play, "build", failing_build)

    with pytest.raises(BackendRequestError, match="Android Publisher client"):
        build_android_publisher('{"type": "service_account"}')


def test_auth_failure_while_building_client_is_a_credential_error(monkeypatch) -> None:
    def failing_build(*args, **kwargs):
        raise RefreshError("invalid_grant")

    monkeypatch.setattr(google_play.Credentials, "from_service_account_info", lambda info, scopes: object())
    monkeypatch.setattr(google_play, "build", failing_build)

    with pytest.raises(CredentialError, match="invalid_grant"):
        build_android_publisher('{"type": "service_account"}')
