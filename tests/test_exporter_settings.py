from __future__ import annotations

from argparse import Namespace

import pytest

from exporter_settings import (
    is_valid_value,
    parse_package_names,
    resolve_app_store_credentials,
    resolve_google_play_credentials,
    resolve_package_names,
    resolve_settings,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, False), ("", False), ("   ", False), ("${ASC_KEY_ID}", False), ("ABC", True)],
)
def test_is_valid_value(value, expected) -> None:
    assert is_valid_value(value) is expected


def test_parse_package_names_trims_and_deduplicates() -> None:
    assert parse_package_names(" com.a, com.b,,com.a ,") == ["com.a", "com.b"]


def test_key_file_takes_precedence_over_inline_key(tmp_path) -> None:
    key_file = tmp_path / "AuthKey.p8"
    key_file.write_text("FROM FILE", encoding="utf-8")

    credentials = resolve_app_store_credentials(" issuer ", "KEY", str(key_file), "INLINE")

    assert credentials.private_key == "FROM FILE"
    assert credentials.issuer_id == "issuer"
    assert "FROM FILE" not in repr(credentials)


def test_missing_key_file_falls_back_to_inline_key(tmp_path) -> None:
    credentials = resolve_app_store_credentials("issuer", "KEY", str(tmp_path / "nope.p8"), "INLINE")

    assert credentials.private_key == "INLINE"


@pytest.mark.parametrize(
    ("issuer_id", "key_id", "private_key"),
    [(None, "KEY", "k"), ("issuer", "${ASC_KEY_ID}", "k"), ("issuer", "KEY", None)],
)
def test_incomplete_app_store_credentials_are_not_configured(issuer_id, key_id, private_key) -> None:
    assert resolve_app_store_credentials(issuer_id, key_id, None, private_key) is None


def test_package_names_file_skips_comments(tmp_path) -> None:
    names_file = tmp_path / "packages.txt"
    names_file.write_text("# production apps\ncom.a\n\ncom.b\ncom.a\n", encoding="utf-8")

    assert resolve_package_names(None, str(names_file)) == ["com.a", "com.b"]


def test_inline_package_names_win_over_file(tmp_path) -> None:
    names_file = tmp_path / "packages.txt"
    names_file.write_text("com.file\n", encoding="utf-8")

    assert resolve_package_names("com.inline", str(names_file)) == ["com.inline"]


def test_default_package_names_file_is_used_when_present(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "gp-packages.txt").write_text("com.default\n", encoding="utf-8")

    assert resolve_package_names(None, None) == ["com.default"]


def test_google_play_needs_package_names(tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    assert resolve_google_play_credentials(None, '{"type": "service_account"}', None, None) is None

    credentials = resolve_google_play_credentials(None, '{"type": "service_account"}', "com.a", None)
    assert credentials.package_names == ["com.a"]


def test_resolve_settings_from_namespace(tmp_path) -> None:
    args = Namespace(
        asc_issuer_id=None,
        asc_key_id=None,
        asc_private_key_file=None,
        asc_private_key=None,
        gp_service_account_file=None,
        gp_service_account="{}",
        gp_package_names="com.a,com.b",
        gp_package_names_file=None,
        output_dir=str(tmp_path / "out"),
        dry_run=True,
        verbose=False,
    )

    settings = resolve_settings(args)

    assert settings.output_dir == tmp_path / "out"
    assert settings.dry_run is True
    assert settings.app_store is None
    assert settings.google_play.package_names == ["com.a", "com.b"]
    assert settings.has_any_backend
