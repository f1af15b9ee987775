"""Combine per-locale records fetched from separate store endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from metadata_models import AppInfoData, LocalizationMetadata, VersionData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppInfoLocalization:
    locale: str
    app_info: AppInfoData


@dataclass(frozen=True)
class VersionLocalization:
    locale: str
    version: VersionData


@dataclass
class _LocaleEntry:
    app_info: Optional[AppInfoData] = None
    version: Optional[VersionData] = None


class LocaleMerger:
    """Get-or-create accumulator keyed by locale.

    A later record for the same locale replaces the earlier sub-object as a
    whole. Locales are emitted in the order they were first seen.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _LocaleEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _entry_for(self, locale: str) -> _LocaleEntry:
        if not locale:
            raise ValueError("locale must not be empty")
        entry = self._entries.get(locale)
        if entry is None:
            entry = _LocaleEntry()
            self._entries[locale] = entry
        return entry

    def add_app_info(self, locale: str, app_info: AppInfoData) -> None:
        entry = self._entry_for(locale)
        if entry.app_info is not None:
            logger.debug("Replacing app info for locale %s", locale)
        entry.app_info = app_info

    def add_version(self, locale: str, version: VersionData) -> None:
        entry = self._entry_for(locale)
        if entry.version is not None:
            logger.debug("Replacing version data for locale %s", locale)
        entry.version = version

    def build(self) -> List[LocalizationMetadata]:
        localizations: List[LocalizationMetadata] = []
        for locale, entry in self._entries.items():
            if entry.app_info is None and entry.version is None:
                continue
            localizations.append(
                LocalizationMetadata(
                    locale=locale,
                    appInfo=entry.app_info,
                    version=entry.version,
                )
            )
        return localizations


def merge_localizations(
    app_infos: Iterable[AppInfoLocalization] = (),
    versions: Iterable[VersionLocalization] = (),
) -> List[LocalizationMetadata]:
    merger = LocaleMerger()
    for record in app_infos:
        merger.add_app_info(record.locale, record.app_info)
    for record in versions:
        merger.add_version(record.locale, record.version)
    return merger.build()
