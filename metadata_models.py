"""Store-agnostic listing metadata models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _compact(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in fields.items() if not _is_blank(value)}


class AppInfoData(BaseModel):
    """App-level text that does not change between releases."""

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    subtitle: Optional[str] = None
    privacyPolicyUrl: Optional[str] = None
    privacyChoicesUrl: Optional[str] = None

    def to_export_dict(self) -> Dict[str, Any]:
        return _compact(self.model_dump())


class VersionData(BaseModel):
    """Release-specific listing text."""

    model_config = ConfigDict(frozen=True)

    versionString: Optional[str] = None
    description: Optional[str] = None
    keywords: Optional[str] = None
    whatsNew: Optional[str] = None
    promotionalText: Optional[str] = None
    marketingUrl: Optional[str] = None
    supportUrl: Optional[str] = None

    def to_export_dict(self) -> Dict[str, Any]:
        return _compact(self.model_dump())


class LocalizationMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    locale: str = Field(..., min_length=1)
    appInfo: Optional[AppInfoData] = None
    version: Optional[VersionData] = None

    def to_export_dict(self) -> Dict[str, Any]:
        """Render the per-locale JSON document.

        Blank fields are dropped, and a sub-object left with no fields is
        dropped as well, so the output stays minimal and diff-friendly.
        """
        payload: Dict[str, Any] = {"locale": self.locale}
        if self.appInfo is not None:
            app_info = self.appInfo.to_export_dict()
            if app_info:
                payload["appInfo"] = app_info
        if self.version is not None:
            version = self.version.to_export_dict()
            if version:
                payload["version"] = version
        return payload


class AppMetadata(BaseModel):
    """Everything exported for one app or package.

    ``versionTimestamp`` is the creation instant of the live version when the
    store reports one; it is left empty otherwise.
    """

    model_config = ConfigDict(frozen=True)

    appId: str = Field(..., min_length=1)
    bundleId: str = Field(..., min_length=1)
    currentVersion: Optional[str] = None
    versionTimestamp: Optional[datetime] = None
    localizations: Tuple[LocalizationMetadata, ...] = ()

    @model_validator(mode="after")
    def ensure_unique_locales(self) -> "AppMetadata":
        seen = set()
        for localization in self.localizations:
            if localization.locale in seen:
                raise ValueError(f"duplicate localization for locale '{localization.locale}'")
            seen.add(localization.locale)
        return self

    def get_localization(self, locale: str) -> Optional[LocalizationMetadata]:
        for localization in self.localizations:
            if localization.locale == locale:
                return localization
        return None

    def to_export_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "appId": self.appId,
            "bundleId": self.bundleId,
            "currentVersion": self.currentVersion,
        }
        if self.versionTimestamp is not None:
            payload["versionTimestamp"] = self.versionTimestamp.isoformat()
        return payload
