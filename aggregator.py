"""Per-store batch processing with skip-and-continue failure handling."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Callable, Iterable, List, Optional, Tuple

from apple_store import AppStoreConnectClient
from exporter_settings import (
    AppStoreConnectCredentials,
    ExporterSettings,
    GooglePlayCredentials,
)
from google_play import GooglePlayClient
from metadata_exporter import APP_STORE, GOOGLE_PLAY, MetadataExporter
from metadata_models import AppMetadata
from store_errors import BackendRequestError, CredentialError

logger = logging.getLogger(__name__)

Job = Tuple[str, Callable[[], AppMetadata]]
Sink = Callable[[AppMetadata, str], Any]


class BatchStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class SkippedEntity:
    store: str
    identifier: str
    reason: str


@dataclass
class BatchResult:
    store: str
    results: List[AppMetadata] = field(default_factory=list)
    skipped: List[SkippedEntity] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def processed_count(self) -> int:
        return len(self.results)

    @property
    def status(self) -> BatchStatus:
        if self.error is not None:
            return BatchStatus.ABORTED
        if self.skipped and self.results:
            return BatchStatus.PARTIAL
        if self.skipped:
            return BatchStatus.FAILED
        return BatchStatus.COMPLETE


def _describe(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


def aggregate_batch(
    store: str,
    jobs: Iterable[Job],
    sink: Optional[Sink] = None,
    *,
    verbose: bool = False,
) -> BatchResult:
    """Run ``jobs`` one after another.

    A failing job is recorded as skipped and the batch moves on. A
    ``CredentialError`` stops the batch, since no later job could
    authenticate either.
    """
    result = BatchResult(store=store)
    for identifier, fetch in jobs:
        logger.info("Processing (%s): %s", store, identifier)
        try:
            app = fetch()
            if sink is not None:
                sink(app, store)
        except CredentialError as exc:
            logger.error("Credentials rejected while processing %s (%s): %s", identifier, store, exc)
            result.error = _describe(exc)
            break
        except Exception as exc:
            logger.warning(
                "Error processing %s (%s): %s", identifier, store, exc, exc_info=verbose
            )
            result.skipped.append(
                SkippedEntity(store=store, identifier=identifier, reason=_describe(exc))
            )
            continue
        result.results.append(app)
    return result


def run_app_store_connect(
    credentials: AppStoreConnectCredentials,
    sink: Optional[Sink] = None,
    *,
    client_factory: Callable[..., AppStoreConnectClient] = AppStoreConnectClient,
    verbose: bool = False,
) -> BatchResult:
    try:
        client = client_factory(
            credentials.issuer_id, credentials.key_id, credentials.private_key
        )
        logger.info("Fetching apps from App Store Connect...")
        apps = client.list_apps()
    except (CredentialError, BackendRequestError) as exc:
        logger.error("Error processing App Store Connect: %s", exc, exc_info=verbose)
        return BatchResult(store=APP_STORE, error=_describe(exc))
    except Exception as exc:
        # Nothing raised before the batch starts may stop the other store.
        logger.exception("Unexpected error processing App Store Connect")
        return BatchResult(store=APP_STORE, error=_describe(exc))

    jobs = [
        (app.bundle_id, partial(client.fetch_app_metadata, app.app_id, app.bundle_id))
        for app in apps
    ]
    return aggregate_batch(APP_STORE, jobs, sink, verbose=verbose)


def run_google_play(
    credentials: GooglePlayCredentials,
    sink: Optional[Sink] = None,
    *,
    client_factory: Callable[..., GooglePlayClient] = GooglePlayClient,
    verbose: bool = False,
) -> BatchResult:
    try:
        client = client_factory(credentials.service_account_json)
    except (CredentialError, BackendRequestError) as exc:
        logger.error("Error processing Google Play: %s", exc, exc_info=verbose)
        return BatchResult(store=GOOGLE_PLAY, error=_describe(exc))
    except Exception as exc:
        logger.exception("Unexpected error processing Google Play")
        return BatchResult(store=GOOGLE_PLAY, error=_describe(exc))

    logger.info("Processing %d apps from Google Play...", len(credentials.package_names))
    jobs = [
        (package_name, partial(client.fetch_app_metadata, package_name))
        for package_name in credentials.package_names
    ]
    return aggregate_batch(GOOGLE_PLAY, jobs, sink, verbose=verbose)


@dataclass
class RunSummary:
    configured: bool
    batches: List[BatchResult] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return sum(batch.processed_count for batch in self.batches)

    @property
    def skipped(self) -> List[SkippedEntity]:
        return [entry for batch in self.batches for entry in batch.skipped]

    @property
    def exit_code(self) -> int:
        # Partial or failed batches still exit 0; only a run with nothing to
        # authenticate against is an error.
        return 0 if self.configured else 1


def run_export(
    settings: ExporterSettings,
    *,
    exporter: Optional[MetadataExporter] = None,
    app_store_factory: Callable[..., AppStoreConnectClient] = AppStoreConnectClient,
    google_play_factory: Callable[..., GooglePlayClient] = GooglePlayClient,
) -> RunSummary:
    if not settings.has_any_backend:
        return RunSummary(configured=False)

    if exporter is None:
        exporter = MetadataExporter(
            settings.output_dir, dry_run=settings.dry_run, verbose=settings.verbose
        )
    summary = RunSummary(configured=True)

    if settings.app_store is not None:
        summary.batches.append(
            run_app_store_connect(
                settings.app_store,
                exporter.export,
                client_factory=app_store_factory,
                verbose=settings.verbose,
            )
        )
    if settings.google_play is not None:
        summary.batches.append(
            run_google_play(
                settings.google_play,
                exporter.export,
                client_factory=google_play_factory,
                verbose=settings.verbose,
            )
        )
    return summary
