import argparse
import logging
import os
import sys
import threading
from datetime import date, datetime
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv

from aggregator import BatchStatus, RunSummary, run_export
from exporter_settings import DEFAULT_PACKAGE_NAMES_FILE, ExporterSettings, resolve_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


class DailyLogFileHandler(logging.Handler):
    def __init__(self, directory: Path, encoding: str = "utf-8"):
        super().__init__()
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)
        self.encoding = encoding
        self._current_date: Optional[date] = None
        self._stream: Optional[Any] = None
        self._lock = threading.Lock()

    def _log_path_for(self, date_obj: date) -> Path:
        return self.directory / f"exporter_{date_obj.strftime('%Y-%m-%d')}.log"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            today = datetime.now().date()
            with self._lock:
                if today != self._current_date:
                    self._current_date = today
                    if self._stream:
                        self._stream.close()
                    log_path = self._log_path_for(today)
                    self._stream = open(log_path, "a", encoding=self.encoding)
                if self._stream:
                    self._stream.write(msg + "\n")
                    self._stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        try:
            with self._lock:
                if self._stream:
                    self._stream.close()
                    self._stream = None
        finally:
            super().close()


def configure_logging(verbose: bool = False) -> None:
    log_level_name = "DEBUG" if verbose else os.getenv("LOG_LEVEL", "INFO").upper()
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level_name, logging.INFO))
    root_logger.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    log_directory = os.getenv("LOG_DIR")
    if log_directory:
        try:
            file_handler = DailyLogFileHandler(Path(log_directory))
        except OSError as exc:
            logger.warning("Cannot use log directory %s, logging to console only: %s", log_directory, exc)
        else:
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    # googleapiclient logs every discovery lookup at INFO.
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="store-metadata-exporter",
        description="Extract App Store Connect and Google Play metadata and write it to a directory.",
        epilog=(
            "Exit status is 1 only when no store credentials are configured. Apps or "
            "stores that fail during the run are listed in the summary and exit with 0."
        ),
    )
    asc = parser.add_argument_group("App Store Connect")
    asc.add_argument("--asc-issuer-id", default=os.getenv("ASC_ISSUER_ID"), help="App Store Connect issuer ID")
    asc.add_argument("--asc-key-id", default=os.getenv("ASC_KEY_ID"), help="App Store Connect key ID")
    asc.add_argument(
        "--asc-private-key-file",
        default=os.getenv("ASC_PRIVATE_KEY_FILE"),
        help="Path to the App Store Connect .p8 private key file",
    )
    asc.add_argument(
        "--asc-private-key",
        default=os.getenv("ASC_PRIVATE_KEY"),
        help="App Store Connect private key content (base64 or PEM)",
    )

    gp = parser.add_argument_group("Google Play")
    gp.add_argument(
        "--gp-service-account-file",
        default=os.getenv("GP_SERVICE_ACCOUNT_FILE"),
        help="Path to the Google Play service account JSON file",
    )
    gp.add_argument(
        "--gp-service-account",
        default=os.getenv("GP_SERVICE_ACCOUNT"),
        help="Google Play service account JSON content",
    )
    gp.add_argument(
        "--gp-package-names",
        default=os.getenv("GP_PACKAGE_NAMES"),
        help="Google Play package names (comma-separated)",
    )
    gp.add_argument(
        "--gp-package-names-file",
        default=os.getenv("GP_PACKAGE_NAMES_FILE"),
        help=f"File with Google Play package names, one per line (default: {DEFAULT_PACKAGE_NAMES_FILE} if present)",
    )

    parser.add_argument(
        "--output-dir",
        "-o",
        default=os.getenv("OUTPUT_DIR", "."),
        help="Output directory for metadata files",
    )
    parser.add_argument("--dry-run", action="store_true", help="Show what would be written without writing files")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    return parser


def _print_no_credentials() -> None:
    print("Error: No store credentials provided.", file=sys.stderr)
    print(
        "Provide App Store Connect credentials (ASC_ISSUER_ID, ASC_KEY_ID, ASC_PRIVATE_KEY or "
        "--asc-private-key-file)",
        file=sys.stderr,
    )
    print("and/or Google Play credentials:", file=sys.stderr)
    print("  - GP_SERVICE_ACCOUNT or --gp-service-account-file", file=sys.stderr)
    print(
        f"  - GP_PACKAGE_NAMES or --gp-package-names or a {DEFAULT_PACKAGE_NAMES_FILE} file",
        file=sys.stderr,
    )


def _print_summary(summary: RunSummary) -> None:
    for batch in summary.batches:
        if batch.status is BatchStatus.ABORTED:
            print(f"{batch.store}: skipped ({batch.error})")
            continue
        print(
            f"{batch.store}: {batch.processed_count} processed, "
            f"{len(batch.skipped)} skipped ({batch.status.value})"
        )
        for entry in batch.skipped:
            print(f"  - {entry.identifier}: {entry.reason}")
    if summary.batches and all(batch.status is BatchStatus.ABORTED for batch in summary.batches):
        print("Warning: no configured store could be processed; check the credentials above.")
    print(f"Done! Processed {summary.total_processed} apps total.")


def _log_settings(settings: ExporterSettings) -> None:
    logger.debug("Output directory: %s", settings.output_dir.resolve())
    logger.debug("Dry run: %s", settings.dry_run)
    logger.debug("App Store Connect: %s", "enabled" if settings.app_store else "disabled")
    logger.debug("Google Play: %s", "enabled" if settings.google_play else "disabled")


def run(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    settings = resolve_settings(args)
    if not settings.has_any_backend:
        _print_no_credentials()
        return 1

    _log_settings(settings)
    summary = run_export(settings)
    _print_summary(summary)
    return summary.exit_code


if __name__ == "__main__":
    raise SystemExit(run())
