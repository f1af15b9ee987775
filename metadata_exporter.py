import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Union

from metadata_models import AppMetadata

logger = logging.getLogger(__name__)

APP_STORE = "appstore"
GOOGLE_PLAY = "googleplay"


@dataclass(frozen=True)
class PlannedFile:
    path: Path
    payload: Dict[str, Any]

    def render(self) -> str:
        return json.dumps(self.payload, ensure_ascii=False, indent=2) + "\n"


class MetadataExporter:
    """Writes one directory per app under ``<output_dir>/<store_type>/``.

    In dry-run mode the same files are planned and reported, but nothing is
    created on disk.
    """

    def __init__(self, output_dir: Union[str, Path], *, dry_run: bool = False, verbose: bool = False) -> None:
        self.output_dir = Path(output_dir)
        self.dry_run = dry_run
        self.verbose = verbose

    def app_dir(self, app: AppMetadata, store_type: str) -> Path:
        return self.output_dir / store_type / app.bundleId

    def plan(self, app: AppMetadata, store_type: str) -> List[PlannedFile]:
        app_dir = self.app_dir(app, store_type)
        localizations_dir = app_dir / "localizations"
        planned = [PlannedFile(app_dir / "metadata.json", app.to_export_dict())]
        for localization in app.localizations:
            planned.append(
                PlannedFile(
                    localizations_dir / f"{localization.locale}.json",
                    localization.to_export_dict(),
                )
            )
        return planned

    def export(self, app: AppMetadata, store_type: str) -> List[Path]:
        planned = self.plan(app, store_type)
        for item in planned:
            self._write(item)
        logger.info(
            "%s %d files for %s (%s)",
            "Planned" if self.dry_run else "Wrote",
            len(planned), app.bundleId, store_type,
        )
        return [item.path for item in planned]

    def _write(self, item: PlannedFile) -> None:
        content = item.render()
        if self.dry_run:
            logger.info("[DRY RUN] Would write: %s", item.path)
            if self.verbose:
                logger.info("%s", content.rstrip("\n"))
            return
        item.path.parent.mkdir(parents=True, exist_ok=True)
        item.path.write_text(content, encoding="utf-8")
        logger.debug("Wrote: %s", item.path)
