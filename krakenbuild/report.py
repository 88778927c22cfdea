"""Database summary reports, generated once per finished database variant."""

import logging

from .artifacts import BuildArtifact
from .engines import ExternalEngine
from .library import LibraryManifest
from .settings import BuildParameters
from .utils import StageTimer

logger = logging.getLogger(__name__)


def ensure_report(
    engine: ExternalEngine,
    params: BuildParameters,
    manifest: LibraryManifest,
    report: BuildArtifact,
    classification: BuildArtifact,
) -> bool:
    """
    Classifies the library against the finished database unless ``report``
    already exists and is non-empty.

    Returns:
        True if the classifier ran.
    """
    if report.is_done():
        logger.info(f"Skipping summary report, {report.name} exists.")
        return False

    logger.info("Creating database summary report ...")
    with StageTimer() as timer:
        engine.classify(
            params.db_dir,
            report.tmp_path,
            classification.tmp_path,
            params.thread_ct,
            manifest.stream(),
        )
        classification.publish()
        report.publish()
    logger.info(f"Summary report written to {report.path}. [{timer}]")
    return True
