"""
Build artifacts and the pipeline state derived from them.

Every stage writes its output under a temporary name and renames it into
place only after the producing engine succeeded, so a file at a canonical
path is always complete. ``PipelineState`` is probed once at startup from
these files and then threaded through the stage sequencer.
"""

import dataclasses
import logging
import pathlib
import re
from dataclasses import dataclass
from typing import List, Tuple

from .utils import is_nonempty_file

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"
_SHARD_RE = re.compile(r"^database_(\d+)$")


@dataclass(frozen=True)
class BuildArtifact:
    """
    A file produced by exactly one stage.

    ``sentinel`` artifacts are empty markers: they are done when they exist.
    Every other artifact is done when it exists and is non-empty.
    """

    path: pathlib.Path
    sentinel: bool = False

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def tmp_path(self) -> pathlib.Path:
        return self.path.with_name(self.path.name + TMP_SUFFIX)

    def is_done(self) -> bool:
        if self.sentinel:
            return self.path.exists()
        return is_nonempty_file(self.path)

    def publish(self) -> None:
        """Atomically moves the temporary file to the canonical path."""
        self.tmp_path.replace(self.path)
        logger.debug(f"Published {self.path}")

    def discard_tmp(self) -> None:
        self.tmp_path.unlink(missing_ok=True)

    def touch(self) -> None:
        self.tmp_path.touch()
        self.publish()


class ArtifactLayout:
    """Canonical artifact paths inside a database directory."""

    def __init__(self, db_dir: pathlib.Path, basename: str) -> None:
        self.db_dir = db_dir
        self.basename = basename

        self.manifest = self._artifact("library-files.txt")
        self.shard_prefix = db_dir / "database"
        self.raw_table = self._artifact("database.jdb")
        self.reduced_table = self._artifact("database.jdb.small")
        self.backup_table = self._artifact("database.jdb.big")
        self.sorted_table = self._artifact("database0.kdb")
        self.index = self._artifact("database.idx")
        self.seqid_map = self._artifact("seqid2taxid.map")
        self.seqid_map_orig = self._artifact("seqid2taxid.map.orig")
        self.seqid_map_plus = self._artifact("seqid2taxid-plus.map")
        self.taxdb = self._artifact("taxDB")
        self.taxdb_unsorted = self._artifact("taxDB.unsorted")
        self.lca_db = self._artifact("database.kdb")
        self.lca_kmer_count = self._artifact("database.kmer_count")
        self.uid_db = self._artifact("uid_database.kdb")
        self.uid_kmer_count = self._artifact("uid_database.kmer_count")
        self.uid_map = self._artifact("uid_to_taxid.map")
        self.uid_sentinel = self._artifact("uid_database.complete", sentinel=True)
        self.lca_report = self._artifact(f"{basename}.report")
        self.lca_classification = self._artifact(f"{basename}.kraken")
        self.uid_report = self._artifact(f"{basename}.uid_report")
        self.uid_classification = self._artifact(f"{basename}.uid_kraken")

    def _artifact(self, name: str, sentinel: bool = False) -> BuildArtifact:
        return BuildArtifact(self.db_dir / name, sentinel=sentinel)

    def shards(self) -> List[pathlib.Path]:
        """Counting-engine shard files (``database_0``, ``database_1``, ...) in shard order."""
        numbered = []
        for path in self.db_dir.glob("database_*"):
            match = _SHARD_RE.match(path.name)
            if match and path.is_file():
                numbered.append((int(match.group(1)), path))
        return [path for _, path in sorted(numbered)]

    def rebuild_patterns(self) -> Tuple[str, ...]:
        return (
            "database.*",
            "database0.kdb*",
            "database_*",
            "*.map",
            "*.map.orig",
            "library-files.txt*",
            "uid_database.*",
            "taxDB*",
            f"{self.basename}.report*",
            f"{self.basename}.kraken*",
            f"{self.basename}.uid_report*",
            f"{self.basename}.uid_kraken*",
        )

    def intermediate_patterns(self) -> Tuple[str, ...]:
        return (
            "database.jdb*",
            "database0.kdb*",
            "database_*",
            "library-files.txt*",
            "seqid2taxid.map.orig",
            "seqid2taxid-plus.map",
            "taxDB.unsorted*",
            "*.tmp",
        )


def _remove_matching(db_dir: pathlib.Path, patterns: Tuple[str, ...]) -> List[pathlib.Path]:
    removed = []
    for pattern in patterns:
        for path in sorted(db_dir.glob(pattern)):
            if path.is_file() or path.is_symlink():
                path.unlink()
                removed.append(path)
                logger.debug(f"Removed {path}")
    return removed


def purge_for_rebuild(layout: ArtifactLayout) -> List[pathlib.Path]:
    """Deletes every artifact a previous build produced in the database directory."""
    removed = _remove_matching(layout.db_dir, layout.rebuild_patterns())
    logger.info(f"Rebuild requested, removed {len(removed)} existing build files.")
    return removed


def clean_intermediates(layout: ArtifactLayout) -> List[pathlib.Path]:
    """Deletes intermediate files, keeping what classification needs."""
    return _remove_matching(layout.db_dir, layout.intermediate_patterns())


@dataclass(frozen=True)
class PipelineState:
    """Which stage outputs are present, probed once per run."""

    raw_table: bool = False
    reduced: bool = False
    sorted_table: bool = False
    seqid_map: bool = False
    taxdb: bool = False
    lca_db: bool = False
    uid_db: bool = False
    lca_report: bool = False
    uid_report: bool = False

    @classmethod
    def probe(cls, layout: ArtifactLayout) -> "PipelineState":
        return cls(
            raw_table=layout.raw_table.is_done(),
            reduced=layout.backup_table.is_done(),
            sorted_table=layout.sorted_table.is_done(),
            seqid_map=layout.seqid_map.is_done(),
            taxdb=layout.taxdb.is_done(),
            lca_db=layout.lca_db.is_done(),
            uid_db=layout.uid_sentinel.is_done(),
            lca_report=layout.lca_report.is_done(),
            uid_report=layout.uid_report.is_done(),
        )

    @property
    def counted(self) -> bool:
        return self.raw_table or self.sorted_table

    def advance(self, **changes: bool) -> "PipelineState":
        return dataclasses.replace(self, **changes)

    def as_dict(self) -> dict:
        return dataclasses.asdict(self)
