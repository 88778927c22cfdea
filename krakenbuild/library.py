"""
Library discovery and the concatenated sequence stream.

The manifest (``library-files.txt`` in the database directory) lists every
sequence file found under the library directories, one path per line. Once
written it is reused as-is by later runs; delete it (or rebuild) to pick up
new library files.
"""

import logging
import os
import pathlib
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Sequence, Tuple

from .exceptions import MissingLibraryFileError, NoLibraryFilesError
from .utils import is_nonempty_file

logger = logging.getLogger(__name__)

SEQUENCE_SUFFIXES: Tuple[str, ...] = (".fna", ".fa", ".ffn")
TAXON_MAP_SUFFIX = ".map"
STREAM_CHUNK_SIZE = 1 << 20


def _walk_files(roots: Sequence[pathlib.Path], suffixes: Tuple[str, ...]) -> List[pathlib.Path]:
    """Lists files under ``roots`` whose name ends with one of ``suffixes``.

    Symbolic links to files and directories are followed; a directory reached
    twice through links is only walked once.
    """
    found: List[pathlib.Path] = []
    seen_dirs = set()
    for root in roots:
        if root.is_file():
            if root.name.endswith(suffixes):
                found.append(root)
            continue
        if not root.is_dir():
            logger.warning(f"Library path does not exist: {root}")
            continue
        for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
            real = os.path.realpath(dirpath)
            if real in seen_dirs:
                dirnames[:] = []
                continue
            seen_dirs.add(real)
            dirnames.sort()
            for name in sorted(filenames):
                path = pathlib.Path(dirpath) / name
                if name.endswith(suffixes) and path.is_file():
                    found.append(path)
    return found


@dataclass(frozen=True)
class LibraryManifest:
    """Ordered, non-empty list of library sequence files."""

    files: Tuple[pathlib.Path, ...]

    def __post_init__(self):
        if not self.files:
            raise NoLibraryFilesError("Library manifest is empty")

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self) -> Iterator[pathlib.Path]:
        return iter(self.files)

    @property
    def total_bytes(self) -> int:
        """Summed size of all library files (symlinks resolved)."""
        return sum(path.stat().st_size for path in self.files)

    def stream(self) -> "SequenceStream":
        return SequenceStream(self.files)

    def write(self, manifest_path: pathlib.Path) -> None:
        tmp_path = manifest_path.with_name(manifest_path.name + ".tmp")
        tmp_path.write_text("".join(f"{path}\n" for path in self.files))
        tmp_path.replace(manifest_path)

    @classmethod
    def read(cls, manifest_path: pathlib.Path) -> "LibraryManifest":
        lines = manifest_path.read_text().splitlines()
        return cls(tuple(pathlib.Path(line) for line in lines if line.strip()))


def discover_library(
    library_dirs: Sequence[pathlib.Path],
    manifest_path: pathlib.Path,
    persist: bool = True,
) -> LibraryManifest:
    """
    Returns the library manifest, discovering files only if no manifest exists.

    Args:
        library_dirs: Directories (or files) to search.
        manifest_path: Where the manifest is cached.
        persist: Write a freshly discovered manifest to ``manifest_path``.

    Returns:
        The cached or freshly discovered manifest.

    Raises:
        NoLibraryFilesError: If no sequence files are found.
        MissingLibraryFileError: If the cached manifest lists a file that is gone.
    """
    if is_nonempty_file(manifest_path):
        try:
            manifest = LibraryManifest.read(manifest_path)
        except NoLibraryFilesError:
            logger.warning(f"Library manifest {manifest_path} lists no files, rediscovering.")
        else:
            missing = [path for path in manifest if not path.is_file()]
            if missing:
                raise MissingLibraryFileError(
                    f"Library manifest {manifest_path} lists {len(missing)} missing file(s); "
                    "delete it or rebuild to rediscover the library",
                    details={"missing": missing[0]},
                )
            logger.debug(f"Reusing library manifest {manifest_path}")
            return manifest

    logger.info("Finding all library files")
    files = _walk_files(library_dirs, SEQUENCE_SUFFIXES)
    if not files:
        dirs = " ".join(str(d) for d in library_dirs)
        raise NoLibraryFilesError(
            f"No {', '.join(s.lstrip('.') for s in SEQUENCE_SUFFIXES)} files found in {dirs}!",
            details={"library_dirs": dirs},
        )
    manifest = LibraryManifest(tuple(files))
    if persist:
        manifest.write(manifest_path)
    return manifest


def discover_taxon_maps(library_dirs: Sequence[pathlib.Path]) -> List[pathlib.Path]:
    """Lists the per-file seqID to taxID sidecar maps under the library directories."""
    return _walk_files(library_dirs, (TAXON_MAP_SUFFIX,))


class SequenceStream:
    """
    Lazy, restartable concatenation of library files.

    Each iteration re-opens the files from the start and yields raw byte
    chunks, so the same stream can be handed to several engines in turn.
    """

    def __init__(self, files: Iterable[pathlib.Path], chunk_size: int = STREAM_CHUNK_SIZE):
        self.files = tuple(files)
        self.chunk_size = chunk_size

    def __iter__(self) -> Iterator[bytes]:
        for path in self.files:
            with open(path, "rb") as handle:
                while True:
                    chunk = handle.read(self.chunk_size)
                    if not chunk:
                        break
                    yield chunk

    def write_to(self, handle) -> int:
        """Writes the whole stream to a binary file object, returning bytes written."""
        written = 0
        for chunk in self:
            handle.write(chunk)
            written += len(chunk)
        return written
