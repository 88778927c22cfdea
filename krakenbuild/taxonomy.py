"""
Taxonomy inputs: fetching the NCBI dump and ordering taxDB records.
"""

import csv
import logging
import pathlib
import tarfile
from typing import Tuple

import httpx
import pandas as pd
from tqdm import tqdm

from .exceptions import TaxonomyUnavailableError

logger = logging.getLogger(__name__)

NAMES_DUMP = "names.dmp"
NODES_DUMP = "nodes.dmp"
TAXDUMP_ARCHIVE = "taxdump.tar.gz"
DOWNLOAD_TIMEOUT = httpx.Timeout(60.0, connect=30.0)

# 0-based columns of taxDB records, both sorted numerically descending.
TAXDB_PRIMARY_KEY = 5
TAXDB_SECONDARY_KEY = 4


def dump_paths(taxonomy_dir: pathlib.Path) -> Tuple[pathlib.Path, pathlib.Path]:
    return taxonomy_dir / NAMES_DUMP, taxonomy_dir / NODES_DUMP


def download_taxdump(url: str, destination: pathlib.Path) -> pathlib.Path:
    """
    Streams the taxonomy archive at ``url`` to ``destination``.

    Raises:
        TaxonomyUnavailableError: On any HTTP or transport error.
    """
    tmp_path = destination.with_name(destination.name + ".tmp")
    logger.info(f"Downloading {url}")
    try:
        with httpx.stream("GET", url, follow_redirects=True, timeout=DOWNLOAD_TIMEOUT) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length", 0)) or None
            with open(tmp_path, "wb") as handle, tqdm(
                total=total, unit="B", unit_scale=True, desc=TAXDUMP_ARCHIVE
            ) as progress:
                for chunk in response.iter_bytes():
                    handle.write(chunk)
                    progress.update(len(chunk))
    except httpx.HTTPError as e:
        tmp_path.unlink(missing_ok=True)
        raise TaxonomyUnavailableError(
            f"Could not download taxonomy dump: {e}", details={"url": url}
        ) from e
    tmp_path.replace(destination)
    return destination


def ensure_taxonomy(taxonomy_dir: pathlib.Path, url: str) -> Tuple[pathlib.Path, pathlib.Path]:
    """
    Returns the names/nodes dump paths, fetching and unpacking the archive if
    either file is missing.
    """
    names, nodes = dump_paths(taxonomy_dir)
    if names.is_file() and nodes.is_file():
        return names, nodes

    logger.info(f"{names} or {nodes} does not exist - downloading it ...")
    taxonomy_dir.mkdir(parents=True, exist_ok=True)
    archive = download_taxdump(url, taxonomy_dir / TAXDUMP_ARCHIVE)
    try:
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(taxonomy_dir, filter="data")
    except (tarfile.TarError, OSError) as e:
        raise TaxonomyUnavailableError(
            f"Could not unpack {archive}: {e}", details={"url": url}
        ) from e

    if not (names.is_file() and nodes.is_file()):
        raise TaxonomyUnavailableError(
            f"{archive} does not contain {NAMES_DUMP} and {NODES_DUMP}", details={"url": url}
        )
    return names, nodes


def _numeric_key(frame: pd.DataFrame, column: int) -> pd.Series:
    if column not in frame.columns:
        return pd.Series(0, index=frame.index)
    return pd.to_numeric(frame[column], errors="coerce").fillna(0)


def sort_taxdb_records(source: pathlib.Path, destination: pathlib.Path) -> int:
    """
    Writes the tab-separated records of ``source`` to ``destination`` ordered
    by column 6, then column 5, both numerically descending. Non-numeric keys
    count as 0 and ties keep their input order.

    Returns:
        Number of records written.
    """
    try:
        frame = pd.read_csv(
            source,
            sep="\t",
            header=None,
            dtype=str,
            keep_default_na=False,
            quoting=csv.QUOTE_NONE,
        )
    except pd.errors.EmptyDataError:
        destination.write_text("")
        return 0

    order = (
        frame.assign(
            _primary=_numeric_key(frame, TAXDB_PRIMARY_KEY),
            _secondary=_numeric_key(frame, TAXDB_SECONDARY_KEY),
        )
        .sort_values(["_primary", "_secondary"], ascending=False, kind="mergesort")
        .index
    )
    ordered = frame.loc[order]

    with open(destination, "w", encoding="utf-8") as handle:
        handle.writelines(
            "\t".join(row) + "\n" for row in ordered.itertuples(index=False, name=None)
        )
    return len(ordered)
