"""Build configuration read from ``KRAKEN_*`` environment variables.

``BuildSettings`` holds the ``KRAKEN_*`` environment surface;
``BuildSettings.resolve()`` turns it into the immutable
``BuildParameters`` that every stage reads.
"""

import logging
import pathlib
from decimal import Decimal
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import DatabaseDirectoryNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TAXDUMP_URL = "https://ftp.ncbi.nih.gov/pub/taxonomy/taxdump.tar.gz"


class TaxidAugmentation(BaseModel):
    """Which taxonomy IDs the LCA engine adds to the seqID map."""

    model_config = ConfigDict(frozen=True)

    for_sequences: bool = False
    for_genomes: bool = False

    @property
    def enabled(self) -> bool:
        return self.for_sequences or self.for_genomes

    @property
    def engine_flags(self) -> List[str]:
        flags = []
        if self.for_sequences:
            flags.append("-a")
        if self.for_genomes:
            flags.append("-A")
        return flags


class BuildParameters(BaseModel):
    """Resolved configuration of one build run."""

    model_config = ConfigDict(frozen=True)

    db_dir: pathlib.Path
    library_dirs: Tuple[pathlib.Path, ...]
    taxonomy_dir: pathlib.Path
    kmer_len: int
    minimizer_len: int
    hash_size: Optional[int] = None
    thread_ct: int = 1
    max_db_size: Optional[Decimal] = None
    memory_mode: bool = True
    rebuild: bool = False
    taxids: TaxidAugmentation = TaxidAugmentation()
    lca_database: bool = True
    uid_database: bool = True
    taxdump_url: str = DEFAULT_TAXDUMP_URL
    engine_dir: Optional[pathlib.Path] = None
    jellyfish_bin: str = "jellyfish"

    @property
    def db_basename(self) -> str:
        return self.db_dir.resolve().name

    @property
    def uid_taxid_augmentation(self) -> TaxidAugmentation:
        """Taxid augmentation for the UID database.

        The LCA database applies the augmentation when it is built, so the UID
        database only applies it when the LCA database is disabled.
        """
        if self.lca_database:
            return TaxidAugmentation()
        return self.taxids

    def with_hash_size(self, hash_size: int) -> "BuildParameters":
        return self.model_copy(update={"hash_size": hash_size})


class BuildSettings(BaseSettings):
    """Build settings loaded from ``KRAKEN_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="KRAKEN_",
        env_ignore_empty=True,
        extra="ignore",
    )

    db_name: str = Field(..., description="Database directory.")
    library_dirs: str = Field("library/", description="Whitespace-separated library directories.")
    taxonomy_dir: str = Field("taxonomy/", description="Directory holding names.dmp and nodes.dmp.")
    kmer_len: int = Field(31, gt=0)
    minimizer_len: int = Field(15, gt=0)
    hash_size: Optional[int] = Field(None, gt=0)
    thread_ct: int = Field(1, gt=0)
    max_db_size: Optional[Decimal] = Field(None, ge=0, description="Maximum database size in GiB.")
    work_on_disk: bool = Field(
        False,
        description=(
            "Minimize RAM usage. Parsed as a boolean, so values such as \"0\" or \"false\" "
            "select memory mode rather than any non-empty value enabling disk mode."
        ),
    )
    rebuild_database: bool = False
    add_taxids_for_seq: bool = False
    add_taxids_for_genome: bool = False
    lca_database: bool = True
    uid_database: bool = True
    taxdump_url: str = DEFAULT_TAXDUMP_URL
    engine_dir: Optional[pathlib.Path] = None
    jellyfish_bin: str = "jellyfish"

    @model_validator(mode="after")
    def check_minimizer_fits_kmer(self):
        if self.minimizer_len > self.kmer_len:
            raise ValueError(
                f"Minimizer length ({self.minimizer_len}) must not exceed k-mer length ({self.kmer_len})."
            )
        return self

    def _relative_to_db(self, db_dir: pathlib.Path, value: str) -> pathlib.Path:
        path = pathlib.Path(value).expanduser()
        return path if path.is_absolute() else db_dir / path

    def resolve(self) -> BuildParameters:
        """
        Resolves directories and flags into ``BuildParameters``.

        Raises:
            DatabaseDirectoryNotFoundError: If the database directory is missing.
        """
        db_dir = pathlib.Path(self.db_name).expanduser().resolve()
        if not db_dir.is_dir():
            raise DatabaseDirectoryNotFoundError(
                f"Can't find Kraken DB directory \"{self.db_name}\""
            )

        if self.work_on_disk:
            logger.info("Kraken build set to minimize RAM usage.")
        else:
            logger.info("Kraken build set to minimize disk writes.")

        return BuildParameters(
            db_dir=db_dir,
            library_dirs=tuple(
                self._relative_to_db(db_dir, d) for d in self.library_dirs.split()
            ),
            taxonomy_dir=self._relative_to_db(db_dir, self.taxonomy_dir),
            kmer_len=self.kmer_len,
            minimizer_len=self.minimizer_len,
            hash_size=self.hash_size,
            thread_ct=self.thread_ct,
            max_db_size=self.max_db_size,
            memory_mode=not self.work_on_disk,
            rebuild=self.rebuild_database,
            taxids=TaxidAugmentation(
                for_sequences=self.add_taxids_for_seq,
                for_genomes=self.add_taxids_for_genome,
            ),
            lca_database=self.lca_database,
            uid_database=self.uid_database,
            taxdump_url=self.taxdump_url,
            engine_dir=self.engine_dir,
            jellyfish_bin=self.jellyfish_bin,
        )
