"""
Staged database build.

The build runs six stages in a fixed order:

1. count the library's k-mers into a hash table,
2. optionally shrink that table to a size budget,
3. sort the table and write the minimizer index,
4. gather the per-file seqID to taxID maps,
5. build the flat taxonomy record file (taxDB),
6. assign LCAs, producing the standard and/or UID database,
   each followed by a summary report.

Each stage is skipped when its output already exists, so re-running an
interrupted build resumes at the first unfinished stage. Any engine failure
aborts the run. Only one build may run against a database directory at a
time; there is no locking between processes.
"""

import logging
import shutil
import time
from typing import Optional

from .artifacts import ArtifactLayout, BuildArtifact, PipelineState, purge_for_rebuild
from .engines import ExternalEngine, LcaJob
from .exceptions import MissingArtifactError
from .header import read_hash_table_header
from .library import LibraryManifest, discover_library, discover_taxon_maps
from .logging_config import LogContext
from .planner import estimate_hash_size, plan_reduction, reduction_needed, index_size_bytes
from .report import ensure_report
from .settings import BuildParameters, TaxidAugmentation
from .taxonomy import ensure_taxonomy, sort_taxdb_records
from .utils import StageTimer, format_elapsed

logger = logging.getLogger(__name__)


class BuildPipeline:
    """
    Runs the database build stages against one database directory.

    Args:
        params: Resolved build parameters.
        engine: External engine implementation.
    """

    def __init__(self, params: BuildParameters, engine: ExternalEngine) -> None:
        self.params = params
        self.engine = engine
        self.layout = ArtifactLayout(params.db_dir, params.db_basename)
        self.manifest: Optional[LibraryManifest] = None

    def run(self) -> PipelineState:
        """
        Runs every unfinished stage.

        Returns:
            The pipeline state after the last stage.
        """
        start_time = time.time()

        if self.params.rebuild:
            purge_for_rebuild(self.layout)

        self.manifest = discover_library(self.params.library_dirs, self.layout.manifest.path)
        logger.info(
            f"Found {len(self.manifest)} sequence files (*.{{fna,fa,ffn}}) in the library directory."
        )

        state = PipelineState.probe(self.layout)
        logger.debug(f"Initial pipeline state: {state.as_dict()}")

        if self.params.hash_size is None and not state.counted:
            hash_size = estimate_hash_size(self.manifest.total_bytes)
            logger.info(f"Hash size not specified, using '{hash_size}'")
            self.params = self.params.with_hash_size(hash_size)

        state = self._run_stage("count", self.count_kmers, state)
        state = self._run_stage("reduce", self.reduce_database, state)
        state = self._run_stage("sort", self.sort_kmers, state)
        state = self._run_stage("map", self.build_seqid_map, state)
        state = self._run_stage("taxdb", self.build_taxdb, state)
        if self.params.lca_database:
            state = self._run_stage("lca", self.build_lca_database, state)
        if self.params.uid_database:
            state = self._run_stage("uid", self.build_uid_database, state)

        logger.info(
            f"Database construction complete. [Total: {format_elapsed(start_time)}]\n"
            "You can delete all files but database.{kdb,idx} and taxDB now, "
            "if you want (krakenbuild clean)."
        )
        return state

    def _run_stage(self, name, stage, state: PipelineState) -> PipelineState:
        with LogContext(stage=name):
            return stage(state)

    def _require(self, artifact: BuildArtifact, stage: str) -> None:
        if not artifact.is_done():
            raise MissingArtifactError(
                f"Cannot run {stage}: {artifact.name} is missing",
                details={"path": artifact.path},
            )

    # --- Step 1 ---
    def count_kmers(self, state: PipelineState) -> PipelineState:
        if state.counted:
            logger.info("Skipping step 1, k-mer set already exists.")
            return state

        logger.info("Creating k-mer set (step 1 of 6)...")
        layout = self.layout
        with StageTimer() as timer:
            for stale in layout.shards():
                logger.debug(f"Removing stale hash table shard {stale}")
                stale.unlink()

            self.engine.count(
                self.manifest.stream(),
                self.params.kmer_len,
                self.params.hash_size,
                self.params.thread_ct,
                layout.shard_prefix,
            )

            shards = layout.shards()
            if not shards:
                raise MissingArtifactError(
                    "K-mer counting produced no hash table",
                    details={"prefix": layout.shard_prefix},
                )
            # Merge only if necessary
            if len(shards) > 1:
                self.engine.merge(shards, layout.raw_table.tmp_path)
                for shard in shards:
                    shard.unlink()
            else:
                shards[0].replace(layout.raw_table.tmp_path)
            layout.raw_table.publish()

        logger.info(f"K-mer set created. [{timer}]")
        return state.advance(raw_table=True)

    # --- Step 2 ---
    def reduce_database(self, state: PipelineState) -> PipelineState:
        max_db_size = self.params.max_db_size
        if max_db_size is None:
            logger.info("Skipping step 2, no database reduction requested.")
            return state
        if state.reduced:
            logger.info("Skipping step 2, database reduction already done.")
            return state
        if state.sorted_table:
            logger.info("Skipping step 2, k-mer set already sorted.")
            return state

        layout = self.layout
        self._require(layout.raw_table, "database reduction")
        with StageTimer() as timer:
            kdb_size = layout.raw_table.path.stat().st_size
            idx_size = index_size_bytes(self.params.minimizer_len)
            if not reduction_needed(kdb_size, idx_size, max_db_size):
                logger.info("Skipping step 2, database reduction unnecessary.")
                return state

            logger.info("Reducing database size (step 2 of 6)...")
            plan = plan_reduction(
                kdb_size,
                self.params.minimizer_len,
                max_db_size,
                header=read_hash_table_header(layout.raw_table.path),
            )
            logger.info(
                f"Shrinking DB to use only {plan.target_count} of the {plan.key_count} k-mers"
            )
            self.engine.reduce(
                layout.raw_table.path, layout.reduced_table.tmp_path, plan.target_count
            )
            layout.reduced_table.publish()

            # The backup appears last; its presence marks the reduction as done.
            layout.raw_table.path.replace(layout.backup_table.tmp_path)
            layout.reduced_table.path.replace(layout.raw_table.path)
            layout.backup_table.publish()

        logger.info(f"Database reduced. [{timer}]")
        return state.advance(reduced=True, raw_table=True)

    # --- Step 3 ---
    def sort_kmers(self, state: PipelineState) -> PipelineState:
        if state.sorted_table:
            logger.info("Skipping step 3, k-mer set already sorted.")
            return state

        logger.info("Sorting k-mer set (step 3 of 6)...")
        layout = self.layout
        self._require(layout.raw_table, "k-mer sort")
        with StageTimer() as timer:
            self.engine.sort(
                layout.raw_table.path,
                layout.sorted_table.tmp_path,
                layout.index.tmp_path,
                self.params.minimizer_len,
                self.params.thread_ct,
                self.params.memory_mode,
            )
            layout.index.publish()
            layout.sorted_table.publish()

        logger.info(f"K-mer set sorted. [{timer}]")
        return state.advance(sorted_table=True)

    # --- Step 4 ---
    def build_seqid_map(self, state: PipelineState) -> PipelineState:
        if state.seqid_map:
            logger.info("Skipping step 4, seqID to taxID map already complete.")
            return state

        logger.info("Creating seqID to taxID map (step 4 of 6)..")
        seqid_map = self.layout.seqid_map
        with StageTimer() as timer:
            map_files = discover_taxon_maps(self.params.library_dirs)
            with open(seqid_map.tmp_path, "wb") as out:
                for map_file in map_files:
                    with open(map_file, "rb") as handle:
                        shutil.copyfileobj(handle, out)
            seqid_map.publish()

            with open(seqid_map.path, "rb") as handle:
                line_ct = sum(1 for _ in handle)

        if not map_files:
            logger.warning("No seqID to taxID map (*.map) files found in the library.")
        logger.info(f"{line_ct} sequences mapped to taxa. [{timer}]")
        return state.advance(seqid_map=seqid_map.is_done())

    # --- Step 5 ---
    def build_taxdb(self, state: PipelineState) -> PipelineState:
        if state.taxdb:
            logger.info("Skipping step 5, taxDB exists.")
            return state

        logger.info("Creating taxDB (step 5 of 6)... ")
        layout = self.layout
        with StageTimer() as timer:
            names, nodes = ensure_taxonomy(self.params.taxonomy_dir, self.params.taxdump_url)
            self.engine.build_taxdb(names, nodes, layout.taxdb_unsorted.tmp_path)
            record_ct = sort_taxdb_records(layout.taxdb_unsorted.tmp_path, layout.taxdb.tmp_path)
            layout.taxdb_unsorted.discard_tmp()
            if record_ct == 0:
                layout.taxdb.discard_tmp()
                raise MissingArtifactError(
                    "build_taxdb produced no taxonomy records",
                    details={"names": names, "nodes": nodes},
                )
            layout.taxdb.publish()

        logger.info(f"taxDB construction finished. [{timer}]")
        return state.advance(taxdb=True)

    # --- Step 6 ---
    def _require_lca_inputs(self, stage: str) -> None:
        layout = self.layout
        for artifact in (layout.sorted_table, layout.index, layout.taxdb):
            self._require(artifact, stage)
        if not (layout.seqid_map.is_done() or layout.seqid_map_orig.is_done()):
            self._require(layout.seqid_map, stage)

    def _seqid_map_input(self, taxids: TaxidAugmentation):
        # A retried augmenting stage reads the map as it was before augmentation.
        layout = self.layout
        if taxids.enabled and layout.seqid_map_orig.is_done():
            return layout.seqid_map_orig.path
        return layout.seqid_map.path

    def _install_augmented_map(self, taxids: TaxidAugmentation) -> None:
        layout = self.layout
        if not taxids.enabled:
            layout.seqid_map_plus.discard_tmp()
            return
        if taxids.for_sequences:
            logger.info(" Adding taxonomy IDs for sequences")
        if taxids.for_genomes:
            logger.info(" Adding taxonomy IDs for genomes")
        if not layout.seqid_map_orig.is_done():
            layout.seqid_map.path.replace(layout.seqid_map_orig.path)
        layout.seqid_map_plus.tmp_path.replace(layout.seqid_map.path)

    def build_lca_database(self, state: PipelineState) -> PipelineState:
        layout = self.layout
        if state.lca_db:
            logger.info("Skipping step 6, LCAs already set.")
        else:
            logger.info("Building standard Kraken LCA database (step 6 of 6)...")
            self._require_lca_inputs("LCA assignment")
            taxids = self.params.taxids
            with StageTimer() as timer:
                job = LcaJob(
                    sorted_table=layout.sorted_table.path,
                    index=layout.index.path,
                    taxdb=layout.taxdb.path,
                    seqid_map=self._seqid_map_input(taxids),
                    output=layout.lca_db.tmp_path,
                    kmer_count=layout.lca_kmer_count.tmp_path,
                    threads=self.params.thread_ct,
                    memory_mode=self.params.memory_mode,
                    taxid_flags=taxids.engine_flags,
                    stdout_path=layout.seqid_map_plus.tmp_path,
                )
                self.engine.set_lcas(job, self.manifest.stream())
                layout.lca_kmer_count.publish()
                self._install_augmented_map(taxids)
                layout.lca_db.publish()
            logger.info(f"LCA database created. [{timer}]")
            state = state.advance(lca_db=True)

        if ensure_report(
            self.engine, self.params, self.manifest, layout.lca_report, layout.lca_classification
        ):
            state = state.advance(lca_report=True)
        return state

    def build_uid_database(self, state: PipelineState) -> PipelineState:
        layout = self.layout
        if state.uid_db:
            logger.info("Skipping step 6.3, UID database already generated.")
        else:
            logger.info("Building UID database (step 6.3 of 6)...")
            self._require_lca_inputs("UID database")
            taxids = self.params.uid_taxid_augmentation
            with StageTimer() as timer:
                job = LcaJob(
                    sorted_table=layout.sorted_table.path,
                    index=layout.index.path,
                    taxdb=layout.taxdb.path,
                    seqid_map=self._seqid_map_input(taxids),
                    output=layout.uid_db.tmp_path,
                    kmer_count=layout.uid_kmer_count.tmp_path,
                    threads=self.params.thread_ct,
                    memory_mode=self.params.memory_mode,
                    taxid_flags=taxids.engine_flags,
                    uid_map=layout.uid_map.path,
                    stdout_path=layout.seqid_map_plus.tmp_path,
                )
                self.engine.set_lcas(job, self.manifest.stream())
                layout.uid_kmer_count.publish()
                self._install_augmented_map(taxids)
                layout.uid_db.publish()
                layout.uid_sentinel.touch()
            logger.info(f"UID Database created. [{timer}]")
            state = state.advance(uid_db=True)

        if ensure_report(
            self.engine, self.params, self.manifest, layout.uid_report, layout.uid_classification
        ):
            state = state.advance(uid_report=True)
        return state
