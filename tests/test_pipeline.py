"""
End-to-end tests of the staged build, driven through a recording fake engine.
"""

import logging
import pathlib
from decimal import Decimal

import pytest

from krakenbuild.artifacts import ArtifactLayout
from krakenbuild.exceptions import (
    ExternalEngineError,
    IndexTooLargeError,
    MissingArtifactError,
    NoLibraryFilesError,
)
from krakenbuild.pipeline import BuildPipeline
from krakenbuild.planner import estimate_hash_size
from krakenbuild.settings import TaxidAugmentation

from conftest import FakeEngine, artifact_names

FULL_BUILD = ["count", "sort", "build_taxdb", "set_lcas", "classify", "set_lcas", "classify"]


def _layout(db_dir: pathlib.Path) -> ArtifactLayout:
    return ArtifactLayout(db_dir, "testdb")


def _manifest_bytes(db_dir: pathlib.Path) -> bytes:
    files = (db_dir / "library-files.txt").read_text().splitlines()
    return b"".join(pathlib.Path(f).read_bytes() for f in files)


# --- Fresh builds ---


def test_fresh_build_runs_every_stage(db_dir, make_params, fake_engine):
    params = make_params()
    state = BuildPipeline(params, fake_engine).run()

    assert fake_engine.calls == FULL_BUILD
    assert all(state.as_dict()[k] for k in ("raw_table", "sorted_table", "seqid_map", "taxdb",
                                            "lca_db", "uid_db", "lca_report", "uid_report"))
    assert not state.reduced

    names = artifact_names(db_dir)
    assert {
        "library-files.txt", "database.jdb", "database0.kdb", "database.idx",
        "seqid2taxid.map", "taxDB", "database.kdb", "database.kmer_count",
        "uid_database.kdb", "uid_database.kmer_count", "uid_to_taxid.map",
        "uid_database.complete", "testdb.report", "testdb.kraken",
        "testdb.uid_report", "testdb.uid_kraken",
    } <= names
    assert not [n for n in names if n.endswith(".tmp")]
    assert "seqid2taxid-plus.map" not in names
    assert "seqid2taxid.map.orig" not in names


def test_fresh_build_streams_the_library(db_dir, make_params, fake_engine):
    BuildPipeline(make_params(), fake_engine).run()
    library = _manifest_bytes(db_dir)
    assert len(fake_engine.streamed) == 5
    assert all(data == library for data in fake_engine.streamed)


def test_hash_size_estimated_from_library(db_dir, make_params, fake_engine):
    pipeline = BuildPipeline(make_params(), fake_engine)
    pipeline.run()
    expected = estimate_hash_size(len(_manifest_bytes(db_dir)))
    assert fake_engine.hash_sizes == [expected]
    assert pipeline.params.hash_size == expected


def test_explicit_hash_size_is_kept(make_params, fake_engine):
    BuildPipeline(make_params(hash_size=777), fake_engine).run()
    assert fake_engine.hash_sizes == [777]


def test_seqid_map_concatenates_library_maps(db_dir, make_params, fake_engine):
    BuildPipeline(make_params(), fake_engine).run()
    lines = (db_dir / "seqid2taxid.map").read_text().splitlines()
    assert sorted(lines) == ["seq1\t562", "seq2\t561", "seq3\t561"]


def test_taxdb_is_sorted(db_dir, make_params, fake_engine):
    BuildPipeline(make_params(), fake_engine).run()
    ids = [line.split("\t")[0] for line in (db_dir / "taxDB").read_text().splitlines()]
    assert ids == ["562", "561", "1"]


def test_build_logs_progress(make_params, fake_engine, caplog):
    with caplog.at_level(logging.INFO, logger="krakenbuild"):
        BuildPipeline(make_params(), fake_engine).run()
    assert "Found 2 sequence files" in caplog.text
    assert "Database construction complete." in caplog.text


def test_no_library_files(db_dir, make_params, fake_engine, tmp_path):
    empty = tmp_path / "empty"
    empty.mkdir()
    with pytest.raises(NoLibraryFilesError):
        BuildPipeline(make_params(library_dirs=(empty,)), fake_engine).run()
    assert fake_engine.calls == []


# --- Idempotence and resume ---


def test_rerun_is_a_no_op(db_dir, make_params, fake_engine):
    params = make_params()
    BuildPipeline(params, fake_engine).run()
    before = {p.name: p.stat().st_mtime_ns for p in db_dir.iterdir() if p.is_file()}

    again = FakeEngine()
    BuildPipeline(params, again).run()

    assert again.calls == []
    after = {p.name: p.stat().st_mtime_ns for p in db_dir.iterdir() if p.is_file()}
    assert after == before


def test_resume_after_engine_failure(db_dir, make_params):
    params = make_params()
    failing = FakeEngine(fail_on="build_taxdb")
    with pytest.raises(ExternalEngineError):
        BuildPipeline(params, failing).run()

    assert failing.calls == ["count", "sort", "build_taxdb"]
    assert not (db_dir / "taxDB").exists()
    assert not (db_dir / "database.kdb").exists()

    resumed = FakeEngine()
    BuildPipeline(params, resumed).run()
    assert resumed.calls == ["build_taxdb", "set_lcas", "classify", "set_lcas", "classify"]


def test_failure_stops_later_stages(db_dir, make_params):
    failing = FakeEngine(fail_on="sort")
    with pytest.raises(ExternalEngineError) as exc_info:
        BuildPipeline(make_params(), failing).run()

    assert exc_info.value.engine == "sort"
    assert failing.calls == ["count", "sort"]
    assert (db_dir / "database.jdb").is_file()
    assert not (db_dir / "database0.kdb").exists()
    assert not (db_dir / "seqid2taxid.map").exists()


def test_leftover_tmp_file_reruns_only_its_stage(db_dir, make_params, fake_engine):
    params = make_params()
    BuildPipeline(params, fake_engine).run()
    (db_dir / "taxDB").unlink()
    (db_dir / "taxDB.tmp").write_text("partial output of an interrupted run\n")

    again = FakeEngine()
    BuildPipeline(params, again).run()

    assert again.calls == ["build_taxdb"]
    assert not (db_dir / "taxDB.tmp").exists()
    assert (db_dir / "taxDB").read_text().startswith("562\t")


def test_missing_report_is_regenerated(db_dir, make_params, fake_engine):
    params = make_params()
    BuildPipeline(params, fake_engine).run()
    (db_dir / "testdb.uid_report").unlink()

    again = FakeEngine()
    BuildPipeline(params, again).run()
    assert again.calls == ["classify"]


def test_empty_artifact_counts_as_missing(db_dir, make_params, fake_engine):
    params = make_params()
    BuildPipeline(params, fake_engine).run()
    (db_dir / "database0.kdb").write_bytes(b"")

    again = FakeEngine()
    BuildPipeline(params, again).run()
    assert again.calls == ["sort"]


def test_rebuild_starts_over(db_dir, make_params, fake_engine):
    BuildPipeline(make_params(), fake_engine).run()

    again = FakeEngine()
    BuildPipeline(make_params(rebuild=True), again).run()

    assert again.calls == FULL_BUILD
    assert (db_dir / "library" / "b.fa.map").exists()


# --- Stage 1 shards ---


def test_multiple_shards_are_merged(db_dir, make_params):
    engine = FakeEngine(shards=3)
    BuildPipeline(make_params(), engine).run()

    assert engine.calls[:2] == ["count", "merge"]
    assert not _layout(db_dir).shards()
    assert (db_dir / "database.jdb").stat().st_size == 3 * (56 + engine.table_payload)


def test_stale_shards_are_replaced(db_dir, make_params, fake_engine):
    (db_dir / "database_5").write_bytes(b"stale shard from a crashed run")
    BuildPipeline(make_params(), fake_engine).run()
    assert "merge" not in fake_engine.calls
    assert not (db_dir / "database_5").exists()


# --- Stage 2 reduction ---


def test_reduction_shrinks_table(db_dir, make_params, fake_engine):
    # 1080-byte table + 528-byte index against a ~1074-byte budget.
    params = make_params(minimizer_len=3, max_db_size=Decimal("0.000001"))
    state = BuildPipeline(params, fake_engine).run()

    assert fake_engine.calls[:3] == ["count", "reduce", "sort"]
    assert fake_engine.reduce_counts == [45]
    assert state.reduced
    assert (db_dir / "database.jdb.big").stat().st_size == 1080
    assert (db_dir / "database.jdb").stat().st_size == 128
    assert not (db_dir / "database.jdb.small").exists()

    again = FakeEngine()
    BuildPipeline(params, again).run()
    assert again.calls == []


def test_reduction_unnecessary(db_dir, make_params, fake_engine):
    params = make_params(minimizer_len=3, max_db_size=Decimal("1"))
    state = BuildPipeline(params, fake_engine).run()
    assert "reduce" not in fake_engine.calls
    assert not state.reduced
    assert not (db_dir / "database.jdb.big").exists()


def test_index_larger_than_budget_aborts(db_dir, make_params, fake_engine):
    params = make_params(minimizer_len=15, max_db_size=Decimal("0.5"))
    with pytest.raises(IndexTooLargeError):
        BuildPipeline(params, fake_engine).run()
    assert fake_engine.calls == ["count"]
    assert not (db_dir / "database0.kdb").exists()


# --- Stage 6 LCA / UID ---


def test_lca_only(db_dir, make_params, fake_engine):
    BuildPipeline(make_params(uid_database=False), fake_engine).run()
    assert fake_engine.calls == ["count", "sort", "build_taxdb", "set_lcas", "classify"]
    assert not (db_dir / "uid_database.kdb").exists()
    assert fake_engine.lca_jobs[0].uid_map is None


def test_taxid_augmentation_installs_augmented_map(db_dir, make_params, fake_engine):
    params = make_params(taxids=TaxidAugmentation(for_sequences=True))
    layout = _layout(db_dir)
    BuildPipeline(params, fake_engine).run()

    lca_job, uid_job = fake_engine.lca_jobs
    assert list(lca_job.taxid_flags) == ["-a"]
    assert lca_job.seqid_map == layout.seqid_map.path
    assert list(uid_job.taxid_flags) == []
    assert uid_job.uid_map == layout.uid_map.path
    assert uid_job.seqid_map == layout.seqid_map.path

    original = sorted(layout.seqid_map_orig.path.read_text().splitlines())
    assert original == ["seq1\t562", "seq2\t561", "seq3\t561"]
    assert "seq1\t1000001" in layout.seqid_map.path.read_text()


def test_uid_database_applies_taxids_without_lca(db_dir, make_params, fake_engine):
    params = make_params(
        lca_database=False, taxids=TaxidAugmentation(for_sequences=True, for_genomes=True)
    )
    BuildPipeline(params, fake_engine).run()

    assert fake_engine.calls == ["count", "sort", "build_taxdb", "set_lcas", "classify"]
    (uid_job,) = fake_engine.lca_jobs
    assert list(uid_job.taxid_flags) == ["-a", "-A"]
    assert not (db_dir / "database.kdb").exists()
    assert (db_dir / "seqid2taxid.map.orig").is_file()


def test_retried_augmentation_reads_original_map(db_dir, make_params, fake_engine):
    params = make_params(taxids=TaxidAugmentation(for_genomes=True))
    layout = _layout(db_dir)
    BuildPipeline(params, fake_engine).run()
    original = layout.seqid_map_orig.path.read_text()
    layout.lca_db.path.unlink()

    again = FakeEngine()
    BuildPipeline(params, again).run()

    assert again.calls == ["set_lcas"]
    assert again.lca_jobs[0].seqid_map == layout.seqid_map_orig.path
    assert layout.seqid_map_orig.path.read_text() == original


def test_lca_requires_seqid_map(db_dir, make_params, fake_engine):
    for map_file in (db_dir / "library").rglob("*.map"):
        map_file.unlink()

    with pytest.raises(MissingArtifactError, match="seqid2taxid.map"):
        BuildPipeline(make_params(), fake_engine).run()
    assert fake_engine.calls == ["count", "sort", "build_taxdb"]


def test_lca_failure_keeps_earlier_stages(db_dir, make_params):
    failing = FakeEngine(fail_on="set_lcas")
    with pytest.raises(ExternalEngineError):
        BuildPipeline(make_params(), failing).run()
    assert (db_dir / "taxDB").is_file()
    assert not (db_dir / "database.kdb").exists()
    assert not (db_dir / "testdb.report").exists()
