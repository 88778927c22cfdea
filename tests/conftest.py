import logging
import os
import pathlib
from typing import List, Optional, Set

import numpy as np
import pytest

from krakenbuild.engines import EngineResult, LcaJob
from krakenbuild.exceptions import ExternalEngineError
from krakenbuild.settings import BuildParameters

FASTA_A = ">seq1\nACGTACGTACGTACGTACGTACGTACGTACGTAC\n"
FASTA_B = ">seq2\nTTTTGGGGCCCCAAAATTTTGGGGCCCCAAAATT\n>seq3\nGATTACA\n"


def make_header(key_bits: int = 62, value_len: int = 4, key_count: int = 1000) -> bytes:
    """A 56-byte hash table header with the given record geometry."""
    words = np.zeros(7, dtype="=u8")
    words[1] = key_bits
    words[2] = value_len
    words[6] = key_count
    return words.tobytes()


class FakeEngine:
    """
    Records every engine call and writes plausible outputs, so the pipeline
    can be driven without the real executables.
    """

    def __init__(
        self,
        shards: int = 1,
        fail_on: Optional[str] = None,
        table_payload: int = 1024,
        key_bits: int = 62,
    ) -> None:
        self.calls: List[str] = []
        self.shards = shards
        self.fail_on = fail_on
        self.table_payload = table_payload
        self.key_bits = key_bits
        self.streamed: List[bytes] = []
        self.lca_jobs: List[LcaJob] = []
        self.reduce_counts: List[int] = []
        self.hash_sizes: List[int] = []

    def _call(self, name: str) -> EngineResult:
        self.calls.append(name)
        if name == self.fail_on:
            raise ExternalEngineError(name, [name], 1, f"{name}: simulated failure")
        return EngineResult(name, [name])

    def _table(self) -> bytes:
        return make_header(key_bits=self.key_bits) + b"\0" * self.table_payload

    def count(self, stream, kmer_len, hash_size, threads, output_prefix):
        self.streamed.append(b"".join(stream))
        self.hash_sizes.append(hash_size)
        result = self._call("count")
        for i in range(self.shards):
            output_prefix.with_name(f"{output_prefix.name}_{i}").write_bytes(self._table())
        return result

    def merge(self, shards, output):
        result = self._call("merge")
        output.write_bytes(b"".join(p.read_bytes() for p in shards))
        return result

    def reduce(self, table, output, record_count):
        result = self._call("reduce")
        self.reduce_counts.append(record_count)
        output.write_bytes(table.read_bytes()[:128])
        return result

    def sort(self, table, output, index, minimizer_len, threads, memory_mode):
        result = self._call("sort")
        output.write_bytes(table.read_bytes())
        index.write_bytes(b"\1" * 64)
        return result

    def build_taxdb(self, names, nodes, output):
        result = self._call("build_taxdb")
        output.write_text(
            "1\troot\t1\tno rank\t1\t0\n"
            "562\tEscherichia coli\t561\tspecies\t3\t7\n"
            "561\tEscherichia\t543\tgenus\t2\t6\n"
        )
        return result

    def set_lcas(self, job: LcaJob, stream):
        self.streamed.append(b"".join(stream))
        self.lca_jobs.append(job)
        result = self._call("set_lcas")
        job.output.write_bytes(b"kdb")
        job.kmer_count.write_text("562\t10\n")
        if job.uid_map is not None:
            job.uid_map.write_text("1\t562\n")
        if job.stdout_path is not None:
            job.stdout_path.write_text("seq1\t562\nseq2\t561\nseq1\t1000001\n")
        return result

    def classify(self, db_dir, report, output, threads, stream):
        self.streamed.append(b"".join(stream))
        result = self._call("classify")
        report.write_text("100.00\t3\t3\tU\t0\tunclassified\n")
        output.write_text("U\tseq1\t0\t34\t0:34\n")
        return result


@pytest.fixture(autouse=True)
def _clean_kraken_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("KRAKEN_"):
            monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def _restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def db_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    """
    A database directory with a two-file library, per-file taxon maps and a
    taxonomy dump, laid out the way the build expects.
    """
    db = tmp_path / "testdb"
    library = db / "library"
    (library / "bacteria").mkdir(parents=True)
    (library / "bacteria" / "a.fna").write_text(FASTA_A)
    (library / "bacteria" / "a.fna.map").write_text("seq1\t562\n")
    (library / "b.fa").write_text(FASTA_B)
    (library / "b.fa.map").write_text("seq2\t561\nseq3\t561\n")
    (library / "notes.txt").write_text("not a sequence file\n")

    taxonomy = db / "taxonomy"
    taxonomy.mkdir()
    (taxonomy / "names.dmp").write_text("1\t|\troot\t|\t\t|\tscientific name\t|\n")
    (taxonomy / "nodes.dmp").write_text("1\t|\t1\t|\tno rank\t|\n")
    return db


@pytest.fixture
def make_params(db_dir: pathlib.Path):
    """Factory for BuildParameters rooted at ``db_dir``."""

    def _make(**overrides) -> BuildParameters:
        values = dict(
            db_dir=db_dir,
            library_dirs=(db_dir / "library",),
            taxonomy_dir=db_dir / "taxonomy",
            kmer_len=31,
            minimizer_len=15,
            thread_ct=2,
        )
        values.update(overrides)
        return BuildParameters(**values)

    return _make


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


def artifact_names(db: pathlib.Path) -> Set[str]:
    return {p.name for p in db.iterdir() if p.is_file()}
