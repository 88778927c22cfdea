"""
krakenbuild: resumable builder for Kraken taxonomic classification databases.

This package turns a library of genomic sequence files and an NCBI taxonomy
dump into a sorted, taxonomy-annotated k-mer database by driving the external
counting, sorting and LCA-assignment engines through a staged, restartable
pipeline.
"""

__version__ = "0.1.0"

from .artifacts import ArtifactLayout, BuildArtifact, PipelineState
from .engines import EngineResult, ExternalEngine, LcaJob, SubprocessEngine
from .header import HashTableHeader, read_hash_table_header
from .library import LibraryManifest, SequenceStream, discover_library
from .pipeline import BuildPipeline
from .planner import (
    estimate_hash_size,
    index_size_bytes,
    reduction_needed,
    target_record_count,
)
from .settings import BuildParameters, BuildSettings
from .utils import format_elapsed

__all__ = [
    "ArtifactLayout",
    "BuildArtifact",
    "PipelineState",
    "EngineResult",
    "ExternalEngine",
    "LcaJob",
    "SubprocessEngine",
    "HashTableHeader",
    "read_hash_table_header",
    "LibraryManifest",
    "SequenceStream",
    "discover_library",
    "BuildPipeline",
    "estimate_hash_size",
    "index_size_bytes",
    "reduction_needed",
    "target_record_count",
    "BuildParameters",
    "BuildSettings",
    "format_elapsed",
    "__version__",
]
