#!/usr/bin/env python
"""
krakenbuild command line: build, inspect and clean a Kraken database directory.

Every option falls back to the matching ``KRAKEN_*`` environment variable
(e.g. ``--threads`` to ``KRAKEN_THREAD_CT``).
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import typer
from pydantic import ValidationError
from typing_extensions import Annotated

from .artifacts import ArtifactLayout, PipelineState, clean_intermediates
from .engines import SubprocessEngine
from .exceptions import KrakenBuildError
from .header import read_hash_table_header
from .library import discover_library
from .logging_config import setup_logging
from .pipeline import BuildPipeline
from .planner import GIB, estimate_hash_size, plan_reduction
from .settings import BuildParameters, BuildSettings

logger = logging.getLogger(__name__)

app = typer.Typer(add_completion=False, pretty_exceptions_show_locals=False)

DbOption = Annotated[
    Optional[str], typer.Option("--db", help="Database directory [env: KRAKEN_DB_NAME].")
]
LogLevelOption = Annotated[str, typer.Option(help="Logging level.")]


def _load_params(**overrides: Any) -> BuildParameters:
    """Reads settings from the environment, letting given CLI values win."""
    given: Dict[str, Any] = {k: v for k, v in overrides.items() if v is not None}
    return BuildSettings(**given).resolve()


def _fail(message: str) -> None:
    logger.critical(message)
    raise typer.Exit(code=1)


@app.command(
    name="build",
    help="Build (or resume building) a Kraken database.",
    context_settings={"help_option_names": ["-h", "--help"]},
)
def build(
    db: DbOption = None,
    library_dir: Annotated[
        Optional[List[str]],
        typer.Option(help="Library directory; repeat for several [env: KRAKEN_LIBRARY_DIRS]."),
    ] = None,
    taxonomy_dir: Annotated[
        Optional[str], typer.Option(help="Taxonomy dump directory [env: KRAKEN_TAXONOMY_DIR].")
    ] = None,
    kmer_len: Annotated[Optional[int], typer.Option(help="K-mer length.")] = None,
    minimizer_len: Annotated[Optional[int], typer.Option(help="Minimizer length.")] = None,
    hash_size: Annotated[
        Optional[int], typer.Option(help="Hash table size; estimated from the library if unset.")
    ] = None,
    threads: Annotated[Optional[int], typer.Option(help="Threads passed to the engines.")] = None,
    max_db_size: Annotated[
        Optional[str], typer.Option(help="Maximum database size in GiB; enables reduction.")
    ] = None,
    work_on_disk: Annotated[
        Optional[bool], typer.Option("--work-on-disk/--work-in-memory", help="Minimize RAM usage.")
    ] = None,
    rebuild: Annotated[
        Optional[bool], typer.Option("--rebuild/--resume", help="Delete previous build files first.")
    ] = None,
    add_taxids_for_seq: Annotated[
        Optional[bool], typer.Option("--add-taxids-for-seq/--no-add-taxids-for-seq", help="Add taxonomy IDs for sequences.")
    ] = None,
    add_taxids_for_genome: Annotated[
        Optional[bool], typer.Option("--add-taxids-for-genome/--no-add-taxids-for-genome", help="Add taxonomy IDs for genomes.")
    ] = None,
    lca_database: Annotated[
        Optional[bool], typer.Option("--lca-database/--no-lca-database", help="Build the standard LCA database.")
    ] = None,
    uid_database: Annotated[
        Optional[bool], typer.Option("--uid-database/--no-uid-database", help="Build the UID database.")
    ] = None,
    log_level: LogLevelOption = "INFO",
    json_logs: Annotated[bool, typer.Option("--json-logs", help="Emit JSON log records.")] = False,
    log_file: Annotated[
        bool, typer.Option("--log-file/--no-log-file", help="Keep a build log in the database directory.")
    ] = True,
):
    """Runs the staged build pipeline."""
    setup_logging(log_level=log_level, enable_json=json_logs, enable_file=False)
    try:
        params = _load_params(
            db_name=db,
            library_dirs=" ".join(library_dir) if library_dir else None,
            taxonomy_dir=taxonomy_dir,
            kmer_len=kmer_len,
            minimizer_len=minimizer_len,
            hash_size=hash_size,
            thread_ct=threads,
            max_db_size=Decimal(max_db_size) if max_db_size is not None else None,
            work_on_disk=work_on_disk,
            rebuild_database=rebuild,
            add_taxids_for_seq=add_taxids_for_seq,
            add_taxids_for_genome=add_taxids_for_genome,
            lca_database=lca_database,
            uid_database=uid_database,
        )
        setup_logging(
            log_dir=params.db_dir,
            log_level=log_level,
            enable_file=log_file,
            enable_json=json_logs,
        )
        engine = SubprocessEngine(
            engine_dir=params.engine_dir,
            jellyfish_bin=params.jellyfish_bin,
            cwd=params.db_dir,
        )
        BuildPipeline(params, engine).run()
    except ValidationError as ve:
        _fail(f"Configuration error: {ve}")
    except ArithmeticError as ae:
        _fail(f"Configuration error: invalid --max-db-size {max_db_size!r} ({ae})")
    except KrakenBuildError as e:
        _fail(f"Database build failed: {e}")


@app.command(name="status", help="Show which build stages are complete.")
def status(db: DbOption = None, log_level: LogLevelOption = "WARNING"):
    setup_logging(log_level=log_level, enable_file=False)
    try:
        params = _load_params(db_name=db)
    except ValidationError as ve:
        _fail(f"Configuration error: {ve}")
    except KrakenBuildError as e:
        _fail(str(e))

    layout = ArtifactLayout(params.db_dir, params.db_basename)
    state = PipelineState.probe(layout)
    for stage, done in state.as_dict().items():
        typer.echo(f"{stage:<14}{'done' if done else 'pending'}")


@app.command(name="plan", help="Show derived build parameters without running any engine.")
def plan(
    db: DbOption = None,
    max_db_size: Annotated[Optional[str], typer.Option(help="Maximum database size in GiB.")] = None,
    log_level: LogLevelOption = "WARNING",
):
    setup_logging(log_level=log_level, enable_file=False)
    try:
        params = _load_params(
            db_name=db,
            max_db_size=Decimal(max_db_size) if max_db_size is not None else None,
        )
        layout = ArtifactLayout(params.db_dir, params.db_basename)
        manifest = discover_library(params.library_dirs, layout.manifest.path, persist=False)

        typer.echo(f"library files     {len(manifest)}")
        typer.echo(f"library bytes     {manifest.total_bytes}")
        if params.hash_size is None:
            typer.echo(f"hash size         {estimate_hash_size(manifest.total_bytes)} (estimated)")
        else:
            typer.echo(f"hash size         {params.hash_size}")

        if params.max_db_size is None:
            typer.echo("reduction         not requested")
            return
        if not layout.raw_table.is_done():
            typer.echo("reduction         decided after k-mer counting")
            return
        reduction = plan_reduction(
            layout.raw_table.path.stat().st_size,
            params.minimizer_len,
            params.max_db_size,
            header=read_hash_table_header(layout.raw_table.path),
        )
        typer.echo(f"index bytes       {reduction.idx_size} ({reduction.idx_size / GIB:.2f} GiB)")
        if reduction.needed:
            typer.echo(
                f"reduction         needed, keep {reduction.target_count} of {reduction.key_count} k-mers"
            )
        else:
            typer.echo("reduction         unnecessary")
    except ValidationError as ve:
        _fail(f"Configuration error: {ve}")
    except ArithmeticError as ae:
        _fail(f"Configuration error: invalid --max-db-size {max_db_size!r} ({ae})")
    except KrakenBuildError as e:
        _fail(str(e))


@app.command(name="clean", help="Delete intermediate build files, keeping the finished database.")
def clean(db: DbOption = None, log_level: LogLevelOption = "INFO"):
    setup_logging(log_level=log_level, enable_file=False)
    try:
        params = _load_params(db_name=db)
    except ValidationError as ve:
        _fail(f"Configuration error: {ve}")
    except KrakenBuildError as e:
        _fail(str(e))

    layout = ArtifactLayout(params.db_dir, params.db_basename)
    removed = clean_intermediates(layout)
    typer.echo(f"Removed {len(removed)} intermediate files from {params.db_dir}.")


def main():
    app()


if __name__ == "__main__":
    main()
