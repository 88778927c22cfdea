"""
External computational engines used by the build.

``ExternalEngine`` is the capability the pipeline depends on; each method
blocks until the engine exits and either returns an ``EngineResult`` or
raises ``ExternalEngineError``. ``SubprocessEngine`` runs the real
executables. Engines that read the concatenated library get it through an
anonymous pipe, passed on the command line as ``/dev/fd/N``.
"""

import contextlib
import logging
import os
import pathlib
import shlex
import shutil
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import BinaryIO, Deque, Iterable, List, Optional, Protocol, Sequence

from .exceptions import ExternalEngineError, MissingEngineError
from .library import SequenceStream

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 200
_STREAM_ARG = object()


@dataclass(frozen=True)
class EngineResult:
    engine: str
    command: List[str]
    returncode: int = 0
    stderr_tail: str = ""


@dataclass
class LcaJob:
    """Inputs and outputs of one LCA-assignment run (standard or UID database)."""

    sorted_table: pathlib.Path
    index: pathlib.Path
    taxdb: pathlib.Path
    seqid_map: pathlib.Path
    output: pathlib.Path
    kmer_count: pathlib.Path
    threads: int = 1
    memory_mode: bool = True
    taxid_flags: Sequence[str] = field(default_factory=tuple)
    uid_map: Optional[pathlib.Path] = None
    stdout_path: Optional[pathlib.Path] = None

    def build_args(self) -> List[object]:
        args: List[object] = []
        if self.memory_mode:
            args.append("-M")
        args.extend(["-x", "-d", self.sorted_table])
        if self.uid_map is not None:
            args.extend(["-I", self.uid_map])
        args.extend(["-o", self.output, "-i", self.index, "-v", "-b", self.taxdb])
        args.extend(self.taxid_flags)
        args.extend([
            "-t", self.threads,
            "-m", self.seqid_map,
            "-c", self.kmer_count,
            "-F", _STREAM_ARG,
        ])
        return args


class ExternalEngine(Protocol):
    """The external programs a database build drives."""

    def count(
        self,
        stream: SequenceStream,
        kmer_len: int,
        hash_size: int,
        threads: int,
        output_prefix: pathlib.Path,
    ) -> EngineResult:
        ...

    def merge(self, shards: Sequence[pathlib.Path], output: pathlib.Path) -> EngineResult:
        ...

    def reduce(self, table: pathlib.Path, output: pathlib.Path, record_count: int) -> EngineResult:
        ...

    def sort(
        self,
        table: pathlib.Path,
        output: pathlib.Path,
        index: pathlib.Path,
        minimizer_len: int,
        threads: int,
        memory_mode: bool,
    ) -> EngineResult:
        ...

    def build_taxdb(
        self, names: pathlib.Path, nodes: pathlib.Path, output: pathlib.Path
    ) -> EngineResult:
        ...

    def set_lcas(self, job: LcaJob, stream: SequenceStream) -> EngineResult:
        ...

    def classify(
        self,
        db_dir: pathlib.Path,
        report: pathlib.Path,
        output: pathlib.Path,
        threads: int,
        stream: SequenceStream,
    ) -> EngineResult:
        ...


def _drain_stderr(handle: BinaryIO, tail: Deque[str], engine: str) -> None:
    for raw in handle:
        line = raw.decode("utf-8", errors="replace").rstrip("\n")
        tail.append(line)
        logger.debug(f"[{engine}] {line}")
    handle.close()


def _feed_stream(stream: SequenceStream, write_fd: int, errors: List[BaseException]) -> None:
    pipe = os.fdopen(write_fd, "wb")
    try:
        stream.write_to(pipe)
        pipe.close()
    except BrokenPipeError:
        # Engine exited before reading everything; its exit status decides.
        logger.debug("Engine closed the sequence stream early.")
    except OSError as e:
        errors.append(e)
    finally:
        with contextlib.suppress(BrokenPipeError):
            pipe.close()


class SubprocessEngine:
    """Runs the build engines as child processes."""

    def __init__(
        self,
        engine_dir: Optional[pathlib.Path] = None,
        jellyfish_bin: str = "jellyfish",
        cwd: Optional[pathlib.Path] = None,
    ) -> None:
        self.engine_dir = engine_dir
        self.jellyfish_bin = jellyfish_bin
        self.cwd = cwd

    def executable(self, name: str) -> str:
        """
        Locates an engine executable, preferring ``engine_dir``.

        Raises:
            MissingEngineError: If the executable cannot be found.
        """
        if self.engine_dir is not None and (self.engine_dir / name).exists():
            candidate = str(self.engine_dir / name)
        else:
            candidate = name
        resolved = shutil.which(candidate)
        if resolved is None:
            raise MissingEngineError(
                f"Required engine executable not found: {name}",
                details={"engine_dir": self.engine_dir},
            )
        return resolved

    def _run(
        self,
        engine: str,
        args: Iterable[object],
        stream: Optional[SequenceStream] = None,
        stdout_path: Optional[pathlib.Path] = None,
    ) -> EngineResult:
        executable = self.executable(engine)
        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        feed_errors: List[BaseException] = []

        stdout_handle = open(stdout_path, "wb") if stdout_path is not None else None
        try:
            read_fd = write_fd = None
            if stream is not None:
                read_fd, write_fd = os.pipe()

            command = [executable]
            for arg in args:
                if arg is _STREAM_ARG:
                    command.append(f"/dev/fd/{read_fd}")
                else:
                    command.append(str(arg))

            logger.info(f"EXECUTING {shlex.join(command)}")

            try:
                proc = subprocess.Popen(
                    command,
                    stdout=stdout_handle,
                    stderr=subprocess.PIPE,
                    cwd=self.cwd,
                    pass_fds=(read_fd,) if read_fd is not None else (),
                )
            except BaseException:
                if write_fd is not None:
                    os.close(write_fd)
                raise
            finally:
                if read_fd is not None:
                    os.close(read_fd)

            threads = [
                threading.Thread(
                    target=_drain_stderr, args=(proc.stderr, stderr_tail, engine), daemon=True
                )
            ]
            if stream is not None:
                threads.append(
                    threading.Thread(
                        target=_feed_stream, args=(stream, write_fd, feed_errors), daemon=True
                    )
                )
            for thread in threads:
                thread.start()

            returncode = proc.wait()
            for thread in threads:
                thread.join()
        finally:
            if stdout_handle is not None:
                stdout_handle.close()

        tail = "\n".join(stderr_tail)
        if returncode != 0:
            raise ExternalEngineError(engine, command, returncode, tail)
        if feed_errors:
            logger.error(f"Reading the library for {engine} failed: {feed_errors[0]}")
            raise ExternalEngineError(engine, command, returncode, str(feed_errors[0]))
        return EngineResult(engine, command, returncode, tail)

    def count(self, stream, kmer_len, hash_size, threads, output_prefix):
        return self._run(
            self.jellyfish_bin,
            [
                "count",
                "-m", kmer_len,
                "-s", hash_size,
                "-C",
                "-t", threads,
                "-o", output_prefix,
                _STREAM_ARG,
            ],
            stream=stream,
        )

    def merge(self, shards, output):
        return self._run(self.jellyfish_bin, ["merge", "-o", output, *shards])

    def reduce(self, table, output, record_count):
        return self._run("db_shrink", ["-d", table, "-o", output, "-n", record_count])

    def sort(self, table, output, index, minimizer_len, threads, memory_mode):
        args: List[object] = ["-z"]
        if memory_mode:
            args.append("-M")
        args.extend(["-t", threads, "-n", minimizer_len, "-d", table, "-o", output, "-i", index])
        return self._run("db_sort", args)

    def build_taxdb(self, names, nodes, output):
        return self._run("build_taxdb", [names, nodes], stdout_path=output)

    def set_lcas(self, job, stream):
        return self._run("set_lcas", job.build_args(), stream=stream, stdout_path=job.stdout_path)

    def classify(self, db_dir, report, output, threads, stream):
        return self._run(
            "krakenu",
            [
                "--db", db_dir,
                "--report-file", report,
                "--threads", threads,
                "--fasta-input", _STREAM_ARG,
            ],
            stream=stream,
            stdout_path=output,
        )
