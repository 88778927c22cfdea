"""
Exception hierarchy for krakenbuild.

Every error is terminal for a build run: the pipeline never retries and never
reports partial success. Re-invoking the build resumes from the first
unfinished stage.
"""

from typing import Optional, Sequence


class KrakenBuildError(Exception):
    """Base exception for all krakenbuild errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        """
        Initialize exception with message and optional details.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


# Missing or unusable inputs
class FatalInputError(KrakenBuildError):
    """Base exception for inputs without which the build cannot start."""
    pass


class DatabaseDirectoryNotFoundError(FatalInputError):
    """Database directory does not exist."""
    pass


class NoLibraryFilesError(FatalInputError):
    """Library discovery found no sequence files."""
    pass


class MissingLibraryFileError(FatalInputError):
    """A library file listed in the cached manifest no longer exists."""
    pass


class MissingEngineError(FatalInputError):
    """An external engine executable is not available."""
    pass


class MissingArtifactError(FatalInputError):
    """A stage's precondition artifact from an earlier stage is absent."""
    pass


class TaxonomyUnavailableError(FatalInputError):
    """Taxonomy dump files are absent and could not be fetched."""
    pass


# Size budget
class FatalBudgetError(KrakenBuildError):
    """Base exception for size budgets that cannot be satisfied."""
    pass


class IndexTooLargeError(FatalBudgetError):
    """The minimizer index alone exceeds the maximum database size."""
    pass


class InvalidHeaderError(KrakenBuildError):
    """Hash-table file header is truncated or unreadable."""
    pass


class ExternalEngineError(KrakenBuildError):
    """An external engine exited with a failure status."""

    def __init__(
        self,
        engine: str,
        command: Sequence[str],
        returncode: int,
        stderr_tail: str = "",
    ):
        super().__init__(
            f"{engine} failed with exit code {returncode}",
            details={"command": " ".join(command)},
        )
        self.engine = engine
        self.command = list(command)
        self.returncode = returncode
        self.stderr_tail = stderr_tail

    def __str__(self):
        text = super().__str__()
        if self.stderr_tail:
            text += f"\nstderr:\n{self.stderr_tail}"
        return text
