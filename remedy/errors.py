"""Error taxonomy for the fix engine.

Per-file and per-ecosystem errors are recovered where they happen and recorded
on result objects; only :class:`FatalError` is meant to reach the caller.
"""


class RemedyError(Exception):
    """Base class for all depremedy errors."""


class ParseError(RemedyError):
    """A build file could not be parsed."""

    def __init__(self, file_path: str, message: str):
        self.file_path = file_path
        super().__init__(f"{file_path}: {message}")


class ResolutionError(RemedyError):
    """An ecosystem's resolution tooling failed."""

    def __init__(self, ecosystem: str, message: str):
        self.ecosystem = ecosystem
        super().__init__(f"{ecosystem}: {message}")


class ToolTimeoutError(ResolutionError):
    """A resolution command exceeded its wall-clock timeout."""


class OutputLimitError(ResolutionError):
    """A resolution command produced more output than allowed."""


class MatchError(RemedyError):
    """A version or range could not be interpreted."""


class ValidationError(RemedyError):
    """A modified build file failed structural validation."""

    def __init__(self, file_path: str, errors: list[str]):
        self.file_path = file_path
        self.errors = list(errors)
        super().__init__(f"{file_path}: {'; '.join(errors)}")


class FatalError(RemedyError):
    """Nothing usable could be produced for the repository."""
