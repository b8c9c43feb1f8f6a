"""
Error taxonomy for the updater.

Parse and expansion errors abort one package. Fetch errors are recorded per
task and never abort a run. Dependency problems are surfaced for the caller
to decide on.
"""


class UpdaterError(Exception):
    """Base class for all updater errors."""


class MalformedMetadataError(UpdaterError):
    """Definition text is structurally impossible to parse."""


class UnboundRequiredVariableError(UpdaterError):
    """A ``${name:?message}`` expansion hit an unset or empty variable."""

    def __init__(self, name: str, message: str = ""):
        self.name = name
        self.message = message or "parameter null or not set"
        super().__init__(f"{name}: {self.message}")


class FetchFailure(UpdaterError):
    """Network or transfer error for a single asset."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}")


class ChecksumMismatch(FetchFailure):
    """Downloaded content does not match the declared digest."""

    def __init__(self, url: str, algorithm: str, expected: str, actual: str):
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(url, f"{algorithm} mismatch (expected {expected}, got {actual})")


class DependencyUnresolvable(UpdaterError):
    """A dependency is neither installed nor obtainable from any source."""

    def __init__(self, name: str, required_by: frozenset[str] | set[str]):
        self.name = name
        self.required_by = frozenset(required_by)
        super().__init__(f"{name} (required by {', '.join(sorted(self.required_by))})")


class AurError(UpdaterError):
    """The AUR RPC endpoint returned an error reply."""


class CommandError(UpdaterError):
    """An external command exited unsuccessfully."""

    def __init__(self, command: list[str], returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(f"{' '.join(command)} exited with {returncode}{detail}")
