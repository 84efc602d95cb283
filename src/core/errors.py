"""
Export Errors

Exception hierarchy shared by the session layer, the pipeline and the CLI.

Fatal errors end the run with a non-zero exit status. Folder errors are
handled by the download worker that hit them and never leave it.
"""


class ExportError(Exception):
    """Base class for all export failures."""


class FatalExportError(ExportError):
    """Aborts the whole run."""


class ConfigError(FatalExportError):
    pass


class ConnectError(FatalExportError):
    pass


class AuthError(FatalExportError):
    pass


class ListError(FatalExportError):
    pass


class ArchiveError(FatalExportError):
    pass


class FolderError(ExportError):
    """Abandons the current folder; the run continues with the next one.

    ``aborted`` is True when the session itself is gone (connection reset,
    EOF) and must not be reused.
    """

    aborted = False


class SelectError(FolderError):
    pass


class SelectAborted(SelectError):
    aborted = True


class FetchError(FolderError):
    pass


class FetchAborted(FetchError):
    aborted = True


class FetchFailed(FetchError):
    """The server answered the FETCH with NO or BAD."""


class Cancelled(ExportError):
    """Raised from blocking channel operations once the run is cancelled."""
