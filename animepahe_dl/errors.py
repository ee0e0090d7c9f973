"""
Exception hierarchy shared by every stage of the pipeline.
"""


class PaheError(Exception):
    """Base class for all downloader errors."""


class ConfigError(PaheError):
    """Invalid settings or missing external tool."""


class NetworkError(PaheError):
    """
    Raised once a request has failed every retry attempt.
    """

    def __init__(self, url: str, attempts: int, cause: str = None):
        self.url = url
        self.attempts = attempts
        self.cause = cause
        message = f"Request to {url} failed after {attempts} attempt(s)"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class CatalogError(PaheError):
    """Series list or episode list could not be retrieved."""


# Resolver

class ResolveError(PaheError):
    """Stream URL could not be resolved for an episode."""


class PageUnreachable(ResolveError):
    pass


class NoVariants(ResolveError):
    pass


class ScriptExtractionFailed(ResolveError):
    pass


class ScriptExecutionFailed(ResolveError):
    pass


class NoPlaylistURLFound(ResolveError):
    pass


# Playlist & segment engine

class EngineError(PaheError):
    """Segment acquisition or decryption failed for an episode."""


class EmptyPlaylist(EngineError):
    pass


class MalformedPlaylist(EngineError):
    pass


class SegmentCountMismatch(EngineError):
    def __init__(self, expected: int, found: int):
        self.expected = expected
        self.found = found
        super().__init__(f"Segment count mismatch: expected {expected}, found {found}")


class KeyUnavailable(EngineError):
    pass


class DecryptCountMismatch(EngineError):
    def __init__(self, expected: int, found: int):
        self.expected = expected
        self.found = found
        super().__init__(f"Decrypted file count mismatch: expected {expected}, found {found}")


class MissingSegmentFile(EngineError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"Segment file listed in manifest not found on disk: {path}")


class MuxError(PaheError):
    """
    ffmpeg concatenation failed.
    """

    def __init__(self, message: str, output: str = None):
        self.output = output
        super().__init__(message)


# Selection

class SelectionError(PaheError):
    pass


class EmptySelection(SelectionError):
    pass
