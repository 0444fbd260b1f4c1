"""
Exceptions raised by the update pipeline.
"""


class PipelineError(Exception):
    """Base class for update pipeline errors."""


class EmptyCollectionError(PipelineError):
    """A collection that must be populated has no documents."""

    def __init__(self, collection: str, message: str | None = None):
        super().__init__(message or f"The {collection} collection is empty")
        self.collection = collection


class InconsistentDataError(PipelineError):
    """Documents expected to be identical disagree; the operation cannot proceed."""


class LanguageDetectionError(PipelineError):
    """Could not determine the language (en/fr) of a url."""

    def __init__(self, url: str):
        super().__init__(f"Could not determine language for {url}")
        self.url = url


class InvalidOptionsError(PipelineError):
    """Mutually exclusive options were combined."""


class AccessDeniedError(PipelineError):
    """The server answered with an "Access Denied" page (rate limited)."""

    def __init__(self, url: str):
        super().__init__(f'Received "Access Denied" for {url}')
        self.url = url
