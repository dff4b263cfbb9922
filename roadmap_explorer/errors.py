"""Exceptions raised at the boundaries of Roadmap Explorer."""


class RoadmapExplorerError(Exception):
    """Base class for all package errors."""


class ConfigError(RoadmapExplorerError):
    """A configuration file could not be read or validated."""


class InvalidPromptError(RoadmapExplorerError):
    """A generation request was submitted with an empty prompt."""


class GenerationFailedError(RoadmapExplorerError):
    """The external generation pipeline failed for the current session."""

    def __init__(self, message: str, token: int) -> None:
        super().__init__(message)
        self.token = token
