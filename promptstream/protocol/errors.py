"""Custom exceptions for the generation pipeline."""

from .messages import ErrorCode


class PromptStreamError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class ResourceLoadError(PromptStreamError):
    """Raised when the model resource fails to load."""

    def __init__(self, message: str):
        super().__init__(
            ErrorCode.RESOURCE_LOAD_ERROR,
            f"Model load failed: {message}",
        )


class GenerationError(PromptStreamError):
    """Raised when the token generator fails mid-stream."""

    def __init__(self, message: str):
        super().__init__(
            ErrorCode.GENERATION_ERROR,
            f"Generation error: {message}",
        )
