from __future__ import annotations


class LoadoutOcrError(Exception):
    """Base class for errors raised by the detection service."""


class ImageDecodeError(LoadoutOcrError):
    """The uploaded payload could not be decoded into an image."""


class SinkError(LoadoutOcrError):
    """The detection store rejected or failed to persist a record."""


class EngineNotReadyError(LoadoutOcrError):
    """Raised when an OCR engine was requested before it finished warming."""

    def __init__(self, language_code: str) -> None:
        super().__init__(f"OCR model '{language_code}' not loaded")
        self.language_code = language_code
