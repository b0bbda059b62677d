"""
Exception taxonomy for the Mosaic pipeline.

  ConfigurationError     -- missing credentials / settings, raised before any work
  ValidationError        -- bad input or illegal state transition, no side effects
  ExternalServiceError   -- embedding / extraction / transcription call failed
  MalformedResponseError -- structured output was not valid JSON; always caught
                            inside the extractor and replaced with defaults
"""
from __future__ import annotations


class MosaicError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(MosaicError):
    pass


class ValidationError(MosaicError):
    pass


class ItemNotFoundError(ValidationError):
    def __init__(self, item_id: str) -> None:
        super().__init__(f"Item {item_id} not found")
        self.item_id = item_id


class InvalidTransitionError(ValidationError):
    def __init__(self, item_id: str, current: str, target: str) -> None:
        super().__init__(f"Item {item_id}: illegal transition {current} -> {target}")
        self.item_id = item_id
        self.current = current
        self.target = target


class AlreadyProcessingError(InvalidTransitionError):
    """Another run holds the item (status is already `processing`)."""

    def __init__(self, item_id: str) -> None:
        super().__init__(item_id, "processing", "processing")


class ExternalServiceError(MosaicError):
    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class MalformedResponseError(MosaicError):
    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw
