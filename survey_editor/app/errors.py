from __future__ import annotations

from typing import Optional


class AppError(Exception):
    # Base class for domain errors (intended, meaningful failures).
    pass


class CompletionTransportError(AppError):
    # Raised when the completion service answers non-2xx, the network fails,
    # or the stream carries an upstream error frame.
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ExchangeInFlight(AppError):
    # Raised when a message is sent while a previous reply is still streaming.
    pass


class IllegalTransition(AppError):
    # Raised when the exchange state machine is asked for a move outside its table.
    pass


class AttachmentError(AppError):
    # Raised for a single attachment that cannot be read or parsed.
    pass


class NoExtractableText(AttachmentError):
    # Raised when a file parses fine but yields no text.
    pass


class SettingsStoreError(AppError):
    # Raised when the settings store cannot be read or written.
    pass
