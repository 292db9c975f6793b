# clinic_interop/exceptions.py


class MessagingError(Exception):
    """Base class for HL7 messaging pipeline failures."""


class HL7EncodingError(MessagingError):
    """A value could not be encoded into HL7v2 text."""

    def __init__(self, message: str, *, field: str = ""):
        super().__init__(message)
        self.message = message
        self.field = field

    def __str__(self) -> str:
        if self.field:
            return f"{self.message} (field: {self.field})"
        return self.message


class LedgerWriteError(MessagingError):
    """The HL7 message ledger could not be written. Always propagated."""
