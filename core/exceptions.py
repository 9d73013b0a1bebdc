"""
Exceptions raised by the conversion pipeline.

Fatal conditions (ArchiveCorrupt, OutputUnwritable, UnsupportedFormat,
ReferenceTableError) abort a run. RecordMalformed only ever concerns a
single archive entry and is turned into a skipped outcome by the pipeline.
"""


class ConversionError(Exception):
    """Base exception for conversion errors"""
    pass


class ArchiveCorrupt(ConversionError):
    """Raised when the archive container cannot be opened or its framing is invalid"""
    pass


class OutputUnwritable(ConversionError):
    """Raised when the output destination cannot be opened or written"""
    pass


class UnsupportedFormat(ConversionError):
    """Raised when an output format selector is not recognized"""

    def __init__(self, selector: str, choices=(), reason: str = None):
        self.selector = selector
        self.choices = tuple(choices)
        message = f"Unsupported output format: {selector!r}"
        if reason:
            message += f" ({reason})"
        elif self.choices:
            message += f" (expected one of: {', '.join(self.choices)})"
        super().__init__(message)


class ReferenceTableError(ConversionError):
    """Raised when the organization reference files cannot be loaded"""
    pass


class RecordMalformed(ConversionError):
    """Raised when one archive entry cannot be mapped to a person record"""

    def __init__(self, entry_name: str, cause):
        self.entry_name = entry_name
        self.cause = cause
        super().__init__(f"{entry_name}: {cause}")
