"""Exception hierarchy for the reconciliation engine.

Oracle wrappers never raise; these cover the boundaries where a caller
must decide (rule loading, extraction payload validation).
"""


class FreightIntelError(Exception):
    """Base for all engine errors."""


class RuleConfigError(FreightIntelError):
    """A rule table is missing, unparseable, or structurally invalid."""


class ExtractionError(FreightIntelError):
    """Extraction oracle failed or returned a malformed payload."""

    def __init__(self, message: str, *, tier: str | None = None):
        super().__init__(message)
        self.tier = tier
