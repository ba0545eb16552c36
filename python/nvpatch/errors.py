"""
Error types raised while reading and patching PE images.

Every error derives from PatchError, itself a ValueError, so callers can
catch the whole family at once or pick out a single condition.
"""


class PatchError(ValueError):
    """Base class for all image patching errors."""

    pass


class FormatError(PatchError):
    """Raised when the input is not a well-formed PE image.

    Covers a missing PE signature, a missing or truncated optional header,
    invalid alignments and reads through RVAs that no section backs.
    """

    pass


class UnsupportedFormat(PatchError):
    """Raised when the optional header is not the PE32+ (64-bit) form."""

    pass


class InconsistentExportTable(PatchError):
    """Raised when the export directory references ordinals it does not define."""

    pass


class ConflictingState(PatchError):
    """Raised when a requested change collides with existing image state.

    For example the reserved patch section already exists, or an export
    with the same ordinal or name is already present.
    """

    pass
