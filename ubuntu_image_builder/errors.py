from __future__ import annotations


class BuildError(RuntimeError):
    """Base class for every failure raised by the image builder."""


class ValidationError(BuildError):
    """Bad flag combination or unknown step, detected before any step runs."""


class LayoutError(BuildError):
    pass


class DiskIDError(BuildError):
    pass


class ImageWriteError(BuildError):
    pass


class OffsetBeyondEndError(ImageWriteError):
    pass


class BootloaderError(BuildError):
    pass


class HookError(BuildError):
    pass
