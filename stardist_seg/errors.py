"""Exception hierarchy for the detection pipeline."""


class StarDistSegError(Exception):
    """Base class for all errors raised by stardist_seg."""


class BackendError(StarDistSegError):
    """The prediction backend could not be initialized or failed to predict.

    Fatal for a whole ``detect`` call, since no tile can proceed without it.
    """


class TileProcessingError(StarDistSegError):
    """A single tile could not be processed.

    Only the affected tile is dropped; other tiles continue.
    """

    def __init__(self, message: str, tile=None):
        super().__init__(message)
        self.tile = tile
