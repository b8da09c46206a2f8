"""Error taxonomy for the ward map."""
from typing import Iterable, Optional


class WardMapError(Exception):
    """Base class for every error raised by the ward map."""


class DataLoadError(WardMapError):
    """A dataset could not be fetched or parsed; its layer stays absent."""

    def __init__(self, source: str, message: str):
        self.source = source
        self.message = message
        super().__init__(f"{source}: {message}")


class SchemaMismatchError(DataLoadError):
    """Feature attributes do not match the dataset's schema."""


class InvalidGeometryError(WardMapError):
    """A feature geometry is missing, malformed or of the wrong type."""

    def __init__(self, dataset: str, index: Optional[int], message: str):
        self.dataset = dataset
        self.index = index
        self.message = message
        where = f"{dataset}[{index}]" if index is not None else dataset
        super().__init__(f"{where}: {message}")


class DataNotReadyError(WardMapError):
    """A ward was selected before the datasets it aggregates were loaded."""

    def __init__(self, missing: Iterable[str]):
        self.missing = tuple(missing)
        super().__init__(f"GeoJSON data not loaded yet: {', '.join(self.missing)}")
