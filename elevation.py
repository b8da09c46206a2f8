"""DEM raster access and zonal statistics for ward polygons."""
import math
from pathlib import Path
from typing import Optional, Union

import numpy as np
import rasterio
from affine import Affine
from rasterio.errors import RasterioError
from rasterio.features import geometry_mask
from rasterio.io import MemoryFile
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

from errors import DataLoadError


class ElevationRaster:
    """Single-band elevation grid in geographic lon/lat."""

    def __init__(self, data: np.ndarray, transform: Affine, nodata: Optional[float] = None):
        # NaN cells count as nodata even when the file declares none
        data = np.ma.masked_invalid(np.ma.asarray(data, dtype=float))
        if nodata is not None:
            data = np.ma.masked_where(data == nodata, data)
        self.data = data
        self.transform = transform
        self.nodata = nodata

    @property
    def shape(self):
        return self.data.shape

    @classmethod
    def from_bytes(cls, buffer: bytes, source: str = 'elevation') -> 'ElevationRaster':
        """Decode a GeoTIFF (or any GDAL raster) held in memory; band 1 only."""
        try:
            with MemoryFile(buffer) as memfile:
                with memfile.open() as src:
                    if src.crs is not None and not src.crs.is_geographic:
                        raise DataLoadError(source, f"expected a geographic raster, got CRS {src.crs}")
                    data = src.read(1, masked=True).astype(float)
                    return cls(data, src.transform, src.nodata)
        except RasterioError as e:
            raise DataLoadError(source, f"could not decode raster: {str(e)}")

    @classmethod
    def open(cls, path: Union[str, Path]) -> 'ElevationRaster':
        print(f"Loading elevation raster from {path}...")
        try:
            buffer = Path(path).read_bytes()
        except OSError as e:
            raise DataLoadError('elevation', f"could not read {path}: {str(e)}")
        raster = cls.from_bytes(buffer)
        print(f"Loaded elevation raster ({raster.shape[0]}x{raster.shape[1]} cells)")
        return raster

    def _window(self, region: BaseGeometry):
        min_x, min_y, max_x, max_y = region.bounds
        inverse = ~self.transform
        cols, rows = zip(*(inverse * (x, y) for x, y in ((min_x, max_y), (max_x, min_y))))
        height, width = self.data.shape
        col0 = max(int(math.floor(min(cols))), 0)
        col1 = min(int(math.ceil(max(cols))), width)
        row0 = max(int(math.floor(min(rows))), 0)
        row1 = min(int(math.ceil(max(rows))), height)
        return row0, row1, col0, col1

    def zonal_mean(self, region: BaseGeometry) -> Optional[float]:
        """
        Mean of the cells whose centres fall inside ``region``.

        Regions smaller than a cell fall back to every cell they touch.
        Returns None when the region misses the raster or only covers nodata.
        """
        row0, row1, col0, col1 = self._window(region)
        if row0 >= row1 or col0 >= col1:
            return None

        window = self.data[row0:row1, col0:col1]
        window_transform = self.transform @ Affine.translation(col0, row0)

        for all_touched in (False, True):
            inside = geometry_mask([mapping(region)], out_shape=window.shape,
                                   transform=window_transform, invert=True,
                                   all_touched=all_touched)
            values = window[inside].compressed()
            if values.size:
                return float(values.mean())
        return None


def load_elevation(path: Union[str, Path]) -> ElevationRaster:
    return ElevationRaster.open(path)
