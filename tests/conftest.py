"""
Pytest fixtures for stardist_seg tests.

Provides synthetic images, a deterministic star-distance "model" and
geometry factories.
"""

import shutil
import sys
import tempfile
from pathlib import Path

import numpy as np
import pytest
from scipy import ndimage
from shapely.geometry import Polygon

sys.path.insert(0, str(Path(__file__).parent.parent))

from stardist_seg.models.backend import CallableBackend


# Disk centers (x, y) for the default synthetic image; the second one
# straddles x=96, the seam used by the tiling tests
DISK_CENTERS = [(30, 30), (96, 60), (150, 40), (60, 95), (140, 95)]
DISK_RADIUS = 8


def draw_disks(width, height, centers, radius, value=1.0):
    image = np.zeros((height, width), dtype=np.float32)
    yy, xx = np.mgrid[:height, :width]
    for cx, cy in centers:
        image[(xx - cx) ** 2 + (yy - cy) ** 2 <= radius ** 2] = value
    return image


def star_distances(foreground, n_rays=32, max_dist=32):
    """Distance along each ray to the first background pixel, (h, w, n_rays)."""
    h, w = foreground.shape
    yy, xx = np.mgrid[:h, :w]
    dist = np.zeros((h, w, n_rays), dtype=np.float32)
    for a in range(n_rays):
        theta = 2 * np.pi * a / n_rays
        done = ~foreground
        d = np.zeros((h, w), dtype=np.float32)
        for k in range(1, max_dist + 1):
            y = np.round(yy + k * np.sin(theta)).astype(int)
            x = np.round(xx + k * np.cos(theta)).astype(int)
            inside = (y >= 0) & (y < h) & (x >= 0) & (x < w)
            fg = np.zeros((h, w), dtype=bool)
            fg[inside] = foreground[y[inside], x[inside]]
            hit = ~fg & ~done
            d[hit] = k
            done |= hit
        d[~done] = max_dist
        dist[:, :, a] = d
    return dist


def star_model_predict(image, n_rays=32, prob_scale=float(DISK_RADIUS)):
    """Combined (h, w, 1 + n_rays) output for a (h, w, c) image of bright disks."""
    foreground = image[:, :, 0] > 0.5
    prob = np.clip(ndimage.distance_transform_edt(foreground) / prob_scale, 0, 1)
    rays = star_distances(foreground, n_rays)
    return np.concatenate([prob[:, :, np.newaxis].astype(np.float32), rays], axis=2)


@pytest.fixture
def disk_image():
    """192x128 float image with five disks of radius 8."""
    return draw_disks(192, 128, DISK_CENTERS, DISK_RADIUS)


@pytest.fixture
def star_backend():
    """CallableBackend returning star distances of bright regions ('yxc')."""
    return CallableBackend(star_model_predict, layout='yxc')


@pytest.fixture
def make_circle():
    """Factory for regular polygons approximating circles."""
    def _make(cx, cy, r, n=64):
        theta = np.linspace(0, 2 * np.pi, n, endpoint=False)
        return Polygon(np.column_stack([cx + r * np.cos(theta), cy + r * np.sin(theta)]))
    return _make


@pytest.fixture
def temp_output_dir():
    """Temporary directory, removed after the test."""
    temp_dir = tempfile.mkdtemp(prefix="stardist_seg_test_")
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)
