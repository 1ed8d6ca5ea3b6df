"""
polyflat - quadratic flat-field surface fitting for RGB images.

Fits c0 + c1*x + c2*y + c3*x^2 + c4*y^2 + c5*x*y to every colour channel
by least squares and writes the fitted surface back out as an image.
"""

from .errors import PolyflatError, SingularSystem, UnknownFormat
from .image_io import PixelGrid, load_image, save_image
from .surface_fit import (
    build_design_matrix,
    solve_channel,
    evaluate_surface,
    assemble_image,
    correct_grid,
)

__all__ = [
    "PolyflatError",
    "SingularSystem",
    "UnknownFormat",
    "PixelGrid",
    "load_image",
    "save_image",
    "build_design_matrix",
    "solve_channel",
    "evaluate_surface",
    "assemble_image",
    "correct_grid",
]

__version__ = "0.1.0"
