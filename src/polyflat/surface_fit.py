# src/polyflat/surface_fit.py
# -----------------------------------------------------------------------------
# Quadratic illumination surface, one per colour channel
#
#   f(x, y) = c0 + c1*x + c2*y + c3*x^2 + c4*y^2 + c5*x*y
#
#   • Design matrix: one row per pixel, row k = y*W + x (y outer, x inner)
#   • Channel solver: ordinary least squares, dense (gelsd) or streamed
#     6x6 normal equations (Cholesky); both column-equilibrated
#   • Evaluator: fitted value floored at 0, rounded, saturated to uint16
#   • Assembler: R, G, B surfaces + opaque alpha -> (H, W, 4) uint16
#
# Channel values are opaque reals; the loader hands us 16-bit samples
# (0..65535) and the assembler writes 16-bit samples back.
# -----------------------------------------------------------------------------
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from scipy import linalg as sla

from .config import Config, CorrectionOptions
from .errors import SingularSystem
from .image_io import PixelGrid
from .logging_config import log_timing

log = logging.getLogger(__name__)

# Extraction rule per channel: (name, index into the sample triple)
CHANNELS = (("red", 0), ("green", 1), ("blue", 2))

# Singular values below this fraction of the largest (after column
# equilibration) count as zero when estimating the rank.
LSTSQ_RCOND = 1e-10


# =============================================================================
#                         Design Matrix Builder
# =============================================================================

def poly_terms(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """
    Basis terms [1, x, y, x^2, y^2, x*y] for matching coordinate arrays.
    Returns an (N, 6) float64 array.
    """
    x = np.asarray(x, dtype=np.float64).ravel()
    y = np.asarray(y, dtype=np.float64).ravel()
    ones = np.ones_like(x)
    return np.column_stack((ones, x, y, x * x, y * y, x * y))


def _check_dims(width: int, height: int) -> tuple[int, int]:
    w, h = int(width), int(height)
    if w != width or h != height or w < 1 or h < 1:
        raise ValueError(f"Image dimensions must be positive integers, got {width}x{height}")
    return w, h


def _row_coords(width: int, y0: int, y1: int) -> tuple[np.ndarray, np.ndarray]:
    xx, yy = np.meshgrid(
        np.arange(width, dtype=np.float64),
        np.arange(y0, y1, dtype=np.float64),
        indexing="xy",
    )
    return xx, yy


def build_design_matrix(width: int, height: int) -> np.ndarray:
    """
    (W*H, 6) regression matrix for a W x H image.

    Row y*W + x holds the basis evaluated at pixel (x, y). The result is
    read-only so it can be shared between the channel solves.
    """
    w, h = _check_dims(width, height)
    xx, yy = _row_coords(w, 0, h)
    A = poly_terms(xx, yy)
    A.setflags(write=False)
    return A


# =============================================================================
#                              Channel Solver
# =============================================================================

def _as_coefficients(c: np.ndarray) -> np.ndarray:
    out = np.array(c, dtype=np.float64, copy=True).reshape(Config.BASIS_SIZE)
    out.setflags(write=False)
    return out


def solve_channel(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Least-squares coefficients x minimising ||A x - b||^2.

    Columns are scaled to unit norm before the solve and the solution is
    scaled back, which leaves the minimiser unchanged. Raises
    SingularSystem when A has fewer than six independent columns.
    """
    A = np.asarray(A, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64).reshape(-1)

    if A.ndim != 2 or A.shape[1] != Config.BASIS_SIZE:
        raise ValueError(f"Design matrix must be (N, {Config.BASIS_SIZE}), got {A.shape}")
    if b.shape[0] != A.shape[0]:
        raise ValueError(f"Value vector has {b.shape[0]} rows, design matrix has {A.shape[0]}")
    if not np.all(np.isfinite(b)):
        raise ValueError("Channel values contain NaN or infinity")

    n = A.shape[0]
    if n < Config.BASIS_SIZE:
        raise SingularSystem(
            f"Least-squares system is underdetermined: {n} samples for {Config.BASIS_SIZE} coefficients",
            rank=n,
        )

    norms = np.linalg.norm(A, axis=0)
    norms[norms == 0.0] = 1.0
    x_scaled, _resid, rank, _sv = sla.lstsq(A / norms, b, cond=LSTSQ_RCOND, lapack_driver="gelsd")

    if rank < Config.BASIS_SIZE:
        raise SingularSystem(
            f"Design matrix is rank-deficient (rank {rank} < {Config.BASIS_SIZE})",
            rank=int(rank),
        )
    return _as_coefficients(x_scaled / norms)


def accumulate_normal_equations(
    values: np.ndarray,
    block_rows: int = Config.STREAM_BLOCK_ROWS,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Fold an (H, W) or (H, W, C) value array into A^T A and A^T b without
    materialising the full design matrix.

    Returns (ata, atb) with shapes (6, 6) and (6,) or (6, C).
    """
    v = np.asarray(values, dtype=np.float64)
    if v.ndim not in (2, 3):
        raise ValueError(f"Expected (H, W) or (H, W, C) values, got shape {v.shape}")
    w, h = _check_dims(v.shape[1], v.shape[0])
    if not np.all(np.isfinite(v)):
        raise ValueError("Channel values contain NaN or infinity")

    k = Config.BASIS_SIZE
    ata = np.zeros((k, k), dtype=np.float64)
    atb = np.zeros((k,) + v.shape[2:], dtype=np.float64)

    step = max(1, int(block_rows))
    for y0 in range(0, h, step):
        y1 = min(h, y0 + step)
        xx, yy = _row_coords(w, y0, y1)
        B = poly_terms(xx, yy)
        rhs = v[y0:y1].reshape((y1 - y0) * w, *v.shape[2:])
        ata += B.T @ B
        atb += B.T @ rhs
    return ata, atb


def solve_normal_equations(ata: np.ndarray, atb: np.ndarray, n_samples: int) -> np.ndarray:
    """
    Solve (A^T A) x = A^T b for one channel.

    The 6x6 matrix is equilibrated to unit diagonal and factored with
    Cholesky. An ill-conditioned or indefinite matrix raises SingularSystem.
    """
    k = Config.BASIS_SIZE
    ata = np.asarray(ata, dtype=np.float64)
    atb = np.asarray(atb, dtype=np.float64).reshape(-1)
    if ata.shape != (k, k) or atb.shape != (k,):
        raise ValueError(f"Expected ({k}, {k}) and ({k},) normal equations, got {ata.shape} and {atb.shape}")

    if n_samples < k:
        raise SingularSystem(
            f"Least-squares system is underdetermined: {n_samples} samples for {k} coefficients",
            rank=int(n_samples),
        )

    d = np.sqrt(np.diag(ata))
    if np.any(d == 0.0):
        raise SingularSystem("Design matrix has an all-zero basis column")

    M = ata / np.outer(d, d)
    eig = np.linalg.eigvalsh(M)
    if eig[0] <= Config.NORMAL_RCOND * eig[-1]:
        raise SingularSystem(
            f"Normal equations are singular (eigenvalue ratio {eig[0] / eig[-1]:.3g})",
            rank=int(np.sum(eig > Config.NORMAL_RCOND * eig[-1])),
        )

    try:
        factor = sla.cho_factor(M, lower=False, check_finite=True)
    except sla.LinAlgError as e:
        raise SingularSystem(f"Normal equations are not positive definite: {e}") from e
    y = sla.cho_solve(factor, atb / d)
    return _as_coefficients(y / d)


def fit_channels(samples: np.ndarray, options: CorrectionOptions | None = None) -> tuple[np.ndarray, ...]:
    """
    Fit one coefficient vector per channel of an (H, W, 3) sample array.

    Returns (red, green, blue), each a fresh read-only (6,) array.
    """
    options = options or CorrectionOptions()
    s = np.asarray(samples)
    if s.ndim != 3 or s.shape[2] != len(CHANNELS):
        raise ValueError(f"Expected (H, W, 3) samples, got shape {s.shape}")
    h, w = s.shape[:2]

    if options.streaming:
        with log_timing(f"Accumulating normal equations for {w}x{h}"):
            ata, atb = accumulate_normal_equations(s)

        def _solve(entry):
            name, idx = entry
            with log_timing(f"Solving {name} channel (normal equations)"):
                return solve_normal_equations(ata, atb[:, idx], w * h)
    else:
        A = build_design_matrix(w, h)

        def _solve(entry):
            name, idx = entry
            b = s[..., idx].reshape(-1).astype(np.float64)
            with log_timing(f"Solving {name} channel (least squares)"):
                return solve_channel(A, b)

    if options.workers > 1:
        with ThreadPoolExecutor(max_workers=min(options.workers, len(CHANNELS))) as ex:
            coeffs = tuple(ex.map(_solve, CHANNELS))
    else:
        coeffs = tuple(_solve(entry) for entry in CHANNELS)

    for (name, _idx), c in zip(CHANNELS, coeffs):
        log.debug("%s coefficients: %s", name, np.array2string(c, precision=6))
    return coeffs


# =============================================================================
#                      Surface Evaluator / Image Assembler
# =============================================================================

def evaluate_surface(coeffs: np.ndarray, x, y):
    """
    Fitted surface at (x, y), floored at zero.

    x and y may be scalars or matching arrays. The value replaces the
    original sample; it is not a ratio against it.
    """
    c = np.asarray(coeffs, dtype=np.float64).reshape(Config.BASIS_SIZE)
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    f = c[0] + c[1] * x + c[2] * y + c[3] * x * x + c[4] * y * y + c[5] * x * y
    return np.maximum(f, 0.0)


def quantize_samples(values) -> np.ndarray:
    """Round non-negative surface values to uint16, saturating at 65535."""
    v = np.rint(np.asarray(values, dtype=np.float64))
    return np.clip(v, 0, Config.SAMPLE_MAX).astype(np.uint16)


def assemble_image(coeffs_rgb, width: int, height: int) -> np.ndarray:
    """
    Build the (H, W, 4) uint16 output grid from three coefficient vectors.
    Alpha is fully opaque.
    """
    if len(coeffs_rgb) != len(CHANNELS):
        raise ValueError(f"Expected {len(CHANNELS)} coefficient vectors, got {len(coeffs_rgb)}")
    w, h = _check_dims(width, height)
    xx, yy = _row_coords(w, 0, h)

    out = np.empty((h, w, 4), dtype=np.uint16)
    for (_name, idx), c in zip(CHANNELS, coeffs_rgb):
        out[..., idx] = quantize_samples(evaluate_surface(c, xx, yy))
    out[..., 3] = Config.ALPHA_OPAQUE
    return out


def correct_grid(grid, options: CorrectionOptions | None = None) -> np.ndarray:
    """
    Fit and re-evaluate the illumination surface of a PixelGrid (or an
    (H, W, 3) sample array). Returns the (H, W, 4) uint16 output grid.
    """
    samples = grid.samples if isinstance(grid, PixelGrid) else np.asarray(grid)
    if samples.ndim != 3 or samples.shape[2] != len(CHANNELS):
        raise ValueError(f"Expected (H, W, 3) samples, got shape {samples.shape}")
    h, w = samples.shape[:2]

    with log_timing(f"Surface fit {w}x{h}", level=logging.INFO):
        coeffs = fit_channels(samples, options)
        return assemble_image(coeffs, w, h)
