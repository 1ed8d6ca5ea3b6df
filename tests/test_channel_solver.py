import numpy as np
import pytest

from polyflat.config import CorrectionOptions
from polyflat.errors import SingularSystem
from polyflat.surface_fit import (
    accumulate_normal_equations,
    build_design_matrix,
    evaluate_surface,
    fit_channels,
    solve_channel,
    solve_normal_equations,
)

TRUE_COEFFS = np.array([1200.0, 3.5, -2.25, 0.125, 0.05, -0.01])


def _exact_values(width, height, coeffs):
    A = build_design_matrix(width, height)
    return A, A @ coeffs


def test_recovers_coefficients_exactly():
    A, b = _exact_values(17, 11, TRUE_COEFFS)
    c = solve_channel(A, b)
    np.testing.assert_allclose(c, TRUE_COEFFS, rtol=1e-6, atol=1e-9)


def test_recovers_coefficients_on_large_grid():
    A, b = _exact_values(640, 480, TRUE_COEFFS)
    c = solve_channel(A, b)
    np.testing.assert_allclose(c, TRUE_COEFFS, rtol=1e-6, atol=1e-9)


def test_normal_equations_recover_coefficients():
    width, height = 23, 19
    _, b = _exact_values(width, height, TRUE_COEFFS)
    ata, atb = accumulate_normal_equations(b.reshape(height, width), block_rows=4)
    c = solve_normal_equations(ata, atb, width * height)
    np.testing.assert_allclose(c, TRUE_COEFFS, rtol=1e-6, atol=1e-9)


def test_streamed_sums_match_dense_products(rng):
    width, height = 13, 9
    values = rng.uniform(0, 65535, size=(height, width))
    A = build_design_matrix(width, height)
    ata, atb = accumulate_normal_equations(values, block_rows=2)
    np.testing.assert_allclose(ata, A.T @ A, rtol=1e-12)
    np.testing.assert_allclose(atb, A.T @ values.ravel(), rtol=1e-12)


@pytest.mark.parametrize("width,height", [(1, 10), (10, 1), (2, 2), (1, 5), (2, 5), (5, 2)])
def test_rank_deficient_grids_raise(width, height):
    A = build_design_matrix(width, height)
    b = np.arange(width * height, dtype=np.float64)
    with pytest.raises(SingularSystem):
        solve_channel(A, b)

    ata, atb = accumulate_normal_equations(b.reshape(height, width))
    with pytest.raises(SingularSystem):
        solve_normal_equations(ata, atb, width * height)


def test_smallest_full_rank_grid_solves():
    A, b = _exact_values(3, 3, TRUE_COEFFS)
    np.testing.assert_allclose(solve_channel(A, b), TRUE_COEFFS, rtol=1e-6, atol=1e-9)


def test_rejects_non_finite_values():
    A = build_design_matrix(4, 4)
    b = np.zeros(16)
    b[3] = np.nan
    with pytest.raises(ValueError):
        solve_channel(A, b)


def test_rejects_mismatched_lengths():
    A = build_design_matrix(4, 4)
    with pytest.raises(ValueError):
        solve_channel(A, np.zeros(15))


def test_coefficient_vectors_are_fresh_and_read_only(rng):
    samples = rng.integers(0, 65535, size=(8, 10, 3)).astype(np.uint16)
    red, green, blue = fit_channels(samples)
    assert red is not green and green is not blue
    assert not np.shares_memory(red, green)
    with pytest.raises(ValueError):
        red[0] = 0.0


def test_channels_are_fitted_independently():
    yy, xx = np.mgrid[0:10, 0:12]
    samples = np.stack([100 + 0 * xx, 200 + 3 * xx, 300 + 5 * yy], axis=-1).astype(np.uint16)
    red, green, blue = fit_channels(samples)
    np.testing.assert_allclose(red, [100, 0, 0, 0, 0, 0], atol=1e-8)
    np.testing.assert_allclose(green, [200, 3, 0, 0, 0, 0], atol=1e-8)
    np.testing.assert_allclose(blue, [300, 0, 5, 0, 0, 0], atol=1e-8)


def test_thread_pool_gives_identical_results(rng):
    samples = rng.integers(0, 65535, size=(15, 21, 3)).astype(np.uint16)
    serial = fit_channels(samples, CorrectionOptions(workers=1))
    threaded = fit_channels(samples, CorrectionOptions(workers=3))
    for a, b in zip(serial, threaded):
        np.testing.assert_array_equal(a, b)


def test_streaming_matches_dense_fit(rng):
    samples = rng.integers(0, 65535, size=(30, 40, 3)).astype(np.uint16)
    dense = fit_channels(samples, CorrectionOptions(streaming=False))
    streamed = fit_channels(samples, CorrectionOptions(streaming=True, workers=2))
    yy, xx = np.mgrid[0:30, 0:40]
    for a, b in zip(dense, streamed):
        np.testing.assert_allclose(evaluate_surface(a, xx, yy), evaluate_surface(b, xx, yy), atol=1e-3)


def test_workers_must_be_positive():
    with pytest.raises(ValueError):
        CorrectionOptions(workers=0)
