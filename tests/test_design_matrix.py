import numpy as np
import pytest

from polyflat.surface_fit import build_design_matrix, poly_terms


@pytest.mark.parametrize("width,height", [(3, 3), (4, 7), (9, 5), (16, 16)])
def test_rows_follow_scan_order(width, height):
    A = build_design_matrix(width, height)
    assert A.shape == (width * height, 6)
    assert A.dtype == np.float64

    for y in range(height):
        for x in range(width):
            row = A[y * width + x]
            np.testing.assert_array_equal(row, [1, x, y, x * x, y * y, x * y])


def test_matrix_is_read_only_and_deterministic():
    A = build_design_matrix(5, 4)
    B = build_design_matrix(5, 4)
    np.testing.assert_array_equal(A, B)
    with pytest.raises(ValueError):
        A[0, 0] = 2.0


def test_large_coordinates_do_not_overflow():
    A = build_design_matrix(70000, 1)
    assert A[-1, 3] == 69999.0 ** 2


@pytest.mark.parametrize("width,height", [(0, 3), (3, 0), (-1, 4), (2.5, 3)])
def test_rejects_bad_dimensions(width, height):
    with pytest.raises(ValueError):
        build_design_matrix(width, height)


def test_poly_terms_matches_builder():
    xs = np.array([0, 1, 2, 3])
    ys = np.array([5, 5, 6, 6])
    T = poly_terms(xs, ys)
    np.testing.assert_array_equal(T[:, 5], xs * ys)
    np.testing.assert_array_equal(T[:, 4], ys * ys)
