import numpy as np
import pytest


def surface_samples(width, height, coeffs):
    """(H, W, 3) uint16 grid whose three channels all follow `coeffs` exactly."""
    c0, c1, c2, c3, c4, c5 = coeffs
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float64)
    f = c0 + c1 * xx + c2 * yy + c3 * xx * xx + c4 * yy * yy + c5 * xx * yy
    plane = np.rint(f).astype(np.uint16)
    return np.repeat(plane[..., None], 3, axis=2)


@pytest.fixture
def quadratic_image():
    # integer-valued at integer coordinates, well inside 0..65535
    coeffs = (20000.0, 30.0, -12.0, 2.0, 1.0, -1.0)
    return surface_samples(20, 14, coeffs), coeffs


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    # setup_logging() binds its handler to the current sys.stderr (replaced by
    # pytest's capture per test) and turns off propagation, which makes pytest
    # attach its capture handlers to this logger; undo both between tests.
    import logging

    logger = logging.getLogger("polyflat")
    saved = (list(logger.handlers), logger.propagate, logger.level)
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for handler in saved[0]:
        logger.addHandler(handler)
    logger.propagate = saved[1]
    logger.setLevel(saved[2])
