# src/polyflat/image_io.py
"""
Image loading and saving.

Every loaded image becomes a PixelGrid of 16-bit RGB samples (0..65535),
whatever the file depth:
- 8-bit samples are widened by 257, so 0xAB becomes 0xABAB
- 16-bit samples pass through unchanged
- grayscale is expanded to three equal channels; alpha is dropped
- TIFF min-is-white, palette and CMYK samples are converted to RGB first

Only "jpeg" and "tiff" can be written back.
"""
from __future__ import annotations

import io
import logging
import os
import tempfile
from dataclasses import dataclass

import numpy as np
import tifffile
from PIL import Image

from .config import Config
from .errors import DecodeError, InputReadError, OutputWriteError, UnknownFormat

log = logging.getLogger(__name__)

_TIFF_MAGIC = (b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+")
_JPEG_MAGIC = b"\xff\xd8\xff"

_FORMAT_ALIASES = {
    "jpg": "jpeg",
    "tif": "tiff",
}


@dataclass(frozen=True)
class PixelGrid:
    """Read-only (H, W, 3) uint16 samples plus the format tag they came from."""

    samples: np.ndarray
    format: str

    def __post_init__(self):
        arr = np.asarray(self.samples)
        if arr.ndim != 3 or arr.shape[2] != 3:
            raise ValueError(f"PixelGrid needs (H, W, 3) samples, got shape {arr.shape}")
        if arr.shape[0] < 1 or arr.shape[1] < 1:
            raise ValueError(f"PixelGrid cannot be empty, got shape {arr.shape}")
        if arr.dtype != np.uint16:
            if not np.issubdtype(arr.dtype, np.integer):
                raise ValueError(f"PixelGrid samples must be integers, got {arr.dtype}")
            if arr.min() < 0 or arr.max() > Config.SAMPLE_MAX:
                raise ValueError("PixelGrid samples must lie in 0..65535")
        arr = np.array(arr, dtype=np.uint16, copy=True)
        arr.setflags(write=False)
        object.__setattr__(self, "samples", arr)
        object.__setattr__(self, "format", normalize_format(self.format))

    @property
    def width(self) -> int:
        return int(self.samples.shape[1])

    @property
    def height(self) -> int:
        return int(self.samples.shape[0])


def normalize_format(fmt: str) -> str:
    """Normalize a format tag or extension (with or without leading dot)."""
    f = (fmt or "").lower().lstrip(".")
    return _FORMAT_ALIASES.get(f, f)


def sniff_format(head: bytes) -> str | None:
    """Format tag from the first bytes of a file, or None if not TIFF/JPEG."""
    if head[:4] in _TIFF_MAGIC:
        return "tiff"
    if head[:3] == _JPEG_MAGIC:
        return "jpeg"
    return None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _widen16(data: np.ndarray) -> np.ndarray:
    a = np.asarray(data)
    if a.dtype == np.uint8:
        return a.astype(np.uint16) * Config.WIDEN_8_TO_16
    if a.dtype == np.uint16:
        return a
    raise DecodeError(f"Unsupported sample type: {a.dtype}")


def _to_rgb16(data: np.ndarray) -> np.ndarray:
    a = _widen16(data)

    if a.ndim == 2:
        return np.repeat(a[..., None], 3, axis=2)
    if a.ndim == 3:
        if a.shape[2] in (1, 2):  # gray, gray + alpha
            return np.repeat(a[..., :1], 3, axis=2)
        if a.shape[2] >= 3:
            return a[..., :3]
    raise DecodeError(f"Unsupported image dimensions: {a.shape}")


def _cmyk_to_rgb16(data: np.ndarray) -> np.ndarray:
    if data.ndim != 3 or data.shape[2] < 4:
        raise DecodeError(f"CMYK image needs 4 samples per pixel, got shape {data.shape}")
    cmyk = _widen16(data[..., :4]).astype(np.uint32)
    top = np.uint32(Config.SAMPLE_MAX)
    white = top - cmyk[..., 3:4]
    return ((top - cmyk[..., :3]) * white // top).astype(np.uint16)


def _tiff_to_rgb16(data: np.ndarray, photometric, colormap=None, compression=None) -> np.ndarray:
    """
    Turn decoded TIFF samples into (H, W, 3) uint16 RGB according to the
    photometric interpretation.
    """
    PHOTOMETRIC = tifffile.PHOTOMETRIC

    if data.dtype == np.bool_:  # bilevel
        data = np.where(data, 255, 0).astype(np.uint8)

    if photometric in (PHOTOMETRIC.MINISBLACK, PHOTOMETRIC.RGB):
        return _to_rgb16(data)

    if photometric == PHOTOMETRIC.MINISWHITE:
        if data.dtype not in (np.uint8, np.uint16):
            raise DecodeError(f"Unsupported sample type: {data.dtype}")
        return _to_rgb16(np.iinfo(data.dtype).max - data)

    if photometric == PHOTOMETRIC.PALETTE:
        if colormap is None or data.ndim != 2:
            raise DecodeError("Palette TIFF without a usable colour map")
        colormap = np.asarray(colormap)
        if colormap.dtype != np.uint16 or colormap.ndim != 2 or colormap.shape[0] != 3:
            raise DecodeError(f"Unsupported TIFF colour map: {colormap.dtype} {colormap.shape}")
        if int(data.max()) >= colormap.shape[1]:
            raise DecodeError("Palette index outside the colour map")
        return tifffile.tifffile.apply_colormap(data, colormap, contig=True).astype(np.uint16)

    if photometric == PHOTOMETRIC.SEPARATED:
        return _cmyk_to_rgb16(data)

    # JPEG-in-TIFF is colour converted to RGB by the decoder
    if photometric == PHOTOMETRIC.YCBCR and compression == tifffile.COMPRESSION.JPEG:
        return _to_rgb16(data)

    name = getattr(photometric, "name", photometric)
    raise DecodeError(f"Unsupported TIFF photometric interpretation: {name}")


def _read_tiff(path: str) -> np.ndarray:
    with tifffile.TiffFile(path) as tif:
        page = tif.pages[0]
        data = page.asarray()
        h, w, spp = page.imagelength, page.imagewidth, page.samplesperpixel
        photometric = page.photometric
        colormap = page.colormap if photometric == tifffile.PHOTOMETRIC.PALETTE else None
        compression = page.compression
        planar = page.planarconfig

    # asarray() squeezes length-1 axes; restore (H, W[, S]) from the tags
    if data.size != h * w * spp:
        raise DecodeError(f"Unsupported TIFF layout: {data.shape} for {w}x{h}x{spp}")
    if spp == 1:
        data = data.reshape(h, w)
    elif planar == tifffile.PLANARCONFIG.SEPARATE:
        data = np.moveaxis(data.reshape(spp, h, w), 0, -1)
    else:
        data = data.reshape(h, w, spp)
    return _tiff_to_rgb16(data, photometric, colormap, compression)


def _read_pillow(path: str) -> tuple[np.ndarray, str]:
    with Image.open(path) as img:
        fmt = (img.format or "").lower()
        if img.mode.startswith("I;16"):
            data = np.array(img).astype(np.uint16)
        elif img.mode == "I":
            data = np.clip(np.array(img), 0, Config.SAMPLE_MAX).astype(np.uint16)
        elif img.mode in ("L", "RGB"):
            data = np.array(img)
        elif img.mode == "F":
            raise DecodeError("Floating point images are not supported")
        else:
            data = np.array(img.convert("RGB"))
    return data, fmt


def load_image(path) -> PixelGrid:
    """
    Decode an image file into a PixelGrid.

    The format is sniffed from the file content: TIFF is read with
    tifffile, everything else with Pillow and tagged with Pillow's format
    name. Raises InputReadError if the file cannot be read and DecodeError
    if it cannot be decoded.
    """
    path = os.fspath(path)
    try:
        with open(path, "rb") as f:
            head = f.read(16)
    except OSError as e:
        raise InputReadError(f"cannot open input file {path}: {e.strerror or e}") from e

    fmt = sniff_format(head)
    try:
        if fmt == "tiff":
            data = _read_tiff(path)
        else:
            data, pil_fmt = _read_pillow(path)
            fmt = fmt or pil_fmt
        if not fmt:
            raise DecodeError(f"cannot decode image {path}: unknown container")
        grid = PixelGrid(_to_rgb16(data), fmt)
    except DecodeError:
        raise
    except Exception as e:
        raise DecodeError(f"cannot decode image {path}: {e}") from e

    log.info("Loaded %s image %s: %dx%d, source dtype %s", fmt, path, grid.width, grid.height, data.dtype)
    return grid


# ---------------------------------------------------------------------------
# Saving
# ---------------------------------------------------------------------------

def _encode_jpeg(rgba16: np.ndarray, quality: int | None) -> bytes:
    rgb8 = (rgba16[..., :3] >> 8).astype(np.uint8)
    buf = io.BytesIO()
    kwargs = {} if quality is None else {"quality": int(quality)}
    Image.fromarray(rgb8).save(buf, format="JPEG", **kwargs)
    return buf.getvalue()


def _encode_tiff(rgba16: np.ndarray) -> bytes:
    buf = io.BytesIO()
    tifffile.imwrite(
        buf,
        rgba16,
        photometric="rgb",
        planarconfig="contig",
        extrasamples=("unassalpha",),
        compression=Config.TIFF_COMPRESSION,
        predictor=Config.TIFF_PREDICTOR,
    )
    return buf.getvalue()


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def _write_replace(path: str, payload: bytes) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".polyflat-", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.chmod(tmp, 0o666 & ~_current_umask())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def save_image(output: np.ndarray, fmt: str, path, jpeg_quality: int | None = Config.JPEG_QUALITY) -> str:
    """
    Encode an (H, W, 4) uint16 output grid to `path`.

    - "jpeg": 8-bit RGB, encoder default quality unless given
    - "tiff": 16-bit RGBA, deflate compression, horizontal predictor

    Any other tag raises UnknownFormat before the destination is touched.
    The file is written next to the destination and moved into place, so
    a failed write leaves any existing file as it was.
    """
    fmt = normalize_format(fmt)
    if fmt not in Config.WRITABLE_FORMATS:
        raise UnknownFormat(fmt)

    arr = np.asarray(output)
    if arr.ndim != 3 or arr.shape[2] != 4 or arr.dtype != np.uint16:
        raise ValueError(f"Output grid must be (H, W, 4) uint16, got {arr.shape} {arr.dtype}")

    path = os.fspath(path)
    try:
        payload = _encode_jpeg(arr, jpeg_quality) if fmt == "jpeg" else _encode_tiff(arr)
    except (OSError, ValueError) as e:
        raise OutputWriteError(f"cannot encode {fmt.upper()} image for {path}: {e}") from e

    try:
        _write_replace(path, payload)
    except OSError as e:
        raise OutputWriteError(f"cannot write {fmt.upper()} image to file {path}: {e.strerror or e}") from e

    log.info("Saved %s image to %s (%d bytes)", fmt, path, len(payload))
    return path
