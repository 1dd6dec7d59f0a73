"""Binary encoding of heightfields for the persistent cache."""

from __future__ import annotations

import io
import zipfile

import numpy as np

from elevation.heightfield import Heightfield


class InvalidTileError(ValueError):
    """Cached payload cannot be decoded into a heightfield."""


def encode_heightfield(hf: Heightfield) -> bytes:
    buf = io.BytesIO()
    np.savez_compressed(
        buf,
        width=np.int32(hf.width),
        height=np.int32(hf.height),
        no_data=np.float32(hf.no_data_value),
        samples=np.ascontiguousarray(hf.samples, dtype=np.float32),
    )
    return buf.getvalue()


def decode_heightfield(data: bytes) -> Heightfield:
    """Inverse of :func:`encode_heightfield`.

    Raises:
        InvalidTileError: the payload is damaged or incomplete.
    """
    try:
        with np.load(io.BytesIO(data), allow_pickle=False) as archive:
            width = int(archive['width'])
            height = int(archive['height'])
            no_data = float(archive['no_data'])
            samples = np.array(archive['samples'], dtype=np.float32).reshape(-1)
    except (
        OSError, ValueError, KeyError, EOFError, TypeError, AttributeError,
        zipfile.BadZipFile,
    ) as e:
        msg = f'Corrupt heightfield payload: {e}'
        raise InvalidTileError(msg) from e
    return Heightfield(width=width, height=height, samples=samples, no_data_value=no_data)
