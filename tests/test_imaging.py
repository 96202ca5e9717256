from io import BytesIO

import numpy as np
from PIL import Image
import pytest

from conftest import decode_rgba, encode, random_rgb
from rmbg_service.errors import DecodeError
from rmbg_service.imaging import ImageBuffer, decode_image, encode_png, image_size


@pytest.mark.parametrize("fmt", ["PNG", "JPEG", "WEBP"])
def test_decode_supported_formats(tmp_path, fmt):
    path = tmp_path / f"input.{fmt.lower()}"
    path.write_bytes(encode(random_rgb(20, 10), fmt=fmt))

    buffer = decode_image(path)

    assert (buffer.width, buffer.height) == (20, 10)
    assert buffer.channels == 3


def test_decode_keeps_alpha():
    rgba = np.zeros((4, 5, 4), dtype=np.uint8)
    rgba[..., 3] = 77
    buffer = decode_image(encode(rgba))
    assert buffer.has_alpha
    assert np.all(buffer.pixels[..., 3] == 77)


def test_decode_grayscale_becomes_rgb():
    gray = np.full((6, 6), 90, dtype=np.uint8)
    buf = BytesIO()
    Image.fromarray(gray).save(buf, format="PNG")

    buffer = decode_image(buf.getvalue())

    assert buffer.channels == 3
    assert np.all(buffer.pixels == 90)


def test_decode_corrupt_bytes():
    with pytest.raises(DecodeError):
        decode_image(b"definitely not an image")


def test_decode_missing_file(tmp_path):
    with pytest.raises(DecodeError) as excinfo:
        decode_image(tmp_path / "nope.png")
    assert "nope.png" in excinfo.value.source


def test_decode_truncated_png(tmp_path):
    data = encode(random_rgb(64, 64))
    path = tmp_path / "cut.png"
    path.write_bytes(data[: len(data) // 2])
    with pytest.raises(DecodeError):
        decode_image(path)


def test_encode_png_preserves_pixels():
    rgba = np.dstack((random_rgb(8, 8), np.full((8, 8), 100, dtype=np.uint8)))
    png = encode_png(ImageBuffer(rgba))

    assert png.startswith(b"\x89PNG")
    assert image_size(png) == (8, 8)
    assert np.array_equal(decode_rgba(png), rgba)


def test_buffer_rejects_bad_shapes():
    with pytest.raises(ValueError):
        ImageBuffer(np.zeros((4, 4), dtype=np.uint8))
    with pytest.raises(ValueError):
        ImageBuffer(np.zeros((4, 4, 3), dtype=np.float32))


def test_decode_16bit_grayscale_is_scaled():
    gray = np.full((5, 7), 128 * 257, dtype=np.uint16)
    gray[0, 0] = 65535
    buf = BytesIO()
    Image.fromarray(gray).save(buf, format="PNG")

    buffer = decode_image(buf.getvalue())

    assert buffer.channels == 3
    assert (buffer.width, buffer.height) == (7, 5)
    assert np.all(buffer.pixels[1:, :] == 128)
    assert np.all(buffer.pixels[0, 0] == 255)
