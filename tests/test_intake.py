"""Tests for upload validation and working raster preparation."""

from __future__ import annotations

import pytest

from backdrop_service.errors import InputValidationError
from backdrop_service.imaging import WorkingRaster, compute_working_size
from backdrop_service.intake import check_declared_upload, validate_upload

from tests.fakes import make_image_bytes


def test_accepts_png_and_reads_dimensions(settings) -> None:
    data = make_image_bytes(120, 80)

    source = validate_upload(data, "image/png", filename="cat.png", settings=settings)

    assert (source.width, source.height) == (120, 80)
    assert source.mime_type == "image/png"
    assert source.filename == "cat.png"
    assert source.size_bytes == len(data)


def test_mime_parameters_and_case_are_ignored(settings) -> None:
    source = validate_upload(make_image_bytes(fmt="JPEG"), "Image/JPEG; charset=binary", settings=settings)

    assert source.mime_type == "image/jpeg"


def test_rejects_unsupported_type(settings) -> None:
    with pytest.raises(InputValidationError) as exc_info:
        validate_upload(b"%PDF-1.7", "application/pdf", settings=settings)

    assert exc_info.value.status_code == 415


def test_rejects_upload_over_size_limit(settings) -> None:
    data = b"\x00" * (11 * 1024 * 1024)

    with pytest.raises(InputValidationError) as exc_info:
        validate_upload(data, "image/jpeg", settings=settings)

    assert exc_info.value.status_code == 413
    assert "10MB" in str(exc_info.value)


def test_declared_size_counts_even_if_buffer_is_small(settings) -> None:
    with pytest.raises(InputValidationError):
        validate_upload(make_image_bytes(), "image/png", size_bytes=11 * 1024 * 1024, settings=settings)


def test_rejects_empty_and_undecodable_data(settings) -> None:
    with pytest.raises(InputValidationError):
        validate_upload(b"", "image/png", settings=settings)
    with pytest.raises(InputValidationError) as exc_info:
        validate_upload(b"not an image at all", "image/png", settings=settings)

    assert exc_info.value.status_code == 400
    assert isinstance(exc_info.value, ValueError)


@pytest.mark.parametrize(
    "size, expected",
    [
        ((640, 480), (640, 480)),
        ((1600, 1200), (800, 600)),
        ((1200, 1600), (600, 800)),
        ((4000, 10), (800, 2)),
        ((10000, 1), (800, 1)),
    ],
)
def test_compute_working_size_preserves_aspect_ratio(size, expected) -> None:
    assert compute_working_size(*size, max_dimension=800) == expected


def test_working_raster_is_rgba_and_bounded(settings) -> None:
    source = validate_upload(make_image_bytes(1600, 1000, fmt="JPEG"), "image/jpeg", settings=settings)

    raster = WorkingRaster.from_source(source, settings.max_working_dimension)

    assert raster.size == (800, 500)
    assert raster.pixels.shape == (500, 800, 4)
    assert (raster.pixels[..., 3] == 255).all()


def test_declared_size_is_rejected_without_the_body(settings) -> None:
    with pytest.raises(InputValidationError) as exc_info:
        check_declared_upload("image/png", settings.max_upload_bytes + 1, settings)

    assert exc_info.value.status_code == 413
    assert check_declared_upload("IMAGE/WEBP", None, settings) == "image/webp"
