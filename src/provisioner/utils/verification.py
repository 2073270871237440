"""Firmware image checks run before any flash write.

This is a cheap early-reject gate. Full integrity is checked by the flash
transaction, which hashes the stream as it is written and validates it when
the transaction closes.
"""

import hashlib
import logging
import struct
from typing import Optional

from pydantic import BaseModel

from provisioner.errors import BadMagic, FirmwareTooSmall, InvalidArgument

IMAGE_MAGIC = 0xE9

# esp_image_header_t: magic, segment_count, spi_mode, spi_speed_size,
# entry_addr, wp_pin, spi_pin_drv[3], chip_id, min_chip_rev,
# min_chip_rev_full, max_chip_rev_full, reserved[4], hash_appended
_HEADER = struct.Struct("<BBBBIB3sHBHH4sB")
IMAGE_HEADER_SIZE = _HEADER.size  # 24

CHIP_NAMES = {
    0x0000: "esp32",
    0x0002: "esp32s2",
    0x0005: "esp32c3",
    0x0009: "esp32s3",
    0x000C: "esp32c2",
    0x000D: "esp32c6",
    0x0010: "esp32h2",
}


class ImageHeader(BaseModel):
    """Decoded fields of interest from an application image header."""

    segment_count: int
    entry_addr: int
    chip_id: int
    hash_appended: bool

    @property
    def chip_name(self) -> str:
        return CHIP_NAMES.get(self.chip_id, f"unknown(0x{self.chip_id:04x})")


def verify_firmware(image: bytes) -> None:
    """Reject images that are too short or lack the application magic byte.

    Args:
        image: Firmware bytes, or at least the first chunk of them

    Raises:
        InvalidArgument: If image is empty
        FirmwareTooSmall: If shorter than the image header
        BadMagic: If the magic byte is wrong
    """
    logger = logging.getLogger("provisioner.verification")

    if not image:
        raise InvalidArgument("empty firmware image")

    if len(image) < IMAGE_HEADER_SIZE:
        logger.error(f"Firmware too small: {len(image)} < {IMAGE_HEADER_SIZE} bytes")
        raise FirmwareTooSmall(f"{len(image)} bytes, header needs {IMAGE_HEADER_SIZE}")

    if image[0] != IMAGE_MAGIC:
        logger.error(f"Invalid magic number: 0x{image[0]:02x}")
        raise BadMagic(f"expected 0x{IMAGE_MAGIC:02x}, got 0x{image[0]:02x}")

    logger.info("Firmware header verified")


def parse_image_header(image: bytes) -> Optional[ImageHeader]:
    """Decode the header, or return None if ``image`` is not a valid image."""
    if len(image) < IMAGE_HEADER_SIZE or image[0] != IMAGE_MAGIC:
        return None
    fields = _HEADER.unpack_from(image)
    return ImageHeader(
        segment_count=fields[1],
        entry_addr=fields[4],
        chip_id=fields[7],
        hash_appended=bool(fields[12]),
    )


def compute_sha256(data: bytes, chunk_size: int = 8192) -> str:
    """SHA-256 hex digest of ``data``, hashed in chunks."""
    h = hashlib.sha256()
    view = memoryview(data)
    for start in range(0, len(view), chunk_size):
        h.update(view[start:start + chunk_size])
    return h.hexdigest()
