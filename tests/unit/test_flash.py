"""Unit tests for the file-backed flash driver."""

import json
from unittest.mock import patch

import pytest

from provisioner.drivers.flash import OTADATA_FILE, FileFlashDriver
from provisioner.errors import IoFault


@pytest.fixture
def ota_1(partition_table):
    return partition_table.find_partition("ota_1")


@pytest.mark.unit
class TestFlashTransaction:
    def test_write_and_end(self, flash, ota_1, firmware_image):
        image = firmware_image(10_000)
        txn = flash.begin(ota_1)

        txn.write(image[:4096])
        txn.write(image[4096:])
        txn.end()

        assert txn.bytes_written == len(image)
        assert flash.read(ota_1) == image

    def test_write_past_partition_end(self, flash, partition_table):
        nvs = partition_table.find_partition("nvs")
        txn = flash.begin(nvs)

        with pytest.raises(IoFault):
            txn.write(b"\xe9" * (nvs.size + 1))
        txn.abort()

    def test_end_without_data(self, flash, ota_1):
        txn = flash.begin(ota_1)

        with pytest.raises(IoFault):
            txn.end()

        assert not flash.image_path(ota_1).exists()

    def test_end_rejects_bad_header(self, flash, ota_1):
        txn = flash.begin(ota_1)
        txn.write(b"\x00" * 512)

        with pytest.raises(IoFault) as exc_info:
            txn.end()

        assert "bad header" in str(exc_info.value)
        assert flash.read(ota_1) == b""

    def test_end_detects_corruption(self, flash, ota_1, firmware_image):
        txn = flash.begin(ota_1)
        txn.write(firmware_image(2048))
        txn._file.flush()
        with open(flash.image_path(ota_1), "r+b") as f:
            f.seek(100)
            f.write(b"\xff\xff")

        with pytest.raises(IoFault) as exc_info:
            txn.end()

        assert "checksum mismatch" in str(exc_info.value)

    def test_abort_discards_data(self, flash, ota_1, firmware_image):
        txn = flash.begin(ota_1)
        txn.write(firmware_image(1024))

        txn.abort()

        assert not flash.image_path(ota_1).exists()

    def test_begin_erases_previous_image(self, flash, ota_1, firmware_image):
        txn = flash.begin(ota_1)
        txn.write(firmware_image(1024))
        txn.end()

        txn = flash.begin(ota_1)

        assert flash.read(ota_1) == b""
        txn.abort()

    def test_begin_failure(self, flash, ota_1):
        with patch("builtins.open", side_effect=PermissionError("read-only")):
            with pytest.raises(IoFault):
                flash.begin(ota_1)

    def test_begin_on_boot_slot_clears_selection(self, flash, ota_1, firmware_image):
        flash.image_path(ota_1).write_bytes(firmware_image(1024))
        flash.set_boot_partition(ota_1)

        txn = flash.begin(ota_1)
        txn.abort()

        assert flash.get_boot_partition() is None
        record = json.loads((flash.data_dir / OTADATA_FILE).read_text())
        assert record == {"boot": None, "seq": 2}

    def test_begin_on_other_slot_keeps_selection(self, flash, partition_table, ota_1, firmware_image):
        ota_0 = partition_table.find_partition("ota_0")
        flash.image_path(ota_0).write_bytes(firmware_image(1024))
        flash.set_boot_partition(ota_0)

        flash.begin(ota_1).abort()

        assert flash.get_boot_partition() == "ota_0"


@pytest.mark.unit
class TestBootSelector:
    def test_no_record(self, flash):
        assert flash.get_boot_partition() is None

    def test_set_boot_partition(self, flash, ota_1, firmware_image):
        flash.image_path(ota_1).write_bytes(firmware_image(1024))

        flash.set_boot_partition(ota_1)

        assert flash.get_boot_partition() == "ota_1"
        record = json.loads((flash.data_dir / OTADATA_FILE).read_text())
        assert record == {"boot": "ota_1", "seq": 1}

    def test_sequence_increments(self, flash, partition_table, firmware_image):
        for name in ("ota_1", "ota_0", "ota_1"):
            partition = partition_table.find_partition(name)
            flash.image_path(partition).write_bytes(firmware_image(512))
            flash.set_boot_partition(partition)

        record = json.loads((flash.data_dir / OTADATA_FILE).read_text())
        assert record == {"boot": "ota_1", "seq": 3}

    def test_refuses_empty_slot(self, flash, ota_1):
        with pytest.raises(IoFault):
            flash.set_boot_partition(ota_1)
        assert flash.get_boot_partition() is None

    def test_refuses_data_partition(self, flash, partition_table):
        with pytest.raises(IoFault):
            flash.set_boot_partition(partition_table.find_partition("spiffs"))

    def test_failed_write_keeps_old_record(self, flash, partition_table, firmware_image):
        ota_0 = partition_table.find_partition("ota_0")
        ota_1 = partition_table.find_partition("ota_1")
        for p in (ota_0, ota_1):
            flash.image_path(p).write_bytes(firmware_image(512))
        flash.set_boot_partition(ota_0)

        with patch("provisioner.drivers.flash.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(IoFault):
                flash.set_boot_partition(ota_1)

        assert flash.get_boot_partition() == "ota_0"
        assert not (flash.data_dir / f"{OTADATA_FILE}.tmp").exists()

    def test_corrupt_record_reads_as_unset(self, flash):
        (flash.data_dir / OTADATA_FILE).write_text("{not json")
        assert flash.get_boot_partition() is None

    def test_data_dir_created(self, tmp_path):
        driver = FileFlashDriver(str(tmp_path / "a" / "b"))
        assert driver.data_dir.is_dir()


@pytest.mark.unit
class TestHasValidImage:
    def test_image_with_magic(self, flash, ota_1, firmware_image):
        flash.image_path(ota_1).write_bytes(firmware_image(512))
        assert flash.has_valid_image(ota_1) is True

    def test_empty_slot(self, flash, ota_1):
        assert flash.has_valid_image(ota_1) is False

    def test_erased_slot(self, flash, ota_1):
        flash.image_path(ota_1).write_bytes(b"")
        assert flash.has_valid_image(ota_1) is False

    def test_wrong_magic(self, flash, ota_1):
        flash.image_path(ota_1).write_bytes(b"\xff" * 64)
        assert flash.has_valid_image(ota_1) is False

    def test_data_partition(self, flash, partition_table, firmware_image):
        spiffs = partition_table.find_partition("spiffs")
        flash.image_path(spiffs).write_bytes(firmware_image(512))
        assert flash.has_valid_image(spiffs) is False


@pytest.mark.unit
def test_read_window(flash, ota_1, firmware_image):
    image = firmware_image(1024)
    flash.image_path(ota_1).write_bytes(image)

    assert flash.read(ota_1, 0, 1) == b"\xe9"
    assert flash.read(ota_1, 100, 10) == image[100:110]
