from types import SimpleNamespace

import pytest

from rootenc import devices
from rootenc.errors import DeviceError, UserAbort


def _fake_lsblk(monkeypatch, table):
    def fake(dev, column, nodeps=True, extra=None):
        return table.get((dev, column), "")

    monkeypatch.setattr(devices, "_lsblk", fake)


def test_partition_names():
    assert devices.partition_names("mmcblk1") == ("mmcblk1p1", "mmcblk1p2")
    assert devices.partition_names("sdb") == ("sdb1", "sdb2")


def test_normalize():
    assert devices.normalize("sdb") == "/dev/sdb"
    assert devices.normalize("/dev/sdb") == "/dev/sdb"
    with pytest.raises(DeviceError):
        devices.normalize("")


def test_check_sdcard_accepts_card(monkeypatch):
    monkeypatch.setattr(devices, "os", SimpleNamespace(path=SimpleNamespace(exists=lambda p: p == "/dev/sdz")))
    monkeypatch.setattr(devices, "sdcard_doubts", lambda dev: [])
    _fake_lsblk(monkeypatch, {("/dev/sdz", "TYPE"): "disk", ("/dev/sdz", "VENDOR,MODEL,SIZE"): "Generic  SD   29.7G"})
    dm = devices.check_sdcard("sdz", lambda prompt, default: pytest.fail("should not ask"))
    assert (dm.sdcard, dm.boot, dm.root) == ("sdz", "sdz1", "sdz2")
    assert dm.info == "Generic SD 29.7G"


def test_check_sdcard_rejects_partition(monkeypatch):
    monkeypatch.setattr(devices, "os", SimpleNamespace(path=SimpleNamespace(exists=lambda p: True)))
    _fake_lsblk(monkeypatch, {("/dev/sdz1", "TYPE"): "part"})
    with pytest.raises(DeviceError, match="is a partition"):
        devices.check_sdcard("/dev/sdz1", lambda prompt, default: None)


def test_check_sdcard_missing(monkeypatch):
    monkeypatch.setattr(devices, "os", SimpleNamespace(path=SimpleNamespace(exists=lambda p: False)))
    with pytest.raises(DeviceError, match="does not exist"):
        devices.check_sdcard("sdq", lambda prompt, default: None)


def test_doubts_require_confirmation(monkeypatch):
    monkeypatch.setattr(devices, "os", SimpleNamespace(path=SimpleNamespace(exists=lambda p: True)))
    monkeypatch.setattr(devices, "sdcard_doubts", lambda dev: ["Device is non-removable"])
    _fake_lsblk(monkeypatch, {("/dev/sda", "TYPE"): "disk"})
    asked = []

    def decline(prompt, default_yes):
        asked.append(default_yes)
        raise UserAbort("no")

    with pytest.raises(UserAbort):
        devices.check_sdcard("sda", decline)
    assert asked == [False]


def test_sdcard_doubts(monkeypatch):
    _fake_lsblk(
        monkeypatch,
        {("/dev/sda", "RM"): "0", ("/dev/sda", "SIZE"): str(devices.SD_MAX_BYTES + 1)},
    )
    monkeypatch.setattr(devices, "_pttype", lambda dev: "gpt")
    assert devices.sdcard_doubts("/dev/sda") == [
        "Device is non-removable",
        "Partition type is GPT",
        "Size is > 128GiB",
    ]


def test_assert_not_mounted(monkeypatch):
    _fake_lsblk(monkeypatch, {("/dev/sdz", "MOUNTPOINT"): "/media/card"})
    with pytest.raises(DeviceError):
        devices.assert_not_mounted(devices.DeviceMap("sdz", "sdz1", "sdz2"))


def test_has_partition_and_pttype(monkeypatch):
    monkeypatch.setattr(
        devices, "run", lambda cmd, **kw: SimpleNamespace(rc=0, out="sdz\nsdz1\nsdz2\n" if cmd[0] == "lsblk" else
                                                          "ID_PART_TABLE_TYPE=dos\n")
    )
    dm = devices.DeviceMap("sdz", "sdz1", "sdz2")
    assert devices.has_partition(dm, "sdz2")
    assert not devices.has_partition(dm, "sdz3")
    assert devices._pttype("/dev/sdz") == "dos"
