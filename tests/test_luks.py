from types import SimpleNamespace

from rootenc import luks


def test_format_and_open_luks(monkeypatch, tmp_path):
    calls = []

    def fake_run(cmd, check=False, input_text=None, timeout=None):
        calls.append((cmd, input_text))
        if cmd[:2] == ["cryptsetup", "isLuks"]:
            return SimpleNamespace(rc=1)
        return SimpleNamespace(rc=0, out="")

    monkeypatch.setattr(luks, "run", fake_run)
    monkeypatch.setattr(luks, "udev_settle", lambda: calls.append((["udev"], None)))
    monkeypatch.setattr(luks, "mapper_path", lambda name: str(tmp_path / name))

    assert luks.format_luks("/dev/sdz2", "pw") is True
    assert luks.open_luks("/dev/sdz2", "rootfs", "pw") == str(tmp_path / "rootfs")

    assert (["cryptsetup", "-q", "luksFormat", "/dev/sdz2", "-"], "pw") in calls
    assert (["cryptsetup", "luksOpen", "/dev/sdz2", "rootfs"], "pw\n") in calls
    assert not any("pw" in " ".join(cmd) for cmd, _ in calls)


def test_format_keeps_header_only_when_reusing(monkeypatch):
    calls = []
    monkeypatch.setattr(luks, "run", lambda cmd, **kw: (calls.append(cmd), SimpleNamespace(rc=0))[1])
    monkeypatch.setattr(luks, "udev_settle", lambda: None)
    assert luks.format_luks("/dev/sdz2", "pw", reuse=True) is False
    assert calls == [["cryptsetup", "isLuks", "/dev/sdz2"]]
    assert luks.format_luks("/dev/sdz2", "pw") is True


def test_open_skips_existing_mapper(monkeypatch, tmp_path):
    calls = []
    (tmp_path / "rootfs").touch()
    monkeypatch.setattr(luks, "run", lambda cmd, **kw: calls.append(cmd))
    monkeypatch.setattr(luks, "mapper_path", lambda name: str(tmp_path / name))
    assert luks.open_luks("/dev/sdz2", "rootfs", "pw") == str(tmp_path / "rootfs")
    assert calls == []


def test_device_maps_and_close(monkeypatch):
    listing = "sda\nsda1 /\ndm-0 /mnt/build/target\ndm-1\ndm-2 /srv\n"

    def fake_run(cmd, **kwargs):
        if cmd[0] == "lsblk":
            return SimpleNamespace(rc=0, out=listing)
        if cmd[:2] == ["cryptsetup", "status"]:
            return SimpleNamespace(rc=0 if cmd[2] != "/dev/dm-2" else 4)
        return SimpleNamespace(rc=0)

    monkeypatch.setattr(luks, "run", fake_run)
    assert luks.device_maps("unmounted") == ["/dev/dm-1"]
    assert luks.device_maps("mounted_on_target", "/mnt/build/target") == ["/dev/dm-0"]
    assert luks.close_device_maps(["/dev/dm-0", "/dev/dm-2"]) == ["/dev/dm-0"]
