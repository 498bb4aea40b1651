import pytest

from rootenc import stages
from rootenc.model import ConfigSnapshot, Stage


def _snap(**overrides):
    base = dict(image="a.img", bootpart_label="ARMBIAN_BOOT", rootfs_name="rootfs", disk_passwd="abc")
    base.update(overrides)
    return ConfigSnapshot(**base)


def test_order_is_total_and_linear():
    assert [s.value for s in stages.ORDER] == [
        "card_partitioned",
        "bootpart_copied",
        "bootpart_label_created",
        "rootpart_copied",
        "target_configured",
    ]
    assert stages.predecessor(Stage.CARD_PARTITIONED) is None
    assert stages.predecessor(Stage.ROOTPART_COPIED) is Stage.BOOTPART_LABEL_CREATED
    assert stages.successors(Stage.BOOTPART_LABEL_CREATED) == (Stage.ROOTPART_COPIED, Stage.TARGET_CONFIGURED)
    assert stages.successors(Stage.TARGET_CONFIGURED) == ()


def test_prerequisites_include_label_dependency():
    assert stages.prerequisites(Stage.CARD_PARTITIONED) == frozenset()
    assert stages.prerequisites(Stage.BOOTPART_LABEL_CREATED) == frozenset({Stage.BOOTPART_COPIED})
    assert stages.prerequisites(Stage.TARGET_CONFIGURED) == frozenset({Stage.ROOTPART_COPIED})


@pytest.mark.parametrize(
    "field,stage",
    [
        ("image", Stage.CARD_PARTITIONED),
        ("bootpart_label", Stage.BOOTPART_LABEL_CREATED),
        ("rootfs_name", Stage.TARGET_CONFIGURED),
        ("disk_passwd", Stage.ROOTPART_COPIED),
        ("unlocking_userhost", Stage.TARGET_CONFIGURED),
        ("ip_address", Stage.TARGET_CONFIGURED),
        ("add_all_mods", Stage.TARGET_CONFIGURED),
        ("use_local_authorized_keys", Stage.TARGET_CONFIGURED),
    ],
)
def test_invalidation_table(field, stage):
    assert stages.invalidated_by(field) == frozenset({stage})


def test_unknown_field_rejected():
    with pytest.raises(KeyError):
        stages.invalidated_by("hostname")


def test_unlocking_host_only_counts_when_set():
    old = _snap(unlocking_userhost="me@box", ip_address="dhcp")
    assert not stages.field_changed("unlocking_userhost", old, _snap(unlocking_userhost="", ip_address="dhcp"))
    assert stages.field_changed("unlocking_userhost", old, _snap(unlocking_userhost="you@box", ip_address="dhcp"))
    assert not stages.field_changed("unlocking_userhost", old, old)


def test_key_source_only_counts_with_ip_enabled():
    old = _snap(ip_address="none", use_local_authorized_keys=False)
    new = _snap(ip_address="none", use_local_authorized_keys=True)
    assert not stages.field_changed("use_local_authorized_keys", old, new)
    old = _snap(ip_address="dhcp", use_local_authorized_keys=False)
    new = _snap(ip_address="dhcp", use_local_authorized_keys=True)
    assert stages.field_changed("use_local_authorized_keys", old, new)


def test_sort_stages_dedupes_and_orders():
    got = stages.sort_stages([Stage.TARGET_CONFIGURED, Stage.CARD_PARTITIONED, Stage.TARGET_CONFIGURED])
    assert got == [Stage.CARD_PARTITIONED, Stage.TARGET_CONFIGURED]
