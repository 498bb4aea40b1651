"""Stage runner plus the host-side and target-side provisioning flows."""
from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional

from . import console, distro, initramfs, keys, luks, mounts, partitioning, prompt, stages, target_config
from .devices import fstype, has_partition, uuid_of
from .errors import ConfigError, RelayError, StageError
from .executil import info, partprobe, run, trace
from .model import BuildDirs, ConfigSnapshot, DeviceMap, Flags, IpMode, Stage, ip_mode_of
from .reconcile import pending_stages, reconcile
from .relay import BoundaryRelay, relay_env
from .root_sync import ROOT_EXCLUDES, copy_tree, sync_disks
from .state import StateStore, read_snapshot, write_snapshot


def boot_formatted(dm: DeviceMap, verbose: bool = False) -> bool:
    partprobe(verbose)
    return has_partition(dm, dm.boot) and fstype(dm.boot_path) == "ext4"


def card_status(dm: DeviceMap, dirs: BuildDirs) -> dict[str, bool]:
    """Read-only view of the markers on the card."""

    if not boot_formatted(dm):
        return {s.value: False for s in stages.ORDER}
    with mounts.boot_partition_mounted(dm, dirs.boot) as root:
        store = StateStore(root)
        return {s.value: store.is_marked(s) for s in stages.ORDER}


def preclean(image: str, dirs: BuildDirs) -> None:
    """Release anything a previous interrupted run left behind."""

    mounts.close_loopmount(image, dirs.src)
    luks.close_device_maps(luks.device_maps("unmounted"))
    on_target = luks.device_maps("mounted_on_target", dirs.target)
    mounts.umount_target(dirs)
    luks.close_device_maps(on_target)
    mounts.remove_build_dirs(dirs)


@dataclass
class RunResult:
    ok: bool
    failed_stage: Optional[Stage] = None
    error: Optional[BaseException] = None
    completed: list[Stage] = field(default_factory=list)


def run_stages(
    pending: Iterable[Stage],
    executors: Mapping[Stage, Callable[[], None]],
    on_complete: Callable[[Stage], None],
) -> RunResult:
    """Run ``pending`` in stage order, stopping at the first failure.

    ``on_complete`` records a stage and is only reached after its executor
    returned normally.  Interrupts propagate untouched.
    """

    completed: list[Stage] = []
    for stage in stages.sort_stages(pending):
        executor = executors.get(stage)
        try:
            if executor is None:
                raise StageError(stage, "no executor registered")
            console.step(f"Running stage '{stage}'")
            info("stage.start", stage=stage.value)
            executor()
            on_complete(stage)
        except Exception as exc:  # noqa: BLE001 - reported through RunResult
            info("stage.failed", stage=stage.value, error=str(exc))
            return RunResult(False, stage, exc, completed)
        info("stage.done", stage=stage.value)
        completed.append(stage)
    return RunResult(True, completed=completed)


class HostProvisioner:
    """Drive the stages for one card from the host."""

    def __init__(
        self,
        dm: DeviceMap,
        snapshot: ConfigSnapshot,
        flags: Flags,
        dirs: BuildDirs,
        host: distro.SystemInfo,
        start_sector: int = 0,
        reader: prompt.Reader = input,
    ):
        self.dm = dm
        self.snapshot = snapshot
        self.flags = flags
        self.dirs = dirs
        self.host = host
        self.start_sector = start_sector
        self.reader = reader
        self.reconciled = False

    # state

    def boot_formatted(self) -> bool:
        return boot_formatted(self.dm, self.flags.verbose)

    def check_install_state(self) -> list[Stage]:
        """Reconcile the card's markers with the current snapshot."""

        if not self.boot_formatted():
            self.reconciled = True
            info("state.fresh_card", device=self.dm.sdcard_path)
            return list(stages.ORDER)
        with mounts.boot_partition_mounted(self.dm, self.dirs.boot) as root:
            store = StateStore(root)
            previous = read_snapshot(root)
            pending = reconcile(
                previous,
                self.snapshot,
                store,
                force_rebuild=self.flags.force_rebuild,
                force_reconfigure=self.flags.force_reconfigure,
            )
        self.reconciled = True
        return pending

    def on_complete(self, stage: Stage) -> None:
        if stage in stages.TARGET_SIDE:
            boot_root = os.path.join(self.dirs.target, "boot")
            if not StateStore(boot_root).is_marked(stage):
                raise RelayError(f"target side did not record '{stage}'")
            write_snapshot(boot_root, self.snapshot)
            return
        with mounts.boot_partition_mounted(self.dm, self.dirs.boot) as root:
            StateStore(root).mark(stage)
            write_snapshot(root, self.snapshot)

    def executors(self) -> dict[Stage, Callable[[], None]]:
        return {
            Stage.CARD_PARTITIONED: self.partition_card,
            Stage.BOOTPART_COPIED: self.copy_boot,
            Stage.BOOTPART_LABEL_CREATED: self.label_boot,
            Stage.ROOTPART_COPIED: self.copy_root,
            Stage.TARGET_CONFIGURED: self.configure_target,
        }

    def provision(self) -> RunResult:
        pending = self.check_install_state()
        if self.flags.partition_only:
            pending = [s for s in pending if s not in stages.TARGET_SIDE]
        if not pending:
            console.ok("All stages already complete, nothing to do")
        return run_stages(pending, self.executors(), self.on_complete)

    # stages

    def partition_card(self) -> None:
        partitioning.guard_not_live_root(self.dm)
        prompt.confirm(
            f"All data on device {self.dm.sdcard_path} will be destroyed!!!\nAre you sure you want to continue?",
            False,
            assume_yes=self.flags.assume_yes,
            reader=self.reader,
        )
        if self.flags.erase:
            partitioning.erase_head(self.dm, self.start_sector, verbose=self.flags.verbose)
        else:
            partitioning.create_partition_label(self.dm, self.flags.verbose)
        partitioning.copy_boot_loader(self.snapshot.image, self.dm, self.start_sector, self.flags.verbose)
        partitioning.partition_card(self.dm, self.start_sector, verbose=self.flags.verbose)
        partitioning.ensure_ext4(self.dm.boot_path, self.flags.reuse_fs)
        partprobe(self.flags.verbose)

    def copy_boot(self) -> None:
        if self.flags.partition_only:
            return
        with mounts.boot_partition_mounted(self.dm, self.dirs.boot) as root:
            console.info(f"Copying files to boot partition {self.dm.boot_path}")
            copy_tree(os.path.join(self.dirs.src, "boot"), root, verbose=self.flags.verbose)
            link = os.path.join(root, "boot")
            if not os.path.lexists(link):
                os.symlink(".", link)

    def label_boot(self) -> None:
        partitioning.set_label(self.dm.boot_path, self.snapshot.bootpart_label)

    def copy_root(self) -> None:
        name = self.snapshot.rootfs_name
        console.info(f"Formatting root partition {self.dm.root_path} as LUKS")
        luks.format_luks(self.dm.root_path, self.snapshot.disk_passwd, reuse=self.flags.reuse_fs)
        mapper = luks.open_luks(self.dm.root_path, name, self.snapshot.disk_passwd)
        try:
            partitioning.ensure_ext4(mapper, self.flags.reuse_fs)
            if not self.flags.partition_only:
                mounts.mount(mapper, self.dirs.target)
                try:
                    console.info(f"Copying system to encrypted root partition {self.dm.root_path}")
                    copy_tree(self.dirs.src, self.dirs.target, ROOT_EXCLUDES, verbose=self.flags.verbose)
                    sync_disks()
                    os.makedirs(os.path.join(self.dirs.target, "boot"), exist_ok=True)
                    with open(os.path.join(self.dirs.target, "root", ".no_rootfs_resize"), "w"):
                        pass
                finally:
                    mounts.umount(self.dirs.target)
        finally:
            luks.close_luks(name)
        partprobe(self.flags.verbose)

    def configure_target(self) -> None:
        snap, target = self.snapshot, self.dirs.target
        mounts.mount_target(self.dm, snap.rootfs_name, snap.disk_passwd, target)
        tinfo = distro.target_info(target)
        for line in distro.describe(self.host, tinfo):
            console.info(line)

        target_config.copy_etc_files(target)
        if distro.distros_match(self.host, tinfo):
            target_config.copy_distro_files(target)
        else:
            console.warn("Warning: host and target distros do not match")

        console.display_file(f"{target}/boot/boot.cmd", target_config.edit_boot_cmd(target))
        console.display_file(
            f"{target}/etc/initramfs-tools/initramfs.conf",
            target_config.edit_initramfs_conf(target, snap.ip_address, snap.ip_mode),
        )

        modules: list[str] = []
        if snap.add_all_mods:
            if distro.kernels_match(self.host, tinfo) and distro.distros_match(self.host, tinfo):
                modules = target_config.loaded_modules()
            else:
                console.warn("Warning: host and target kernel/distro differ, not copying host module list")
        target_config.write_initramfs_modules(target, modules)

        if snap.ip_mode is not IpMode.NONE:
            target_config.copy_authorized_keys(target, keys.KEYFILE)
        console.display_file(
            f"{target}/etc/crypttab",
            target_config.write_crypttab(target, snap.rootfs_name, uuid_of(self.dm.root_path)),
        )
        console.display_file(
            f"{target}/etc/fstab",
            target_config.write_fstab(target, snap.rootfs_name, uuid_of(self.dm.boot_path)),
        )
        dropbear = target_config.edit_dropbear_cfg(target, snap.ip_mode)
        if dropbear is not None:
            console.display_file(f"{target}/{target_config.DROPBEAR_DIR}/config", dropbear)
        console.display_file(
            f"{target}/boot/armbianEnv.txt", target_config.edit_armbian_env(target, snap.rootfs_name)
        )
        if self.flags.pause:
            prompt.pause(self.reader)

        env = relay_env(snap, self.flags, tinfo.distro)
        rc = BoundaryRelay(target).enter(env, self.flags.orig_opts)
        run(["cp", "-a", "/etc/resolv.conf", os.path.join(target, "etc")], check=False)
        if rc != 0:
            StateStore(os.path.join(target, "boot")).unmark(Stage.TARGET_CONFIGURED)
            raise RelayError(f"target side exited with status {rc}", returncode=rc)

    # cleanup

    def _persist_snapshot(self) -> None:
        if self.reconciled and self.boot_formatted():
            with mounts.boot_partition_mounted(self.dm, self.dirs.boot) as root:
                write_snapshot(root, self.snapshot)

    def cleanup(self) -> list[str]:
        """Undo mounts and mappings, persisting the snapshot if a card was reconciled.

        Every step runs even if an earlier one failed.  Returns the names of
        the steps that failed.
        """

        maps: list[str] = []
        steps = (
            ("loopmount", lambda: mounts.close_loopmount(self.snapshot.image, self.dirs.src)),
            ("find_maps", lambda: maps.extend(luks.device_maps("mounted_on_target", self.dirs.target))),
            ("umount_target", lambda: mounts.umount_target(self.dirs)),
            ("snapshot", self._persist_snapshot),
            ("close_maps", lambda: luks.close_device_maps(maps)),
            ("shred_keys", lambda: keys.shred_fetched_keys(self.snapshot.use_local_authorized_keys)),
            ("build_dirs", lambda: mounts.remove_build_dirs(self.dirs)),
        )
        failed: list[str] = []
        for name, step in steps:
            try:
                step()
            except Exception as exc:  # noqa: BLE001 - logged, remaining steps still run
                failed.append(name)
                console.warn(f"Cleanup step '{name}' failed: {describe_error(exc)}")
                trace("engine.cleanup_failed", step=name, error=str(exc))
        trace("engine.cleanup", device=self.dm.sdcard_path, failed=failed)
        return failed


def run_in_target(environ: Mapping[str, str], boot_root: str = "/boot") -> RunResult:
    """Finish configuration from inside the chroot and mark it on /boot."""

    rootfs_name = environ.get("ROOTFS_NAME", "")
    ip_address = environ.get("IP_ADDRESS", "")
    if not rootfs_name or not ip_address:
        raise ConfigError("ROOTFS_NAME and IP_ADDRESS must be passed to the target")
    target_distro = environ.get("TARGET_DISTRO", "")
    ip_mode = ip_mode_of(ip_address)
    testing = bool(environ.get("ROOTENC_TESTING"))
    store = StateStore(boot_root)

    def configure() -> None:
        initramfs.make_boot_script()
        initramfs.enable_cryptsetup_hook(target_distro)
        stats = initramfs.install_target_packages(
            target_distro,
            ip_mode,
            upgrade=bool(environ.get("APT_UPGRADE")),
            ignore_errors=bool(environ.get("ROOTENC_IGNORE_APT_ERRORS")),
        )
        if not stats["initramfs_updated"] and not testing:
            initramfs.update(boot_root)
        initramfs.check(ip_mode, boot_root)

    pending = [s for s in pending_stages(store) if s in stages.TARGET_SIDE]
    return run_stages(pending, {Stage.TARGET_CONFIGURED: configure}, store.mark)


def describe_error(exc: Optional[BaseException]) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        cmd = " ".join(map(str, exc.cmd)) if isinstance(exc.cmd, (list, tuple)) else str(exc.cmd)
        return f"command '{cmd}' exited with status {exc.returncode}"
    return str(exc) if exc is not None else ""


def describe_failure(result: RunResult) -> str:
    return describe_error(result.error)


def pending_report(status: Mapping[str, bool]) -> list[str]:
    """Operator lines for a marker table as returned by :func:`card_status`."""

    lines = [f"  {name}: {console.yes_no(done)}" for name, done in status.items()]
    todo = [name for name, done in status.items() if not done]
    lines.append(f"  pending: {' '.join(todo) if todo else 'none'}")
    return lines
