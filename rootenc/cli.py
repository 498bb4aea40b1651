"""Command-line entry point for host runs and the chrooted ``in_target`` run."""
from __future__ import annotations

import argparse
import glob
import json
import os
import subprocess
import sys
import time
from typing import Any, Dict, Mapping, Optional

from . import config, console, devices, distro, engine, initramfs, keys, mounts, partitioning, prompt
from .config import DEFAULT_BOOTPART_LABEL, DEFAULT_ROOTFS_NAME
from .errors import ConfigError, DeviceError, InitramfsError, RelayError, UserAbort
from .executil import append_jsonl, info, resolve_log_path
from .model import BuildDirs, ConfigSnapshot, DeviceMap, Flags, IpMode
from .relay import IN_TARGET

PROG = "armbian-rootenc-setup"
TITLE = "Armbian Encrypted Root Filesystem Setup"

RESULT_CODES: Dict[str, int] = {
    "DONE_OK": 0,
    "STATUS_OK": 0,
    "TARGET_OK": 0,
    "FAIL_USER_ABORT": 1,
    "FAIL_CONFIG": 2,
    "FAIL_DEVICE": 2,
    "FAIL_NOT_ROOT": 3,
    "FAIL_STAGE": 4,
    "FAIL_RELAY": 5,
    "FAIL_COMMAND": 9,
    "FAIL_INITRAMFS_VERIFY": 11,
    "FAIL_UNHANDLED": 12,
}

# short option, Flags attribute, help text
OPTIONS = (
    ("-C", "no_cleanup", "Don't perform unmounts or clean up build directory at exit"),
    ("-d", "debug", "Produce tons of debugging output"),
    ("-f", "force_reconfigure", "Force reconfiguration of target system"),
    ("-F", "force_rebuild", "Force a complete rebuild of target system"),
    ("-m", "add_all_mods", "Add all currently loaded modules to the initramfs (may help "
                           "fix blank screen on bootup issues)"),
    ("-p", "partition_only", "Partition and create filesystems only.  Do not copy data"),
    ("-s", "use_local_authorized_keys", "Use 'authorized_keys' file from working directory, if available"),
    ("-u", "apt_upgrade", "Perform an 'apt upgrade' after each 'apt update'"),
    ("-v", "verbose", "Be more verbose"),
    ("-z", "erase", "Erase boot sector and first partition of SD card before partitioning"),
)

USER_OPTS_INFO = (
    ("no_cleanup", "no cleanup of mounts after program run"),
    ("force_rebuild", "force full rebuild"),
    ("force_reconfigure", "force reconfiguration"),
    ("add_all_mods", "add all currently loaded modules to initramfs"),
    ("use_local_authorized_keys", "use local 'authorized_keys' file"),
    ("partition_only", "partition and create filesystems only"),
    ("erase", "zero boot sector, boot partition and beginning of root partition"),
    ("reuse_fs", "reuse existing filesystems (for development only)"),
    ("testing", "developer tweaks"),
    ("pause", "pause along the way"),
    ("ignore_apt_errors", "continue even if apt update fails"),
)

EPILOG = """\
For non-interactive operation, set the following variables in your environment
or on the command line:

    ROOTFS_NAME        - device mapper name of target root filesystem
    IP_ADDRESS         - IP address of target (set to 'dhcp' for dynamic IP
                         or 'none' to disable remote SSH unlocking support)
    BOOTPART_LABEL     - Boot partition label of target
    DISK_PASSWD        - Disk password of target root filesystem
    UNLOCKING_USERHOST - USER@HOST of remote unlocking host

This program must be invoked as superuser on a running Armbian system.
Packages will be installed using APT, so the system must be Internet-
connected and its clock correctly set.

If remote unlocking via SSH is desired, the unlocking host must be reachable.
Alternatively, SSH public keys for the unlocking host or hosts may be placed
in the file 'authorized_keys' in the current directory (see '-s').

Architecture of host and target must be the same.

  1. Place an Armbian boot image file for the target system in the current
     directory.
  2. Insert a card reader with a blank micro-SD card for the target system.
  3. Determine the card's device name using 'dmesg' or 'lsblk'.
  4. Invoke this program with the device name as argument.

Re-running with the same settings resumes after the last completed stage;
changed settings redo only the stages they affect.
"""

JSON_OUTPUT_ENABLED = True
CLI_START_MONO = time.perf_counter()
_CURRENT_DEVICE: Optional[str] = None


def _result_log_path() -> Optional[str]:
    path = resolve_log_path()
    if not path:
        return None
    return os.path.join(os.path.dirname(path), "results.jsonl")


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    if _CURRENT_DEVICE:
        payload.setdefault("device", _CURRENT_DEVICE)
    payload["timing_total_ms"] = int(max(0.0, (time.perf_counter() - CLI_START_MONO) * 1000))
    log_path = _result_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    if JSON_OUTPUT_ENABLED:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Create an Armbian image with encrypted root filesystem",
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    for short, attr, text in OPTIONS:
        parser.add_argument(short, dest=attr, action="store_true", help=text)
    parser.add_argument("--yes", dest="assume_yes", action="store_true", help="Answer yes to every confirmation")
    parser.add_argument("--status", action="store_true", help="Show completed and pending stages, then exit")
    parser.add_argument("--json", dest="json", action="store_true", default=True)
    parser.add_argument("--no-json", dest="json", action="store_false")
    parser.add_argument("device", nargs="?", help="SD card device name (e.g. sdb or /dev/mmcblk1)")
    parser.add_argument("assignments", nargs="*", metavar="NAME=value")
    return parser


def flags_from_args(args: argparse.Namespace, environ: Mapping[str, str],
                    assignments: Mapping[str, str]) -> Flags:
    flags = Flags(
        assume_yes=bool(getattr(args, "assume_yes", False)),
        orig_opts=[short for short, attr, _ in OPTIONS if getattr(args, attr, False)],
        **{attr: bool(getattr(args, attr, False)) for _, attr, _ in OPTIONS},
    )
    if flags.debug:
        flags.verbose = True
    return config.apply_dev_flags(flags, environ, assignments)


def find_image(workdir: str = ".") -> str:
    images = sorted(os.path.basename(p) for p in glob.glob(os.path.join(workdir, "*.img")))
    if not images:
        raise ConfigError("You must place an Armbian image in the current directory!")
    if len(images) > 1:
        raise ConfigError("More than one image file present!: " + " ".join(images))
    return images[0]


def _rootfs_free(name: str) -> Optional[str]:
    mnt = devices.rootfs_in_use(name)
    return f"Device '{name}' is in use and mounted on {mnt}" if mnt else None


def _host_available(userhost: str) -> Optional[str]:
    if keys.host_reachable(userhost):
        return None
    return f"Unable to ping host '{userhost.split('@', 1)[-1]}'"


def gather_snapshot(image: str, flags: Flags, values: Mapping[str, str],
                    reader: prompt.Reader = input) -> ConfigSnapshot:
    """Fill in the snapshot from ``values``, prompting for anything missing or invalid."""

    ip_address = prompt.ask(
        "ip_address", "IP address",
        "Enter the IP address of the target machine.\n"
        "Enter 'dhcp' for a dynamic IP or 'none' for no remote SSH unlocking support\n"
        "IP address:",
        current=values.get("ip_address", ""), reader=reader,
    ).lower()
    label = prompt.ask(
        "bootpart_label", "boot partition label",
        "Enter a boot partition label for the target machine,\nor hit ENTER for the default (%s):",
        default=DEFAULT_BOOTPART_LABEL, current=values.get("bootpart_label", ""), reader=reader,
    )
    rootfs_name = prompt.ask(
        "rootfs_name", "root filesystem device name",
        "Enter a device name for the encrypted root filesystem,\nor hit ENTER for the default (%s):",
        default=DEFAULT_ROOTFS_NAME, current=values.get("rootfs_name", ""),
        extra_check=_rootfs_free, reader=reader,
    )
    passwd = prompt.ask(
        "disk_passwd", "disk password",
        "Choose a simple disk password for the installation process.\n"
        "Once your encrypted system is up and running, you can change\n"
        "the password using the 'cryptsetup' command.\n"
        "Enter password:",
        current=values.get("disk_passwd", ""), reader=reader,
    )
    userhost = ""
    if ip_address != "none" and not keys.have_local_keys(flags.use_local_authorized_keys):
        userhost = prompt.ask(
            "unlocking_userhost", "USER@HOST",
            "Enter the user@host of the machine you'll be unlocking from:",
            current=values.get("unlocking_userhost", ""), extra_check=_host_available, reader=reader,
        )
    return config.validate_snapshot(ConfigSnapshot(
        image=image,
        bootpart_label=label,
        rootfs_name=rootfs_name,
        disk_passwd=passwd,
        unlocking_userhost=userhost,
        ip_address=ip_address,
        add_all_mods=flags.add_all_mods,
        use_local_authorized_keys=flags.use_local_authorized_keys,
    ))


def _header() -> None:
    console.info("")
    console.info(f"{'':<18}{TITLE}")
    console.info("")
    console.info(f"{'':<22}For detailed usage information,")
    console.info(f"{'':<24}invoke with the '-h' switch")
    console.info("")


def warn_user_opts(flags: Flags) -> list[str]:
    active = [text for attr, text in USER_OPTS_INFO if getattr(flags, attr)]
    if active:
        console.warn("  The following user options are in effect:")
        for text in active:
            console.warn(f"  + {text}")
    return active


def confirm_settings(snapshot: ConfigSnapshot, dm: DeviceMap, flags: Flags,
                     reader: prompt.Reader = input) -> None:
    console.info("")
    console.info(f"  Armbian image:                {snapshot.image}")
    console.info(f"  Target device:                {dm.sdcard_path} ({dm.info})")
    console.info(f"  Root filesystem device name:  /dev/mapper/{snapshot.rootfs_name}")
    console.info(f"  Target IP address:            {snapshot.ip_address}")
    console.info(f"  Boot partition label:         {snapshot.bootpart_label}")
    console.info(f"  Disk password:                {snapshot.disk_passwd}")
    if snapshot.unlocking_userhost:
        console.info(f"  user@host of unlocking machine: {snapshot.unlocking_userhost}")
    console.info("")
    prompt.confirm("  Are these settings correct?", True, assume_yes=flags.assume_yes, reader=reader)


def _fail_result(result: engine.RunResult) -> None:
    stage = result.failed_stage.value if result.failed_stage else None
    why = engine.describe_failure(result)
    exc = result.error
    if isinstance(exc, InitramfsError):
        kind = "FAIL_INITRAMFS_VERIFY"
    elif isinstance(exc, RelayError):
        kind = "FAIL_RELAY"
    elif isinstance(exc, UserAbort):
        kind = "FAIL_USER_ABORT"
    else:
        kind = "FAIL_STAGE"
    if kind != "FAIL_USER_ABORT":
        console.fail(f"Stage '{stage}' failed: {why}")
    _emit_result(kind, {"stage": stage, "why": why})


def host_main(args: argparse.Namespace, flags: Flags, assignments: Mapping[str, str],
              environ: Mapping[str, str], reader: prompt.Reader = input) -> None:
    global _CURRENT_DEVICE

    _header()
    host = distro.host_info()
    image = find_image()
    dirs = BuildDirs.under()

    def confirm(text: str, default_yes: bool) -> None:
        prompt.confirm(text, default_yes, assume_yes=flags.assume_yes, reader=reader)

    if args.status:
        dm = devices.check_sdcard(args.device, confirm)
        _CURRENT_DEVICE = dm.sdcard_path
        devices.assert_not_mounted(dm)
        try:
            status = engine.card_status(dm, dirs)
        finally:
            mounts.remove_build_dirs(dirs)
        for line in engine.pending_report(status):
            console.info(line)
        _emit_result("STATUS_OK", {"stages": status})

    initramfs.install_host_packages(host.distro, flags.apt_upgrade, flags.ignore_apt_errors)
    engine.preclean(image, dirs)
    dm = devices.check_sdcard(args.device, confirm)
    _CURRENT_DEVICE = dm.sdcard_path
    snapshot = gather_snapshot(image, flags, config.user_values(environ, assignments), reader)
    devices.assert_not_mounted(dm)
    warn_user_opts(flags)
    confirm_settings(snapshot, dm, flags, reader)

    if snapshot.ip_mode is not IpMode.NONE:
        keys.fetch_authorized_keys(snapshot.unlocking_userhost, flags.use_local_authorized_keys)

    mounts.create_build_dirs(dirs)
    prov = engine.HostProvisioner(dm, snapshot, flags, dirs, host, reader=reader)
    try:
        loop_dev = mounts.setup_loopmount(image, dirs.src)
        prov.start_sector = partitioning.image_start_sector(loop_dev)
        if flags.pause:
            prompt.pause(reader)
        result = prov.provision()
    finally:
        if not flags.no_cleanup:
            prov.cleanup()
    info("host.finished", ok=result.ok, completed=[s.value for s in result.completed])
    if not result.ok:
        _fail_result(result)
    console.ok("All done!")
    _emit_result("DONE_OK", {"completed": [s.value for s in result.completed]})


def target_main(environ: Mapping[str, str]) -> None:
    console.TESTING = bool(environ.get("ROOTENC_TESTING"))
    result = engine.run_in_target(environ)
    info("target.finished", ok=result.ok, completed=[s.value for s in result.completed])
    if not result.ok:
        _fail_result(result)
    _emit_result("TARGET_OK", {"completed": [s.value for s in result.completed]})


def _main_impl(argv: Optional[list[str]] = None) -> int:
    global JSON_OUTPUT_ENABLED

    parser = build_parser()
    args = parser.parse_args(argv)
    JSON_OUTPUT_ENABLED = bool(getattr(args, "json", True))
    if not args.device:
        parser.error("You must supply a device name")
    if os.geteuid() != 0:
        console.fail("This program must be run as root!")
        _emit_result("FAIL_NOT_ROOT", {"why": "not root"})
    os.environ["HOME"] = "/root"
    assignments = config.parse_assignments(args.assignments)

    if args.device == IN_TARGET:
        environ = dict(os.environ)
        environ.update(assignments)
        target_main(environ)

    flags = flags_from_args(args, os.environ, assignments)
    console.TESTING = flags.testing
    host_main(args, flags, assignments, os.environ)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except KeyboardInterrupt:
        console.warn("\nExiting at user request")
        _emit_result("FAIL_USER_ABORT", {"why": "interrupted"})
    except UserAbort as exc:
        _emit_result("FAIL_USER_ABORT", {"why": str(exc)})
    except ConfigError as exc:
        console.fail(str(exc))
        _emit_result("FAIL_CONFIG", {"why": str(exc)})
    except DeviceError as exc:
        console.fail(str(exc))
        _emit_result("FAIL_DEVICE", {"why": str(exc)})
    except RelayError as exc:
        console.fail(str(exc))
        _emit_result("FAIL_RELAY", {"why": str(exc)})
    except subprocess.CalledProcessError as exc:
        why = engine.describe_error(exc)
        console.fail(why)
        _emit_result("FAIL_COMMAND", {"why": why})
    except Exception as exc:  # noqa: BLE001
        console.fail(f"exiting with error: {exc}")
        _emit_result("FAIL_UNHANDLED", {"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
