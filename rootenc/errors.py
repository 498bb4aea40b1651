"""Error taxonomy for the provisioner."""
from __future__ import annotations


class RootencError(RuntimeError):
    """Base class for expected, reportable failures."""


class ConfigError(RootencError):
    """Missing or malformed configuration; raised before any stage runs."""


class DeviceError(RootencError):
    """Target device is unsuitable (missing, a partition, mounted...)."""


class UserAbort(RootencError):
    """The operator declined a confirmation or interrupted the run."""


class StageError(RootencError):
    def __init__(self, stage, message: str):
        super().__init__(f"{getattr(stage, 'value', stage)}: {message}")
        self.stage = stage
        self.message = message


class RelayError(RootencError):
    """The chrooted re-invocation failed or its contract was violated."""

    def __init__(self, message: str, *, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class InitramfsError(RootencError):
    """Initramfs image is missing required unlock components."""

    def __init__(self, why: str, listing: list[str] | None = None):
        super().__init__(why)
        self.why = why
        self.listing = listing or []
