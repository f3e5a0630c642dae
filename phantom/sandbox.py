"""Process isolation helpers: capabilities, namespaces, resource limits, auditing."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable

_IS_LINUX = sys.platform.startswith("linux")

CLONE_NEWNS = 0x00020000
CLONE_NEWUTS = 0x04000000
CLONE_NEWIPC = 0x08000000
CLONE_NEWUSER = 0x10000000
CLONE_NEWPID = 0x20000000
CLONE_NEWNET = 0x40000000

LINUX_CAPABILITY_VERSION_3 = 0x20080522
PR_CAPBSET_DROP = 24
PR_CAP_AMBIENT = 47
PR_CAP_AMBIENT_RAISE = 2
PR_CAP_AMBIENT_LOWER = 3
PR_CAP_AMBIENT_CLEAR_ALL = 4

SECCOMP_SET_MODE_STRICT = 0
SECCOMP_SET_MODE_FILTER = 1

IDMapping = tuple[int, int, int]


class Capability(IntEnum):
    """Linux capability numbers used by the tunnel."""

    NET_BIND_SERVICE = 10
    NET_ADMIN = 12
    NET_RAW = 13
    SYS_ADMIN = 21


class SeccompAction(IntEnum):
    """Return actions of a seccomp filter."""

    KILL_THREAD = 0x00000000
    TRAP = 0x00030000
    ERRNO = 0x00050000
    LOG = 0x7FFC0000
    ALLOW = 0x7FFF0000
    KILL_PROCESS = 0x80000000


@dataclass
class NamespaceConfig:
    """Which new namespaces a child process is started in.

    Mappings are (container_id, host_id, size) triples for a user namespace.
    """

    new_pid_ns: bool = False
    new_net_ns: bool = False
    new_mount_ns: bool = False
    new_uts_ns: bool = False
    new_ipc_ns: bool = False
    new_user_ns: bool = False
    uid_mappings: list[IDMapping] = field(default_factory=list)
    gid_mappings: list[IDMapping] = field(default_factory=list)

    @property
    def clone_flags(self) -> int:
        """The CLONE_NEW* flags this configuration asks for."""
        flags = 0
        if self.new_pid_ns:
            flags |= CLONE_NEWPID
        if self.new_net_ns:
            flags |= CLONE_NEWNET
        if self.new_mount_ns:
            flags |= CLONE_NEWNS
        if self.new_uts_ns:
            flags |= CLONE_NEWUTS
        if self.new_ipc_ns:
            flags |= CLONE_NEWIPC
        if self.new_user_ns:
            flags |= CLONE_NEWUSER
        return flags


def _write_proc(name: str, content: str) -> None:
    with open(f"/proc/self/{name}", "w", encoding="ascii") as handle:
        handle.write(content)


def _format_mappings(mappings: list[IDMapping]) -> str:
    return "".join(f"{inside} {outside} {size}\n" for inside, outside, size in mappings)


class _NamespaceSetup:
    """Runs in the child before exec: enters new namespaces, then any earlier hook."""

    def __init__(
        self,
        flags: int,
        uid_mappings: list[IDMapping],
        gid_mappings: list[IDMapping],
        previous: Callable[[], Any] | None,
    ) -> None:
        self.flags = flags
        self.uid_mappings = list(uid_mappings)
        self.gid_mappings = list(gid_mappings)
        self.previous = previous

    def __call__(self) -> None:
        if self.flags:
            os.unshare(self.flags)
        if self.flags & CLONE_NEWUSER:
            if self.gid_mappings:
                _write_proc("setgroups", "deny")
                _write_proc("gid_map", _format_mappings(self.gid_mappings))
            if self.uid_mappings:
                _write_proc("uid_map", _format_mappings(self.uid_mappings))
        if self.previous is not None:
            self.previous()


def configure_namespaces(
    popen_kwargs: dict[str, Any], config: NamespaceConfig | None
) -> dict[str, Any]:
    """Return Popen keyword arguments that start the child in the configured namespaces.

    A namespace setup installed earlier is replaced; any other preexec_fn
    still runs after the namespaces are entered. Outside Linux nothing changes.
    """
    kwargs = dict(popen_kwargs)
    if config is None or not _IS_LINUX:
        return kwargs
    flags = config.clone_flags
    previous = kwargs.get("preexec_fn")
    if isinstance(previous, _NamespaceSetup):
        previous = previous.previous
    if flags == 0:
        if previous is None:
            kwargs.pop("preexec_fn", None)
        else:
            kwargs["preexec_fn"] = previous
        return kwargs
    uid_mappings = config.uid_mappings if config.new_user_ns else []
    gid_mappings = config.gid_mappings if config.new_user_ns else []
    kwargs["preexec_fn"] = _NamespaceSetup(flags, uid_mappings, gid_mappings, previous)
    return kwargs


@dataclass
class ResourceLimits:
    """Resource limits for a process; 0 leaves a limit unchanged."""

    max_open_files: int = 0
    max_processes: int = 0
    max_memory: int = 0
    max_cpu_time: int = 0
    max_file_size: int = 0

    @classmethod
    def default(cls) -> ResourceLimits:
        """Conservative limits on Linux; no limits elsewhere."""
        if not _IS_LINUX:
            return cls()
        return cls(
            max_open_files=1024,
            max_processes=64,
            max_memory=512 * 1024 * 1024,
            max_cpu_time=0,
            max_file_size=100 * 1024 * 1024,
        )


def apply_resource_limits(limits: ResourceLimits | None) -> None:
    """Set the limits on the current process; raises OSError if one cannot be set."""
    if limits is None or not _IS_LINUX:
        return
    import resource

    settings = (
        ("open files", resource.RLIMIT_NOFILE, limits.max_open_files),
        ("process count", resource.RLIMIT_NPROC, limits.max_processes),
        ("memory", resource.RLIMIT_AS, limits.max_memory),
        ("CPU time", resource.RLIMIT_CPU, limits.max_cpu_time),
        ("file size", resource.RLIMIT_FSIZE, limits.max_file_size),
    )
    for name, which, value in settings:
        if value <= 0:
            continue
        try:
            resource.setrlimit(which, (value, value))
        except (OSError, ValueError) as exc:
            raise OSError(f"failed to set {name} limit: {exc}") from exc


def resource_limits_preexec(limits: ResourceLimits | None) -> Callable[[], None]:
    """A preexec_fn that applies the limits in the child before it runs."""

    def apply() -> None:
        apply_resource_limits(limits)

    return apply


@dataclass
class AuditEvent:
    """One security-relevant event."""

    timestamp: int
    event_type: str
    process_id: int
    process_name: str
    details: dict[str, Any] = field(default_factory=dict)


class AuditLogger:
    """Appends audit events to a file readable only by its owner."""

    def __init__(self, path: str | os.PathLike) -> None:
        fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o600)
        self._file = os.fdopen(fd, "a", encoding="utf-8")

    def log_event(self, event: AuditEvent) -> None:
        """Write one line for event; does nothing once the logger is closed."""
        if self._file is None:
            return
        self._file.write(
            f"[{event.timestamp}] {event.event_type} "
            f"pid={event.process_id} name={event.process_name}\n"
        )
        self._file.flush()

    def close(self) -> None:
        """Close the log file; safe to call more than once."""
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> AuditLogger:
        return self

    def __exit__(self, *args) -> None:
        self.close()


class ProcessMonitor:
    """Reads information about a process from /proc."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.stopped = False

    def process_info(self) -> dict[str, str]:
        """The fields of /proc/<pid>/status, split at the first colon."""
        with open(f"/proc/{self.pid}/status", encoding="utf-8", errors="replace") as handle:
            data = handle.read()
        info: dict[str, str] = {}
        for line in data.split("\n"):
            name, sep, value = line.partition(":")
            if sep:
                info[name] = value
        return info

    def open_files(self) -> list[str]:
        """The targets of the process's open file descriptors."""
        fd_dir = f"/proc/{self.pid}/fd"
        files = []
        for entry in os.listdir(fd_dir):
            try:
                files.append(os.readlink(os.path.join(fd_dir, entry)))
            except OSError:
                continue
        return files