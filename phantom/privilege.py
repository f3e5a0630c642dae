"""Dropping privileges for child processes started by the tunnel."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Any

try:
    import grp
    import pwd
except ImportError:  # not available on Windows
    grp = None
    pwd = None


class PrivilegeError(Exception):
    """Privileges could not be set up or applied."""


def _is_linux() -> bool:
    return sys.platform.startswith("linux")


@dataclass
class PrivilegeConfig:
    """Which unprivileged account child processes run as."""

    enabled: bool = True
    user: str = "nobody"
    group: str = "nogroup"
    create_user: bool = False
    dedicated_user: str = "cloudflared"


def _lookup_user(name: str):
    if pwd is None:
        return None
    try:
        return pwd.getpwnam(name)
    except KeyError:
        return None


def _lookup_group(name: str):
    if grp is None:
        return None
    try:
        return grp.getgrnam(name)
    except KeyError:
        return None


class PrivilegeManager:
    """Runs child processes as an unprivileged user when the server runs as root."""

    def __init__(self, config: PrivilegeConfig | None = None) -> None:
        config = config if config is not None else PrivilegeConfig()
        self._enabled = config.enabled
        self._initialized = False
        self._target_user = ""
        self._target_group = ""
        self._uid = 0
        self._gid = 0

        if not _is_linux() or not config.enabled:
            return
        if os.getuid() != 0:
            self._enabled = False
            return
        try:
            self._init_target_user(config)
        except PrivilegeError as exc:
            raise PrivilegeError(f"failed to initialise target user: {exc}") from exc
        self._initialized = True

    def _init_target_user(self, config: PrivilegeConfig) -> None:
        if config.create_user:
            try:
                self._ensure_dedicated_user(config.dedicated_user)
                return
            except PrivilegeError:
                pass

        target_user = config.user
        target_group = config.group

        entry = _lookup_user(target_user)
        if entry is None:
            entry = _lookup_user("nobody") or _lookup_user("_nobody")
            if entry is None:
                raise PrivilegeError("no suitable unprivileged user found")
            target_user = entry.pw_name
        uid = entry.pw_uid

        gid = uid
        group = _lookup_group(target_group)
        if group is None:
            group = _lookup_group("nogroup")
            if group is not None:
                target_group = "nogroup"
            else:
                group = _lookup_group("nobody")
                if group is not None:
                    target_group = "nobody"
        if group is not None:
            gid = group.gr_gid

        self._target_user = target_user
        self._target_group = target_group
        self._uid = uid
        self._gid = gid

    def _adopt_user(self, entry) -> None:
        self._target_user = entry.pw_name
        self._target_group = str(entry.pw_gid)
        self._uid = entry.pw_uid
        self._gid = entry.pw_gid

    def _ensure_dedicated_user(self, username: str) -> None:
        entry = _lookup_user(username)
        if entry is not None:
            self._adopt_user(entry)
            return
        if not _is_linux():
            raise PrivilegeError(f"creating users is not supported on {sys.platform}")
        try:
            subprocess.run(
                [
                    "useradd",
                    "--system",
                    "--no-create-home",
                    "--shell",
                    "/usr/sbin/nologin",
                    "--comment",
                    "Cloudflared Tunnel User",
                    username,
                ],
                check=True,
                capture_output=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise PrivilegeError(f"failed to create user: {exc}") from exc
        entry = _lookup_user(username)
        if entry is None:
            raise PrivilegeError(f"created user {username!r} cannot be found")
        self._adopt_user(entry)

    def configure_command(self, popen_kwargs: dict[str, Any]) -> dict[str, Any]:
        """Return Popen keyword arguments that run the child as the target user."""
        kwargs = dict(popen_kwargs)
        if not self.is_enabled() or not _is_linux():
            return kwargs
        kwargs["user"] = self._uid
        kwargs["group"] = self._gid
        kwargs["extra_groups"] = [self._gid]
        kwargs["process_group"] = 0
        return kwargs

    def configure_command_with_caps(
        self, args: list[str], popen_kwargs: dict[str, Any], caps: list[str]
    ) -> tuple[list[str], dict[str, Any]]:
        """Like configure_command, also wrapping args in capsh to grant capabilities.

        caps are names without the "cap_" prefix. When capsh is not installed
        the command is left as it is.
        """
        kwargs = self.configure_command(popen_kwargs)
        args = list(args)
        if _is_linux() and caps:
            args = self._wrap_with_capsh(args, caps)
        return args, kwargs

    def _wrap_with_capsh(self, args: list[str], caps: list[str]) -> list[str]:
        capsh = shutil.which("capsh")
        if capsh is None or not args:
            return args
        cap_text = ",".join(f"cap_{cap}" for cap in caps)
        return [
            capsh,
            f"--user={self._target_user}",
            f"--caps={cap_text}+eip",
            "--",
            "-c",
            args[0],
            *args[1:],
        ]

    def prepare_directory(self, path: str | os.PathLike) -> None:
        """Create a directory owned by the target user."""
        if not self.is_enabled():
            return
        try:
            os.makedirs(path, mode=0o750, exist_ok=True)
        except OSError as exc:
            raise PrivilegeError(f"failed to create directory: {exc}") from exc
        try:
            os.chown(path, self._uid, self._gid)
        except OSError as exc:
            raise PrivilegeError(f"failed to change directory owner: {exc}") from exc

    def prepare_file(self, path: str | os.PathLike, mode: int) -> None:
        """Set a file's mode and give it to the target user."""
        if not self.is_enabled():
            return
        try:
            os.chmod(path, mode)
        except OSError as exc:
            raise PrivilegeError(f"failed to change file mode: {exc}") from exc
        try:
            os.chown(path, self._uid, self._gid)
        except OSError as exc:
            raise PrivilegeError(f"failed to change file owner: {exc}") from exc

    def target_user(self) -> tuple[str, int, int]:
        """The target user's name, uid and gid."""
        return self._target_user, self._uid, self._gid

    def is_enabled(self) -> bool:
        """True when child processes will have their privileges dropped."""
        return self._enabled and self._initialized


@dataclass
class SandboxConfig:
    """Isolation applied to child processes."""

    enabled: bool = True
    allowed_paths: list[str] = field(default_factory=lambda: ["/tmp", "/var/tmp"])
    allow_network: bool = True
    read_only_root: bool = False
    blocked_syscalls: list[str] = field(default_factory=list)


def apply_sandbox(
    popen_kwargs: dict[str, Any], config: SandboxConfig | None
) -> dict[str, Any]:
    """Return Popen keyword arguments that start the child in new namespaces.

    The child gets its own UTS and IPC namespaces, and its own network
    namespace when the network is not allowed. Only acts on Linux.
    """
    kwargs = dict(popen_kwargs)
    if config is None or not config.enabled or not _is_linux():
        return kwargs
    if not hasattr(os, "unshare"):
        return kwargs

    flags = os.CLONE_NEWUTS | os.CLONE_NEWIPC
    if not config.allow_network:
        flags |= os.CLONE_NEWNET
    previous = kwargs.get("preexec_fn")

    def enter_namespaces() -> None:
        if previous is not None:
            previous()
        os.unshare(flags)

    kwargs["preexec_fn"] = enter_namespaces
    return kwargs


def is_root() -> bool:
    """True when the process runs as root."""
    return hasattr(os, "getuid") and os.getuid() == 0


def current_privileges() -> dict[str, Any]:
    """Identity information about the running process."""
    info: dict[str, Any] = {
        "uid": os.getuid() if hasattr(os, "getuid") else -1,
        "euid": os.geteuid() if hasattr(os, "geteuid") else -1,
        "gid": os.getgid() if hasattr(os, "getgid") else -1,
        "egid": os.getegid() if hasattr(os, "getegid") else -1,
        "is_root": is_root(),
        "platform": sys.platform,
    }
    if pwd is not None:
        try:
            entry = pwd.getpwuid(os.getuid())
        except KeyError:
            pass
        else:
            info["username"] = entry.pw_name
            info["home"] = entry.pw_dir
    if hasattr(os, "getgroups"):
        try:
            info["groups"] = os.getgroups()
        except OSError:
            pass
    return info