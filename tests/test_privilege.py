import os
import stat
import sys
from unittest import mock

from phantom.privilege import (
    PrivilegeConfig,
    PrivilegeManager,
    SandboxConfig,
    apply_sandbox,
    current_privileges,
    is_root,
)


def test_default_privilege_config():
    cfg = PrivilegeConfig()
    assert cfg.enabled is True
    assert cfg.user == "nobody"
    assert cfg.group == "nogroup"
    assert cfg.create_user is False
    assert cfg.dedicated_user == "cloudflared"


def test_default_sandbox_config():
    cfg = SandboxConfig()
    assert cfg.enabled is True
    assert cfg.allow_network is True
    assert cfg.read_only_root is False
    assert cfg.allowed_paths == ["/tmp", "/var/tmp"]


def test_disabled_manager():
    pm = PrivilegeManager(PrivilegeConfig(enabled=False))
    assert pm.is_enabled() is False
    assert pm.target_user() == ("", 0, 0)


def test_non_root_disables_dropping():
    with mock.patch("sys.platform", "linux"), mock.patch("os.getuid", return_value=1000):
        pm = PrivilegeManager(PrivilegeConfig())
    assert pm.is_enabled() is False
    assert pm.target_user() == ("", 0, 0)


def test_configure_command_disabled_returns_copy():
    pm = PrivilegeManager(PrivilegeConfig(enabled=False))
    original = {"cwd": "/tmp"}
    result = pm.configure_command(original)
    assert result == original
    assert result is not original


def test_caps_wrapped_with_capsh():
    pm = PrivilegeManager(PrivilegeConfig(enabled=False))
    args = ["/usr/bin/cloudflared", "tunnel"]
    with mock.patch("sys.platform", "linux"), mock.patch(
        "shutil.which", return_value="/usr/sbin/capsh"
    ):
        new_args, kwargs = pm.configure_command_with_caps(
            args, {}, ["net_bind_service", "net_raw"]
        )
    assert new_args[0] == "/usr/sbin/capsh"
    assert "--caps=cap_net_bind_service,cap_net_raw+eip" in new_args
    assert new_args[-2:] == args
    assert new_args[new_args.index("--") + 1] == "-c"
    assert kwargs == {}
    assert args == ["/usr/bin/cloudflared", "tunnel"]


def test_caps_without_capsh_leaves_args():
    pm = PrivilegeManager(PrivilegeConfig(enabled=False))
    args = ["/usr/bin/cloudflared", "tunnel"]
    with mock.patch("sys.platform", "linux"), mock.patch("shutil.which", return_value=None):
        new_args, _ = pm.configure_command_with_caps(args, {}, ["net_raw"])
    assert new_args == args


def test_no_caps_leaves_args():
    pm = PrivilegeManager(PrivilegeConfig(enabled=False))
    args = ["/usr/bin/cloudflared"]
    with mock.patch("shutil.which", return_value="/usr/sbin/capsh"):
        new_args, _ = pm.configure_command_with_caps(args, {"cwd": "/"}, [])
    assert new_args == args


def test_prepare_directory_disabled_creates_nothing(tmp_path):
    pm = PrivilegeManager(PrivilegeConfig(enabled=False))
    target = tmp_path / "state"
    pm.prepare_directory(target)
    assert not target.exists()


def test_prepare_file_disabled_keeps_mode(tmp_path):
    pm = PrivilegeManager(PrivilegeConfig(enabled=False))
    target = tmp_path / "creds.json"
    target.write_text("{}")
    os.chmod(target, 0o644)
    before = stat.S_IMODE(os.stat(target).st_mode)
    pm.prepare_file(target, 0o600)
    assert stat.S_IMODE(os.stat(target).st_mode) == before
    assert target.read_text() == "{}"


def test_apply_sandbox_none_and_disabled():
    original = {"cwd": "/tmp"}
    assert apply_sandbox(original, None) == original
    assert apply_sandbox(original, SandboxConfig(enabled=False)) == original


def test_apply_sandbox_keeps_other_arguments():
    original = {"cwd": "/tmp"}
    result = apply_sandbox(original, SandboxConfig(allow_network=False))
    assert result["cwd"] == "/tmp"
    assert original == {"cwd": "/tmp"}


def test_current_privileges_consistent():
    info = current_privileges()
    assert info["is_root"] == is_root()
    assert info["platform"] == sys.platform
    assert info["uid"] == os.getuid()
    assert info["is_root"] == (info["uid"] == 0)