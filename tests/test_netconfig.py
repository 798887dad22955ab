import dataclasses
import grp
import ipaddress
import os
import sys

import pytest

from limaconf.netconfig import (
    MODE_USER_V2,
    SOCKET_VMNET,
    VDE_SWITCH,
    VDE_VMNET,
    Network,
    NetworksConfig,
    config_file,
    default_config,
    fill_defaults,
    load_config,
)

VAR_RUN = os.path.join("/", "private", "var", "run", "lima")


def _executable(directory, name):
    path = directory / name
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def installed(tmp_path):
    config = default_config()
    config.paths = dataclasses.replace(
        config.paths,
        socket_vmnet=_executable(tmp_path, "socket_vmnet"),
        vde_switch=_executable(tmp_path, "vde_switch"),
        vde_vmnet=_executable(tmp_path, "vde_vmnet"),
    )
    return config


def test_check():
    config = default_config()
    for name in ("bridged", "shared", "host"):
        assert config.check(name).mode == name
    with pytest.raises(LookupError, match="not defined"):
        config.check("unknown")


def test_usernet():
    config = default_config()
    assert config.usernet("user-v2") is True
    assert config.usernet("shared") is False
    with pytest.raises(LookupError, match="not defined"):
        config.usernet("unknown")


def test_log_file(tmp_path):
    config = default_config()
    networks_dir = str(tmp_path)
    assert config.log_file("name", "daemon", "stream", networks_dir) == os.path.join(
        networks_dir, "name_daemon.stream.log"
    )


def test_sock():
    assert default_config().sock("foo") == "/private/var/run/lima/socket_vmnet.foo"


def test_vde_sock():
    assert default_config().vde_sock("foo") == "/private/var/run/lima/foo.ctl"


def test_pid_file():
    config = default_config()
    assert config.pid_file("name", "daemon") == "/private/var/run/lima/name_daemon.pid"
    assert config.pid_file("shared", VDE_VMNET) == os.path.join(VAR_RUN, "shared_vmnet.pid")


def test_mkdir_cmd():
    assert default_config().mkdir_cmd() == "/bin/mkdir -m 775 -p /private/var/run/lima"


def test_stop_cmd():
    assert default_config().stop_cmd("name", "daemon") == "/usr/bin/pkill -F " + os.path.join(
        VAR_RUN, "name_daemon.pid"
    )


def test_start_cmd_socket_vmnet(installed):
    sv = installed.paths.socket_vmnet
    assert installed.start_cmd("shared", SOCKET_VMNET) == (
        sv
        + " --pidfile="
        + os.path.join(VAR_RUN, "shared_socket_vmnet.pid")
        + " --socket-group=everyone --vmnet-mode=shared "
        + "--vmnet-gateway=192.168.105.1 --vmnet-dhcp-end=192.168.105.254 --vmnet-mask=255.255.255.0 "
        + os.path.join(VAR_RUN, "socket_vmnet.shared")
    )
    assert installed.start_cmd("bridged", SOCKET_VMNET) == (
        sv
        + " --pidfile="
        + os.path.join(VAR_RUN, "bridged_socket_vmnet.pid")
        + " --socket-group=everyone --vmnet-mode=bridged "
        + "--vmnet-interface=en0 "
        + os.path.join(VAR_RUN, "socket_vmnet.bridged")
    )


def test_start_cmd_vde(installed):
    assert installed.start_cmd("shared", VDE_SWITCH) == (
        installed.paths.vde_switch
        + " --pidfile="
        + os.path.join(VAR_RUN, "shared_switch.pid")
        + " --sock="
        + os.path.join(VAR_RUN, "shared.ctl")
        + " --group=everyone --dirmode=0770 --nostdin"
    )
    assert installed.start_cmd("shared", VDE_VMNET) == (
        installed.paths.vde_vmnet
        + " --pidfile="
        + os.path.join(VAR_RUN, "shared_vmnet.pid")
        + " --vde-group=everyone --vmnet-mode=shared "
        + "--vmnet-gateway=192.168.105.1 --vmnet-dhcp-end=192.168.105.254 --vmnet-mask=255.255.255.0 "
        + os.path.join(VAR_RUN, "shared.ctl")
    )
    assert installed.start_cmd("bridged", VDE_VMNET) == (
        installed.paths.vde_vmnet
        + " --pidfile="
        + os.path.join(VAR_RUN, "bridged_vmnet.pid")
        + " --vde-group=everyone --vmnet-mode=bridged "
        + "--vmnet-interface=en0 "
        + os.path.join(VAR_RUN, "bridged.ctl")
    )


def test_start_cmd_not_installed(tmp_path):
    config = default_config()
    config.paths = dataclasses.replace(config.paths, vde_switch=str(tmp_path / "missing"))
    with pytest.raises(RuntimeError, match="is not available"):
        config.start_cmd("shared", VDE_SWITCH)
    with pytest.raises(RuntimeError, match="is not available"):
        config.start_cmd("shared", "unknown")


def test_is_daemon_installed(installed, tmp_path):
    assert installed.is_daemon_installed(SOCKET_VMNET) is True
    installed.paths = dataclasses.replace(installed.paths, vde_vmnet=str(tmp_path / "missing"))
    assert installed.is_daemon_installed(VDE_VMNET) is False
    installed.paths = dataclasses.replace(installed.paths, vde_switch="")
    assert installed.is_daemon_installed(VDE_SWITCH) is False


def test_daemon_path(installed):
    assert installed.daemon_path(VDE_VMNET) == installed.paths.vde_vmnet
    with pytest.raises(ValueError, match="unknown daemon type"):
        installed.daemon_path("unknown")


def test_user_socket_vmnet(installed):
    user = installed.user(SOCKET_VMNET)
    assert user.user == "root"
    assert user.group == ("wheel" if sys.platform == "darwin" else "root")
    assert user.uid == 0
    assert user.gid == 0


def test_user_vde(installed):
    installed.group = "root"
    user = installed.user(VDE_SWITCH)
    assert user.user == "daemon"
    assert user.group == installed.group
    assert user.gid == grp.getgrnam(installed.group).gr_gid

    user = installed.user(VDE_VMNET)
    assert user.user == "root"
    assert user.uid == 0
    assert user.gid == 0


def test_user_not_installed(tmp_path):
    config = default_config()
    config.paths = dataclasses.replace(config.paths, vde_vmnet=str(tmp_path / "missing"))
    with pytest.raises(LookupError, match="is not available"):
        config.user(VDE_VMNET)


def test_checked_sock(installed):
    assert installed.checked_sock("shared") == installed.sock("shared")
    assert installed.checked_vde_sock("shared") == installed.vde_sock("shared")
    with pytest.raises(LookupError, match="not defined"):
        installed.checked_sock("unknown")
    installed.paths = dataclasses.replace(installed.paths, socket_vmnet="", vde_vmnet="")
    with pytest.raises(ValueError, match="socketVMNet is not set"):
        installed.checked_sock("shared")
    with pytest.raises(ValueError, match="vdeVMnet is not set"):
        installed.checked_vde_sock("shared")


def test_fill_default():
    new = fill_defaults(NetworksConfig())
    user_net = new.networks[MODE_USER_V2]
    assert user_net.mode == MODE_USER_V2
    assert user_net.interface == ""
    assert user_net.netmask == ipaddress.ip_address("255.255.255.0")
    assert user_net.gateway == ipaddress.ip_address("192.168.104.1")
    assert user_net.dhcp_end is None


def test_fill_default_with_v2():
    original = NetworksConfig(networks={"user-v2": Network(mode=MODE_USER_V2)})
    new = fill_defaults(original)
    user_net = new.networks[MODE_USER_V2]
    assert user_net.mode == MODE_USER_V2
    assert user_net.interface == ""
    assert user_net.netmask == ipaddress.ip_address("255.255.255.0")
    assert user_net.gateway == ipaddress.ip_address("192.168.104.1")
    assert user_net.dhcp_end is None
    assert original.networks["user-v2"].gateway is None


def test_fill_default_with_v2_and_gateway():
    original = NetworksConfig(
        networks={
            "user-v2": Network(mode=MODE_USER_V2, gateway=ipaddress.ip_address("192.168.105.1"))
        }
    )
    user_net = fill_defaults(original).networks[MODE_USER_V2]
    assert user_net.mode == MODE_USER_V2
    assert user_net.interface == ""
    assert user_net.netmask is None
    assert user_net.gateway == ipaddress.ip_address("192.168.105.1")
    assert user_net.dhcp_end is None


def test_default_config_values():
    config = default_config()
    assert config.group == "everyone"
    assert config.paths.var_run == "/private/var/run/lima"
    assert config.paths.sudoers == "/etc/sudoers.d/lima"
    assert config.paths.socket_vmnet.endswith("socket_vmnet")
    assert set(config.networks) >= {"user-v2", "shared", "bridged", "host"}


def test_from_yaml_rejects_unknown_fields():
    with pytest.raises(ValueError, match="unknown field"):
        NetworksConfig.from_yaml("paths:\n  varRun: /run\n  bogus: x\n")
    with pytest.raises(ValueError, match="unknown field"):
        NetworksConfig.from_yaml("networks:\n  n:\n    mode: host\n    extra: 1\n")


def test_from_yaml_rejects_invalid_ip():
    with pytest.raises(ValueError, match="invalid IP address"):
        NetworksConfig.from_yaml("networks:\n  n:\n    mode: host\n    gateway: not-an-ip\n")


def test_config_file(tmp_path):
    assert config_file(tmp_path) == os.path.join(str(tmp_path), "networks.yaml")


def test_load_config_writes_default(tmp_path):
    path = tmp_path / "_config" / "networks.yaml"
    config = load_config(path)
    assert path.exists()
    assert config.group == "everyone"
    assert config.networks["shared"].gateway == ipaddress.ip_address("192.168.105.1")
    assert load_config(path) == config


def test_load_config_adds_usernet(tmp_path):
    path = tmp_path / "networks.yaml"
    path.write_text("group: staff\nnetworks:\n  shared:\n    mode: shared\n")
    config = load_config(path)
    assert config.group == "staff"
    assert config.networks[MODE_USER_V2].gateway == ipaddress.ip_address("192.168.104.1")


def test_load_config_parse_error(tmp_path):
    path = tmp_path / "networks.yaml"
    path.write_text("unknown: true\n")
    with pytest.raises(ValueError, match="cannot parse"):
        load_config(path)