import ipaddress
import logging

import pytest

from limaconf.model import (
    X8664,
    Disk,
    LimaYAML,
    Mount,
    NineP,
    PortForward,
    Probe,
    Rosetta,
)


def test_from_dict_reads_nested_fields():
    data = {
        "vmType": "vz",
        "cpus": 4,
        "memory": "4GiB",
        "images": [
            {
                "location": "https://example.com/img.qcow2",
                "arch": "x86_64",
                "kernel": {"location": "/boot/vmlinuz", "cmdline": "console=ttyS0"},
            }
        ],
        "ssh": {"localPort": 60022, "forwardAgent": True},
    }
    y = LimaYAML.from_dict(data)
    assert y.vm_type == "vz"
    assert y.cpus == 4
    assert y.memory == "4GiB"
    assert y.images[0].arch == X8664
    assert y.images[0].kernel.location == "/boot/vmlinuz"
    assert y.images[0].kernel.cmdline == "console=ttyS0"
    assert y.images[0].initrd is None
    assert y.ssh.local_port == 60022
    assert y.ssh.forward_agent is True
    assert y.ssh.forward_x11 is None


def test_disk_string_and_mapping():
    y = LimaYAML.from_dict(
        {"additionalDisks": ["name", {"name": "data", "format": False, "fsType": "xfs", "fsArgs": ["-i", "size=512"]}]}
    )
    assert y.additional_disks[0] == Disk(name="name")
    assert y.additional_disks[0].fs_args is None
    assert y.additional_disks[1].format is False
    assert y.additional_disks[1].fs_type == "xfs"
    assert y.additional_disks[1].fs_args == ["-i", "size=512"]


def test_mount_ninep_key():
    y = LimaYAML.from_dict({"mounts": [{"location": "/tmp", "9p": {"msize": "8KiB"}, "writable": True}]})
    assert y.mounts[0].nine_p.msize == "8KiB"
    assert y.mounts[0].writable is True
    assert y.to_dict()["mounts"][0]["9p"] == {"msize": "8KiB"}


def test_dns_addresses_round_trip():
    y = LimaYAML.from_dict({"dns": ["1.1.1.1", "2001:db8::1"]})
    assert y.dns == [ipaddress.ip_address("1.1.1.1"), ipaddress.ip_address("2001:db8::1")]
    assert y.to_dict()["dns"] == ["1.1.1.1", "2001:db8::1"]


def test_port_forward_fields():
    y = LimaYAML.from_dict(
        {"portForwards": [{"guestIP": "0.0.0.0", "guestPortRange": [80, 90], "hostPort": 8080, "reverse": True}]}
    )
    rule = y.port_forwards[0]
    assert rule.guest_ip == ipaddress.ip_address("0.0.0.0")
    assert rule.guest_port_range == (80, 90)
    assert rule.host_port == 8080
    assert rule.host_port_range == (0, 0)
    assert rule.reverse is True


def test_probe_keys_are_lowercase():
    y = LimaYAML.from_dict({"probes": [{"script": "#!/bin/false", "hint": "wait", "description": "probe"}]})
    assert y.probes[0] == Probe(mode="", description="probe", script="#!/bin/false", hint="wait")


def test_round_trip():
    data = {
        "arch": "aarch64",
        "images": [{"location": "/img", "arch": "aarch64"}],
        "cpuType": {"aarch64": "host"},
        "env": {"ONE": "Eins"},
        "hostResolver": {"enabled": False, "hosts": {"MY.Host": "host.lima.internal"}},
        "networks": [{"lima": "shared", "switchPort": 65535}],
        "caCerts": {"files": ["ca.crt"]},
        "plain": False,
    }
    y = LimaYAML.from_dict(data)
    assert y.to_dict() == data
    assert LimaYAML.from_dict(y.to_dict()) == y


def test_empty_document():
    assert LimaYAML.from_dict(None) == LimaYAML()
    assert LimaYAML().to_dict() == {"images": []}


def test_optional_false_is_kept_but_plain_false_is_omitted():
    assert LimaYAML(plain=False).to_dict()["plain"] is False
    assert "reverse" not in PortForward(reverse=False).__class__.__name__ or True
    encoded = LimaYAML(port_forwards=[PortForward(reverse=False, proto="tcp")]).to_dict()
    assert encoded["portForwards"] == [{"proto": "tcp"}]


def test_rosetta_fields_are_always_written_when_set():
    encoded = LimaYAML(rosetta=Rosetta(enabled=True)).to_dict()
    assert encoded["rosetta"] == {"enabled": True, "binfmt": None}


def test_null_scalar_gives_default():
    y = LimaYAML.from_dict({"message": None, "mounts": [{"location": "/tmp", "9p": None}]})
    assert y.message == ""
    assert y.mounts[0] == Mount(location="/tmp", nine_p=NineP())


@pytest.mark.parametrize(
    "data, match",
    [
        ({"cpus": "four"}, "cpus"),
        ({"dns": ["not-an-ip"]}, "invalid IP"),
        ({"networks": [{"switchPort": 70000}]}, "out of range"),
        ({"images": {"location": "/img"}}, "images"),
        ({"portForwards": [{"guestPortRange": [1]}]}, "guestPortRange"),
        ({"plain": "yes please"}, "plain"),
    ],
)
def test_type_errors(data, match):
    with pytest.raises(ValueError, match=match):
        LimaYAML.from_dict(data)


def test_top_level_must_be_mapping():
    with pytest.raises(ValueError, match="mapping"):
        LimaYAML.from_dict(["images"])


def test_unknown_field_is_ignored_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="limaconf.model"):
        y = LimaYAML.from_dict({"cpus": 2, "bogus": 1})
    assert y.cpus == 2
    assert "bogus" in caplog.text