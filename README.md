# limaconf

`limaconf` reads the YAML description of a virtual machine instance, merges it
with optional default and override files, fills in every field that was left
out, and checks the result. It also handles the host side of networking: the
`networks.yaml` file, the command lines used to start and stop the network
daemons, a generated sudoers snippet, and the paths and addresses of user-mode
networks.

It is a library only; it has no command-line tool.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Loading an instance configuration

```python
from limaconf.load import load, LoadError
from limaconf.validate import validate, ValidationError

with open("lima.yaml", "rb") as fh:
    y = load(fh.read(), "/path/to/instance/lima.yaml", config_dir="/path/to/_config")

try:
    validate(y, warn=True, networks_config=None)
except ValidationError as exc:
    print(f"invalid configuration: {exc}")
```

`load` parses the main document (duplicate keys are rejected, unknown fields
are ignored with a warning), reads `default.yaml` and `override.yaml` from
`config_dir` when they exist (by default `$LIMA_HOME/_config`, or
`~/.lima/_config`), and calls `limaconf.fill.fill_default`. The result is not
validated. A malformed document raises `limaconf.load.LoadError`, a subclass
of `ValueError`; `limaconf.load.parse_yaml` parses a single document without
merging.

`fill_default(y, d, o, file_path)` fills `y` in place:

- scalar values come from the override file if set there, else from the main
  file, else from the default file, else from a built-in default;
- maps (`env`, `hostResolver.hosts`, `cpuType`) are merged default, main,
  override, later layers winning;
- lists such as images, additional disks, provisioning scripts, probes, port
  forwards, copy-to-host rules and containerd archives are concatenated with
  the override entries first, then the main file, then the defaults;
- networks are combined by interface name and mounts by location, in default,
  main, override order;
- `dns` is taken from the highest-priority layer that has any entries;
- CA files and certificates are appended default, main, override without
  duplicates.

When `plain` is true, mounts, port forwards, containerd and Rosetta are
switched off.

`validate(y, warn, networks_config)` raises `limaconf.validate.ValidationError`
on the first problem it finds. It consults a `NetworksConfig` for networks
that name a host network; when none is passed it loads `networks.yaml` from
`$LIMA_HOME/_config`. With `warn=True` it also logs warnings about
experimental settings.

The configuration is a `limaconf.model.LimaYAML`, made of plain dataclasses.
`LimaYAML.from_dict` builds one from a parsed YAML mapping and
`LimaYAML.to_dict` returns the mapping with unset fields left out.

`limaconf.resolve` holds the host-dependent pieces: architecture, OS and VM
type resolution, default CPU count, memory and disk size, a stable MAC address
per instance (`mac_address`), binary size formatting and parsing
(`bytes_size`, `ram_in_bytes`), and the `{{.Field}}` template expansion used in
port-forward sockets and copy-to-host paths.

## Host networks

```python
from limaconf.netconfig import load_config, config_file
from limaconf.sudoers import sudoers

config = load_config(config_file("/path/to/_config"))
config.check("shared")
print(config.start_cmd("shared", "socket_vmnet"))
print(sudoers(config))
```

If `networks.yaml` does not exist, `load_config` writes the built-in default
there first; a `user-v2` network is added unless one with a gateway is
defined. `NetworksConfig` gives the socket, PID file and log file paths of each
network, the account each daemon runs as, and the `mkdir`, start and stop
command lines.

`limaconf.netvalidate.validate_config` checks that every configured path and
its parents are owned by an administrator and not writable by others (macOS
only). `limaconf.sudoers.verify_sudo_access` compares an installed sudoers file
with `sudoers(config)`, or checks that `sudo` needs no password.

## User-mode networks and DNS

`limaconf.usernet` computes socket, PID and lease file paths, the subnet of a
network from its gateway and netmask, and the gateway and DNS addresses of a
subnet:

```python
from limaconf.usernet import gateway_ip, dns_ip

gateway_ip("192.168.5.0")  # "192.168.5.2"
dns_ip("192.168.5.0")      # "192.168.5.3"
```

`limaconf.dnshosts.extract_zones` turns a host-name map into `Zone` objects
with `Record` entries, following names that point at other names until an
address is found. `limaconf.resolvconf.search_domains` reads the host's search
domains from `/etc/resolv.conf` (none on Windows).

## Other helpers

- `limaconf.localpath.expand` expands `~` and `~/...` and makes a path
  absolute; `~user` paths raise `ValueError`.
- `limaconf.dirlock.dir_lock` is a context manager holding an exclusive lock
  on a directory; `with_dir_lock` calls a function under that lock.
- `limaconf.logjson.propagate_json` re-emits a JSON log line through a
  `logging.Logger` at its level (panic and fatal become errors), dropping lines
  older than a given start time.

## What it does not do

The package does not start, stop or manage virtual machines, disk images or
the network daemons themselves; it only produces and checks their
configuration and command lines. It does not run a user-mode network server
or talk to one.