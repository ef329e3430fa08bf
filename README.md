# kuasar

Building blocks for running containers inside sandboxes on Linux: mount
handling, shared storage bookkeeping, a quark sandboxer, and the data
records and hybrid-vsock connection helpers a containerd shim needs.

## Install

```
pip install .
pip install ".[test]"   # with the test dependencies
```

## Modules

- `kuasar.common` – the `Mount` record (`from_dict`, `to_dict`) and the shared
  names `KUASAR_STATE_DIR`, `IO_FILE_PREFIX`, `STORAGE_FILE_PREFIX` and
  `SHARED_DIR_SUFFIX`.
- `kuasar.mount` – `parse_options` splits mount options into `MountFlag` values
  and filesystem data options; `mount`, `bind_mount` and `unmount` run the
  `mount` and `umount` commands; `get_mount_type` reads the filesystem type of a
  mount point from `/proc/self/mountstats` (or a file you name). Failures raise
  `MountError`.
- `kuasar.storage` – `Storage`, a shared storage entry with per-container
  reference counting (`refer`, `defer`, `ref_count`), `is_for_mount`, and
  dictionary round trips (`to_dict`, `from_dict`).
- `kuasar.quark.utils` – `write_file_atomic`, `mount_rootfs`, `bind_mount`
  (creates the target file or directory first) and `cleanup_mounts`, which
  detaches every mount under a directory as listed in `/proc/mounts`.
- `kuasar.quark.sandbox` – `QuarkSandboxer` and `QuarkSandbox`: create a sandbox
  bundle and its `config.json` (building a spec from the pod config with
  `create_spec` when none is given), start the `quark` runtime and read its pid,
  stop, delete, and append, update or remove containers. Unknown ids raise
  `NotFoundError`. `to_any` wraps a spec with its type URL.
- `kuasar.shim.data` – `SandboxData`, `ContainerData` and `ProcessData`, the
  records the shim keeps per sandbox; lookups of unknown ids raise `ShimError`.
- `kuasar.shim.client` – `parse_hvsock_address` for `hvsock://path:port`
  addresses, `connect_to_hvsocket` (the `CONNECT <port>` handshake, retried until
  the peer answers OK) and `vsock_connect`, which gives up with `ShimError` after
  a timeout (2 seconds by default).

## Example

```python
from kuasar.mount import parse_options, MountFlag

flags, data = parse_options(["ro", "nosuid", "size=64m"])
assert flags & MountFlag.MS_RDONLY
assert flags & MountFlag.MS_NOSUID
assert data == ["size=64m"]
```

Mounting and unmounting need root privileges on Linux.

## What the package does not do

- It has no command to start: the quark sandboxer is a library class, and
  nothing here serves it to containerd.
- There is no containerd shim service: no container I/O transports, no relay
  of sandbox or task requests to a sandboxer or task server. `kuasar.shim`
  holds only the data records and the vsock connection helpers.

## Tests

```
pytest
```