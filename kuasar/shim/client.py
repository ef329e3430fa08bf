"""Connections to a guest's task server through a hybrid vsock unix socket."""

from __future__ import annotations

import asyncio
from typing import Optional, Tuple

from kuasar.shim.data import ShimError

HVSOCK_PREFIX = "hvsock://"
DEFAULT_CONNECT_TIMEOUT = 2.0
_RETRY_INTERVAL = 0.01

Streams = Tuple[asyncio.StreamReader, asyncio.StreamWriter]


def parse_hvsock_address(address: str) -> tuple[str, str]:
    """Split ``hvsock://<path>:<port>`` into its socket path and port."""
    if not address.startswith(HVSOCK_PREFIX):
        raise ShimError(f"task address {address} should have prefix hvsock")
    rest = address[len(HVSOCK_PREFIX):]
    parts = rest.split(":")
    if len(parts) < 2:
        raise ShimError(f"hvsock address {rest} should not less than 2")
    return parts[0], parts[1]


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return ""


async def hvsock_handshake(addr: str, port: object, read_size: int) -> Optional[Streams]:
    """Connect to ``addr`` and ask for ``port``.

    Return the open streams when the peer answers OK, None when it answers
    anything else or closes; raise ShimError on socket errors.
    """
    try:
        reader, writer = await asyncio.open_unix_connection(addr)
    except OSError as e:
        raise ShimError(f"can't connect: {e}") from e
    try:
        writer.write(f"CONNECT {port}\n".encode())
        await writer.drain()
    except OSError as e:
        writer.close()
        raise ShimError(f"failed to write CONNECT to hvsock: {e}") from e
    try:
        data = await reader.read(read_size)
    except OSError as e:
        writer.close()
        raise ShimError(f"failed to read from hvsock: {e}") from e
    if data and "OK" in _decode(data):
        return reader, writer
    writer.close()
    return None


async def connect_to_hvsocket(addr: str, port: object) -> Streams:
    """Keep asking ``addr`` for ``port`` until the peer accepts."""
    while True:
        streams = await hvsock_handshake(addr, port, 4096)
        if streams is not None:
            return streams


async def vsock_connect(address: str, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> Streams:
    """Connect to a task server at an hvsock address, retrying until ``timeout``."""
    addr, port = parse_hvsock_address(address)
    last_err = ShimError("")

    async def attempt() -> Streams:
        nonlocal last_err
        while True:
            try:
                return await connect_to_hvsocket(addr, port)
            except ShimError as e:
                last_err = e
            await asyncio.sleep(_RETRY_INTERVAL)

    try:
        return await asyncio.wait_for(attempt(), timeout)
    except asyncio.TimeoutError:
        raise ShimError(
            f"{timeout:g}s timeout connecting socket: {last_err}"
        ) from None