"""
Fakes for the two external services: the IAM Credentials API and a Redis server.
"""

from __future__ import annotations

import asyncio
import ssl
import threading
import time
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional, Tuple, Union

from redis.credentials import CredentialProvider

from memorystore_iam.auth import Credential


class FakeIamClient:
    """
    Stands in for iam_credentials_v1.IAMCredentialsClient.

    Returns token-1, token-2, ... or raises `error` when set.
    """

    def __init__(self, *, error: Optional[Exception] = None, delay: float = 0.0, token_prefix: str = "token"):
        self.error = error
        self.delay = delay
        self.token_prefix = token_prefix
        self.requests: List[object] = []
        self.timeouts: List[Optional[float]] = []
        self.retries: List[object] = []
        self.closed = False
        self.transport = SimpleNamespace(close=self._close)
        self._lock = threading.Lock()

    def _close(self) -> None:
        self.closed = True

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requests)

    def generate_access_token(self, request=None, *, retry=None, timeout=None):
        with self._lock:
            self.requests.append(request)
            self.timeouts.append(timeout)
            self.retries.append(retry)
            count = len(self.requests)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(access_token=f"{self.token_prefix}-{count}")


class CountingCredentialProvider(CredentialProvider):
    """Credential provider stub that counts how often the pool asks for credentials."""

    def __init__(self) -> None:
        self.calls = 0

    def get_credentials(self) -> Credential:
        self.calls += 1
        return Credential("default", f"token-{self.calls}")

    async def get_credentials_async(self) -> Credential:
        return self.get_credentials()


# COMMAND entries (name, arity, flags, first key, last key, step) used by
# redis-py's cluster client to find the key of a command.
_COMMAND_TABLE = [
    ["get", 2, ["readonly", "fast"], 1, 1, 1],
    ["set", -3, ["write", "denyoom"], 1, 1, 1],
    ["ping", -1, ["fast"], 0, 0, 0],
]

RespValue = Union[None, int, str, bytes, list, dict]


def encode(value: RespValue, *, resp3: bool = False) -> bytes:
    """Encode a reply; dicts become RESP3 maps or flat RESP2 arrays."""
    if value is None:
        return b"_\r\n" if resp3 else b"$-1\r\n"
    if isinstance(value, int):
        return b":%d\r\n" % value
    if isinstance(value, str):
        value = value.encode()
    if isinstance(value, bytes):
        return b"$%d\r\n%s\r\n" % (len(value), value)
    if isinstance(value, dict):
        if resp3:
            items = b"".join(encode(k, resp3=True) + encode(v, resp3=True) for k, v in value.items())
            return b"%%%d\r\n%s" % (len(value), items)
        value = [item for pair in value.items() for item in pair]
    return b"*%d\r\n%s" % (len(value), b"".join(encode(item, resp3=resp3) for item in value))


class FakeRedisServer:
    """
    Minimal Redis server on asyncio streams.

    Understands AUTH, HELLO (2 or 3, with AUTH), PING, SET and GET, and
    answers +OK to anything else (CLIENT SETINFO, SELECT, ...). Records
    every authentication so tests can match credentials against
    connections. With cluster=True it also answers CLUSTER SLOTS (one
    shard owning every slot, served by this process) and COMMAND.
    """

    def __init__(
        self,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        accept_password: Optional[Callable[[str], bool]] = None,
        cluster: bool = False,
    ):
        self.ssl_context = ssl_context
        self.accept_password = accept_password
        self.cluster = cluster
        self.store: Dict[bytes, bytes] = {}
        self.connections_opened = 0
        self.auth_attempts: List[Tuple[str, str]] = []
        self.commands: List[str] = []
        self.port: int = 0
        self._server: Optional[asyncio.base_events.Server] = None
        self._writers: List[asyncio.StreamWriter] = []

    async def start(self) -> "FakeRedisServer":
        self._server = await asyncio.start_server(
            self._handle, "127.0.0.1", 0, ssl=self.ssl_context
        )
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def drop_connections(self) -> None:
        """Close every client socket, like a server-side idle timeout."""
        for writer in self._writers:
            writer.close()
        self._writers.clear()
        await asyncio.sleep(0.01)

    async def _read_command(self, reader: asyncio.StreamReader) -> Optional[List[bytes]]:
        line = await reader.readline()
        if not line:
            return None
        if not line.startswith(b"*"):
            raise ValueError(f"unexpected RESP header {line!r}")
        args = []
        for _ in range(int(line[1:].strip())):
            header = await reader.readline()
            length = int(header[1:].strip())
            data = await reader.readexactly(length + 2)
            args.append(data[:-2])
        return args

    def _authenticate(self, username: str, password: str) -> Optional[bytes]:
        self.auth_attempts.append((username, password))
        if self.accept_password is not None and not self.accept_password(password):
            return b"-WRONGPASS invalid username-password pair or user is disabled.\r\n"
        return None

    def _hello(self, args: List[bytes], session: Dict[str, bool]) -> bytes:
        protocol = int(args[1]) if len(args) > 1 else 2
        if protocol not in (2, 3):
            return b"-NOPROTO unsupported protocol version\r\n"
        rest = [a.decode() for a in args[2:]]
        if "AUTH" in (a.upper() for a in rest):
            index = [a.upper() for a in rest].index("AUTH")
            rejected = self._authenticate(rest[index + 1], rest[index + 2])
            if rejected is not None:
                return rejected
        session["resp3"] = protocol == 3
        return encode(
            {
                "server": "redis",
                "version": "7.2.0",
                "proto": protocol,
                "id": self.connections_opened,
                "mode": "cluster" if self.cluster else "standalone",
                "role": "master",
                "modules": [],
            },
            resp3=session["resp3"],
        )

    def _dispatch(self, args: List[bytes], session: Dict[str, bool]) -> bytes:
        name = args[0].decode().upper()
        self.commands.append(name)
        resp3 = session["resp3"]

        if name == "AUTH":
            if len(args) == 3:
                username, password = args[1].decode(), args[2].decode()
            else:
                username, password = "default", args[1].decode()
            return self._authenticate(username, password) or b"+OK\r\n"
        if name == "HELLO":
            return self._hello(args, session)
        if name == "PING":
            return b"+PONG\r\n"
        if name == "SET":
            self.store[args[1]] = args[2]
            return b"+OK\r\n"
        if name == "GET":
            return encode(self.store.get(args[1]), resp3=resp3)
        if name == "CLUSTER" and len(args) > 1 and args[1].upper() == b"SLOTS":
            if not self.cluster:
                return b"-ERR This instance has cluster support disabled\r\n"
            return encode([[0, 16383, ["127.0.0.1", self.port, "0" * 40]]], resp3=resp3)
        if name == "COMMAND" and len(args) == 1 and self.cluster:
            return encode(_COMMAND_TABLE, resp3=resp3)
        return b"+OK\r\n"

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections_opened += 1
        self._writers.append(writer)
        session = {"resp3": False}
        try:
            while True:
                args = await self._read_command(reader)
                if args is None:
                    break
                writer.write(self._dispatch(args, session))
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError, ssl.SSLError):
            pass
        finally:
            writer.close()
