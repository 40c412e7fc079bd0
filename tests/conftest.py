from __future__ import annotations

import ssl

import pytest
import pytest_asyncio

from memorystore_iam.cache import PoolConfig

from .certs import PkiFiles, build_pki
from .fakes import CountingCredentialProvider, FakeIamClient, FakeRedisServer


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep MEMORYSTORE_IAM_* variables and any .env file out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith("MEMORYSTORE_IAM_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


@pytest.fixture(scope="session")
def pki(tmp_path_factory) -> PkiFiles:
    return build_pki(tmp_path_factory.mktemp("pki"))


@pytest.fixture
def iam_client() -> FakeIamClient:
    return FakeIamClient()


@pytest.fixture
def credential_provider() -> CountingCredentialProvider:
    return CountingCredentialProvider()


@pytest.fixture
def pool_config_for():
    """Build a PoolConfig aimed at a fake server, with fast failure settings."""

    def _make(server: FakeRedisServer, **overrides) -> PoolConfig:
        values = dict(
            host="127.0.0.1",
            port=server.port,
            max_connections=10,
            min_idle=0,
            idle_timeout=60.0,
            pool_timeout=2.0,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            command_retries=0,
        )
        values.update(overrides)
        return PoolConfig(**values)

    return _make


@pytest_asyncio.fixture
async def fake_redis():
    server = await FakeRedisServer().start()
    yield server
    await server.stop()


def _server_context(pki: PkiFiles) -> ssl.SSLContext:
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(pki.server_cert_path, pki.server_key_path)
    return context


@pytest_asyncio.fixture
async def tls_redis(pki: PkiFiles):
    server = await FakeRedisServer(ssl_context=_server_context(pki)).start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def tls_cluster_redis(pki: PkiFiles):
    server = await FakeRedisServer(ssl_context=_server_context(pki), cluster=True).start()
    yield server
    await server.stop()
