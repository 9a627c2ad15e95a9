"""Shared pytest fixtures."""

from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from buildflow.auth.tokens import TokenCodec
from buildflow.storage.pool_manager import PoolManager, PoolSettings
from buildflow.storage.url import DatabaseUrl

TEST_JWT_SECRET = "unit-test-signing-secret-" + "0123456789abcdef" * 4

MAIN_URL = DatabaseUrl(
    scheme="postgresql",
    host="db.internal",
    port=5432,
    user="buildflow",
    password="p@ss:w/rd",
    database="buildflow_db",
)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-db",
        action="store_true",
        default=False,
        help="Run tests that require a live PostgreSQL instance",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    if config.getoption("--run-db"):
        return
    skip_db = pytest.mark.skip(reason="needs --run-db flag")
    for item in items:
        if "requires_db" in item.keywords:
            item.add_marker(skip_db)


def make_fake_engine() -> MagicMock:
    """AsyncEngine stand-in: disposable, with an idle queue pool."""
    engine = MagicMock()
    engine.dispose = AsyncMock()
    engine.pool.size.return_value = 5
    engine.pool.checkedout.return_value = 0
    engine.pool.checkedin.return_value = 0
    engine.pool.overflow.return_value = 0
    return engine


class CountingEngineFactory:
    """Engine factory that records every engine it builds."""

    def __init__(self) -> None:
        self.calls: list[tuple[DatabaseUrl, int]] = []
        self.engines: list[MagicMock] = []

    def __call__(
        self, url: DatabaseUrl, max_connections: int, options: PoolSettings
    ) -> MagicMock:
        self.calls.append((url, max_connections))
        engine = make_fake_engine()
        self.engines.append(engine)
        return engine

    @property
    def databases(self) -> list[str | None]:
        return [url.database for url, _ in self.calls]


@pytest.fixture()
def engine_factory() -> CountingEngineFactory:
    return CountingEngineFactory()


@pytest.fixture()
def make_pool_manager(
    engine_factory: CountingEngineFactory,
) -> Callable[..., PoolManager]:
    def _make(**options: object) -> PoolManager:
        return PoolManager(
            MAIN_URL,
            PoolSettings(**options),  # type: ignore[arg-type]
            engine_factory=engine_factory,
        )

    return _make


@pytest.fixture()
def token_codec() -> TokenCodec:
    return TokenCodec(TEST_JWT_SECRET)
