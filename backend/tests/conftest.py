"""Shared fixtures for the synchronization core tests."""

import pytest

from helpers import FakeMessagingServer
from messaging_models import MessagingRole
from threadsync.cache import CacheStore
from threadsync.config import Settings
from threadsync.realtime import ChangeFeed


@pytest.fixture
def config() -> Settings:
    return Settings(
        read_receipt_delay=0.02,
        business_scope_retry_attempts=3,
        business_scope_retry_backoff=0.01,
        conversations_dedupe_interval=5.0,
        messages_dedupe_interval=2.0,
    )


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def cache() -> CacheStore:
    return CacheStore()


@pytest.fixture
def user_server() -> FakeMessagingServer:
    return FakeMessagingServer(viewer_id="user-1", viewer_role=MessagingRole.USER)


@pytest.fixture
def business_server() -> FakeMessagingServer:
    server = FakeMessagingServer(viewer_id="owner-1", viewer_role=MessagingRole.BUSINESS)
    server.owned_business_ids = {"biz-1"}
    return server
