"""
Shared fixtures: an in-memory backend split over two servers.

    cms       articles, tags        (no credentials)
    accounts  users                 (token "secret")
"""

import pytest

from entitymesh import Broker, Credentials, MemoryAdapter


ARTICLES = [
    {"id": 10, "title": "Hello", "status": "published", "author": 7, "rating": "4.5"},
    {"id": 11, "title": "Draft", "status": "draft", "author": [7, 8], "rating": "3"},
    {"id": 12, "title": "Orphan", "status": "published", "author": None, "rating": None},
]

USERS = [
    {"id": 7, "name": "Bob", "email": "bob@example.com"},
    {"id": 8, "name": "Ann", "email": "ann@example.com"},
]


@pytest.fixture
def cms_adapter():
    return MemoryAdapter({"articles": ARTICLES, "tags": []})


@pytest.fixture
def accounts_adapter():
    return MemoryAdapter({"users": USERS}, credentials=Credentials(token="secret"))


@pytest.fixture
def broker(cms_adapter, accounts_adapter):
    return Broker(
        {
            "servers": {
                "cms": {"url": "http://cms.local", "type": "memory", "entities": ["articles", "tags"]},
                "accounts": {"url": "http://accounts.local", "type": "memory", "token": "secret"},
            },
            "entities_by_server": {"accounts": ["users"]},
        },
        adapters={"cms": cms_adapter, "accounts": accounts_adapter},
        login_poll_interval=0.01,
    )
