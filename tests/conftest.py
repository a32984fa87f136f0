"""
Shared fixtures.
"""

import copy

import pytest

from byomchat.config import DEFAULTS
from byomchat.gateway import RoomManager, SessionGateway
from byomchat.storage.memory import InMemoryConversationStore


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def gateway(store):
    return SessionGateway(store, RoomManager())


@pytest.fixture
def cfg_data(tmp_path):
    """Full config dict pointing every path into tmp_path."""
    cfg = copy.deepcopy(DEFAULTS)
    cfg["logging"]["level"] = "WARNING"
    cfg["static"]["dist_dirs"] = [str(tmp_path / "dist")]
    cfg["wiretap"]["path"] = str(tmp_path / "wire.jsonl")
    cfg["proxy"]["target"] = "http://upstream.test"
    return cfg
