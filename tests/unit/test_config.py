"""Unit tests for FeedConfig."""

import pytest

from privfeed.config import FeedConfig


def test_defaults():
    cfg = FeedConfig()
    assert cfg.tree_capacity == 1024
    assert cfg.max_epoch == 2000


@pytest.mark.parametrize("capacity", [0, 1, 3, 1000])
def test_capacity_must_be_power_of_two(capacity):
    with pytest.raises(ValueError, match="power of two"):
        FeedConfig(tree_capacity=capacity)


def test_max_epoch_must_be_positive():
    with pytest.raises(ValueError):
        FeedConfig(max_epoch=0)


def test_from_env_overrides():
    cfg = FeedConfig.from_env(
        {
            "PRIVFEED_TREE_CAPACITY": "16",
            "PRIVFEED_MAX_EPOCH": "50",
            "PRIVFEED_CEK_CACHE_TTL": "1.5",
            "PRIVFEED_CEK_CACHE_SIZE": "4",
        }
    )
    assert cfg == FeedConfig(tree_capacity=16, max_epoch=50, cek_cache_ttl=1.5, cek_cache_size=4)


def test_from_env_empty_uses_defaults():
    assert FeedConfig.from_env({}) == FeedConfig()


def test_from_env_rejects_garbage():
    with pytest.raises(ValueError):
        FeedConfig.from_env({"PRIVFEED_MAX_EPOCH": "lots"})
