from unittest.mock import MagicMock, patch

from lms_progress.infrastructure.cache import (
    chapters_key, contents_key, delete_cache_pattern, get_cache, invalidate_course, set_cache,
)

@patch('lms_progress.infrastructure.cache.get_redis')
def test_get_cache_hit(mock_redis):
    mock_client = MagicMock()
    mock_client.get.return_value = '[{"id": "ch-1", "title": "Числа"}]'
    mock_redis.return_value = mock_client

    result = get_cache(chapters_key("course-1"))
    assert result == [{"id": "ch-1", "title": "Числа"}]
    mock_client.get.assert_called_once_with("course:course-1:chapters")

@patch('lms_progress.infrastructure.cache.get_redis')
def test_get_cache_miss(mock_redis):
    mock_client = MagicMock()
    mock_client.get.return_value = None
    mock_redis.return_value = mock_client

    assert get_cache("missing") is None

@patch('lms_progress.infrastructure.cache.get_redis')
def test_get_cache_error(mock_redis):
    mock_redis.side_effect = Exception("Redis error")
    assert get_cache("any") is None

@patch('lms_progress.infrastructure.cache.get_redis')
def test_set_cache_uses_default_ttl(mock_redis):
    mock_client = MagicMock()
    mock_redis.return_value = mock_client

    assert set_cache("k", {"a": 1}) is True
    key, ttl, payload = mock_client.setex.call_args.args
    assert key == "k"
    assert ttl == 300
    assert payload == '{"a": 1}'

@patch('lms_progress.infrastructure.cache.get_redis')
def test_set_cache_error(mock_redis):
    mock_redis.side_effect = Exception("Redis error")
    assert set_cache("k", {"a": 1}) is False

@patch('lms_progress.infrastructure.cache.get_redis')
def test_delete_cache_pattern(mock_redis):
    mock_client = MagicMock()
    mock_client.keys.return_value = ["key1", "key2", "key3"]
    mock_client.delete.return_value = 3
    mock_redis.return_value = mock_client

    assert delete_cache_pattern("key*") == 3
    mock_client.keys.assert_called_once_with("key*")

@patch('lms_progress.infrastructure.cache.get_redis')
def test_delete_cache_pattern_error(mock_redis):
    mock_redis.side_effect = Exception("Redis error")
    assert delete_cache_pattern("key*") == 0

@patch('lms_progress.infrastructure.cache.get_redis')
def test_invalidate_course_drops_structure_and_course_list(mock_redis):
    mock_client = MagicMock()
    mock_client.keys.side_effect = [[contents_key("c1", "ch1"), chapters_key("c1")], ["courses:list:10:0"]]
    mock_client.delete.side_effect = [2, 1]
    mock_redis.return_value = mock_client

    assert invalidate_course("c1") == 3
    patterns = [c.args[0] for c in mock_client.keys.call_args_list]
    assert patterns == ["course:c1:*", "courses:list:*"]
