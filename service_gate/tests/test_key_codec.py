"""
Unit tests for cache key derivation.
"""

import pytest

from service_gate.app.caching.keys import KeyCodec


class TestKeyCodec:
    """Test cases for KeyCodec."""

    @pytest.fixture
    def codec(self):
        return KeyCodec()

    def test_query_order_does_not_matter(self, codec):
        first = codec.for_request("GET", "/api/v1/items", "a=1&b=2")
        second = codec.for_request("GET", "/api/v1/items", "b=2&a=1")
        assert first == second

    def test_mapping_and_string_queries_agree(self, codec):
        assert codec.for_request("GET", "/x", {"b": "2", "a": "1"}) == codec.for_request("GET", "/x", "?a=1&b=2")

    def test_repeated_parameters_keep_relative_order(self, codec):
        first = codec.for_request("GET", "/x", "tag=a&tag=b")
        second = codec.for_request("GET", "/x", "tag=b&tag=a")
        assert first != second

    def test_method_is_case_insensitive(self, codec):
        assert codec.for_request("get", "/x") == codec.for_request("GET", "/x")

    def test_different_requests_differ(self, codec):
        assert codec.for_request("GET", "/x") != codec.for_request("GET", "/y")
        assert codec.for_request("GET", "/x") != codec.for_request("POST", "/x")
        assert codec.for_request("GET", "/x", "a=1") != codec.for_request("GET", "/x", "a=2")

    def test_key_layout(self, codec):
        key = codec.for_request("GET", "/x", route_class="items")
        namespace, route_class, digest = key.split(":")
        assert namespace == "cache"
        assert route_class == "items"
        assert len(digest) == 32

    def test_for_identity(self, codec):
        key = codec.for_identity("user", 42)
        assert key.startswith("cache:custom:")
        assert key == codec.for_identity("user", "42")
        assert codec.for_identity("user", 42, route_class="profile").startswith("cache:profile:")

    def test_namespace(self):
        assert KeyCodec(namespace="other").for_request("GET", "/x").startswith("other:default:")
