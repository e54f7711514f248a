import os
import unittest
from unittest import mock

from dm_sync.config import ClientConfig, default_feed_url, load_client_config_from_env


class TestClientConfig(unittest.TestCase):
    def test_defaults_without_environment(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            config = load_client_config_from_env()

        self.assertEqual(config.api_url, "http://localhost:3001")
        self.assertEqual(config.feed_url, "ws://localhost:3001/v1/feed")
        self.assertEqual(config.storage_url, "http://localhost:3001/storage")
        self.assertEqual(config.attachment_bucket, "message-images")
        self.assertEqual(config.page_size, 50)
        self.assertFalse(config.merge_own_events)

    def test_environment_overrides(self):
        env = {
            "DM_SYNC_API_URL": "https://api.example.test/",
            "DM_SYNC_PAGE_SIZE": "20",
            "DM_SYNC_REQUEST_TIMEOUT_S": "2.5",
            "DM_SYNC_MERGE_OWN_EVENTS": "1",
            "DM_SYNC_ATTACHMENT_BUCKET": "uploads",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = load_client_config_from_env()

        self.assertEqual(config.api_url, "https://api.example.test")
        self.assertEqual(config.feed_url, "wss://api.example.test/v1/feed")
        self.assertEqual(config.page_size, 20)
        self.assertEqual(config.request_timeout_s, 2.5)
        self.assertTrue(config.merge_own_events)
        self.assertEqual(config.attachment_bucket, "uploads")

    def test_invalid_values_name_the_variable(self):
        cases = {
            "DM_SYNC_PAGE_SIZE": "0",
            "DM_SYNC_REQUEST_TIMEOUT_S": "soon",
            "DM_SYNC_MERGE_OWN_EVENTS": "yes",
        }
        for name, value in cases.items():
            with self.subTest(name=name):
                with mock.patch.dict(os.environ, {name: value}, clear=True):
                    with self.assertRaises(ValueError) as ctx:
                        load_client_config_from_env()
                self.assertIn(name, str(ctx.exception))

    def test_explicit_feed_url_is_kept(self):
        config = ClientConfig(api_url="http://a.test", feed_url="ws://feed.test/live")

        self.assertEqual(config.feed_url, "ws://feed.test/live")

    def test_default_feed_url_keeps_path_prefix(self):
        self.assertEqual(default_feed_url("http://h.test/api"), "ws://h.test/api/v1/feed")
