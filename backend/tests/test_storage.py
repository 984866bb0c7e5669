import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from app.core.storage import (
    StorageError,
    build_object_path,
    download_bet_slip,
    split_image_ref,
    upload_bet_slip,
)


class ObjectPathTests(unittest.TestCase):
    def test_path_layout(self):
        path = build_object_path("image/png", now=datetime(2026, 3, 7, tzinfo=timezone.utc))
        year, month, name = path.split("/")
        self.assertEqual((year, month), ("2026", "03"))
        self.assertTrue(name.endswith(".png"))
        self.assertEqual(len(name), 32 + len(".png"))

    def test_paths_are_unique(self):
        self.assertNotEqual(build_object_path("image/jpeg"), build_object_path("image/jpeg"))

    def test_split_image_ref(self):
        self.assertEqual(split_image_ref("bet-slips/2026/03/abc.png"), ("bet-slips", "2026/03/abc.png"))
        for bad in ("", "no-slash", "/leading", "trailing/"):
            with self.assertRaises(StorageError):
                split_image_ref(bad)


class StorageClientTests(unittest.TestCase):
    def _client(self):
        client = MagicMock()
        bucket = client.storage.from_.return_value
        bucket.upload.return_value = SimpleNamespace(path="p", full_path="bet-slips/p")
        return client, bucket

    def test_upload_returns_bucket_path_ref(self):
        client, bucket = self._client()
        with patch("app.core.storage.get_storage_client", return_value=client):
            ref = upload_bet_slip(b"bytes", "image/png")
        self.assertTrue(ref.startswith("bet-slips/"))
        self.assertTrue(ref.endswith(".png"))
        client.storage.from_.assert_called_once_with("bet-slips")
        path, content, options = bucket.upload.call_args.args
        self.assertEqual(ref, f"bet-slips/{path}")
        self.assertEqual(content, b"bytes")
        self.assertEqual(options, {"content-type": "image/png"})

    def test_upload_failure_is_storage_error(self):
        client, bucket = self._client()
        bucket.upload.side_effect = RuntimeError("network down")
        with patch("app.core.storage.get_storage_client", return_value=client):
            with self.assertRaises(StorageError):
                upload_bet_slip(b"bytes", "image/png")

    def test_download(self):
        client, bucket = self._client()
        bucket.download.return_value = b"img"
        with patch("app.core.storage.get_storage_client", return_value=client):
            self.assertEqual(download_bet_slip("bet-slips/2026/03/a.png"), b"img")
        bucket.download.assert_called_once_with("2026/03/a.png")

    def test_download_empty_is_error(self):
        client, bucket = self._client()
        bucket.download.return_value = b""
        with patch("app.core.storage.get_storage_client", return_value=client):
            with self.assertRaises(StorageError):
                download_bet_slip("bet-slips/2026/03/a.png")

    def test_missing_credentials(self):
        with patch.dict("os.environ", {"SUPABASE_URL": "", "SUPABASE_KEY": "", "SUPABASE_SERVICE_ROLE_KEY": ""}):
            from app.core.config import get_settings

            get_settings.cache_clear()
            with self.assertRaises(StorageError):
                upload_bet_slip(b"bytes", "image/png")


if __name__ == "__main__":
    unittest.main()
