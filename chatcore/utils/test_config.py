import os
import shutil
import tempfile
import unittest
from unittest import mock

from chatcore.utils.config import Settings, load_settings


class TestLoadSettings(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.env_file = os.path.join(self.temp_dir, '.env')
        with open(self.env_file, 'w') as f:
            f.write('CHAT_PORT=6000\nCHAT_HOST=10.0.0.1\nCHAT_JWT_SECRET=from-file\n')

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_env_file_fills_defaults_without_overriding(self):
        with mock.patch.dict(os.environ, {'CHAT_HOST': '0.0.0.0'}, clear=True):
            settings = load_settings(self.env_file)
        self.assertEqual(settings.host, '0.0.0.0')
        self.assertEqual(settings.port, 6000)
        self.assertEqual(settings.jwt_secret, 'from-file')
        self.assertEqual(settings.recall_window_seconds, Settings.recall_window_seconds)

    def test_defaults(self):
        empty = os.path.join(self.temp_dir, 'empty.env')
        open(empty, 'w').close()
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings(empty)
        self.assertEqual(settings, Settings())


if __name__ == '__main__':
    unittest.main()
