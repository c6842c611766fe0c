#!/usr/bin/env python3
"""
Unit tests for utilities and settings.
"""

import os
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from video2text.config import Settings, validate_settings
from video2text.errors import ClipboardUnavailable
from video2text.utils import copy_to_clipboard, extract_real_url, format_duration, sanitize_filename


class TestExtractRealUrl(unittest.TestCase):

    def test_doubled_scheme(self):
        self.assertEqual(extract_real_url('https://https://youtu.be/x'), 'https://youtu.be/x')
        self.assertEqual(extract_real_url('http://https://example.com/v?id=1'), 'https://example.com/v?id=1')

    def test_plain_url_is_stripped(self):
        self.assertEqual(extract_real_url('  https://youtu.be/x \n'), 'https://youtu.be/x')


class TestFormatting(unittest.TestCase):

    def test_format_duration(self):
        self.assertEqual(format_duration(0), "0s")
        self.assertEqual(format_duration(65), "1m 5s")
        self.assertEqual(format_duration(3600), "1h")

    def test_sanitize_filename(self):
        self.assertEqual(sanitize_filename('a/b:c?.srt'), 'a_b_c_.srt')
        self.assertEqual(sanitize_filename('///'), 'unnamed')


class TestClipboard(unittest.TestCase):

    def test_no_tool_installed(self):
        with self.assertRaises(ClipboardUnavailable):
            copy_to_clipboard('text', commands=[['definitely-not-a-clipboard-tool-x1']])

    def test_first_working_tool_is_used(self):
        with patch('video2text.utils.shutil.which', return_value='/usr/bin/tool'), \
                patch('video2text.utils.subprocess.run') as run:
            copy_to_clipboard('héllo', commands=[['wl-copy'], ['xclip']])
        run.assert_called_once()
        args, kwargs = run.call_args
        self.assertEqual(args[0], ['wl-copy'])
        self.assertEqual(kwargs['input'], 'héllo'.encode('utf-8'))

    def test_failing_tool_falls_through(self):
        with patch('video2text.utils.shutil.which', return_value='/usr/bin/tool'), \
                patch('video2text.utils.subprocess.run', side_effect=[OSError("no display"), None]) as run:
            copy_to_clipboard('x', commands=[['wl-copy'], ['xclip']])
        self.assertEqual(run.call_count, 2)


class TestSettings(unittest.TestCase):

    def test_defaults_are_valid(self):
        self.assertEqual(validate_settings(Settings()), [])

    def test_invalid_values(self):
        settings = Settings(tv_base='not a url', timeout=0, model='large', languages=[])
        problems = validate_settings(settings)
        self.assertEqual(len(problems), 4)

    def test_from_env(self):
        env = {
            'TV_BASE': 'https://example.com/api/tv',
            'VIDEO2TEXT_LANGUAGES': 'en, ja',
            'VIDEO2TEXT_MODEL': 'small',
            'VIDEO2TEXT_SUCCESS_THRESHOLD': '5',
            'S3_HISTORY_BUCKET': 'tasks',
        }
        with patch.dict(os.environ, env):
            settings = Settings.from_env()
        self.assertEqual(settings.tv_base, 'https://example.com/api/tv')
        self.assertEqual(settings.languages, ['en', 'ja'])
        self.assertEqual(settings.model, 'small')
        self.assertEqual(settings.success_threshold, 5)
        self.assertEqual(settings.history_bucket, 'tasks')


if __name__ == '__main__':
    unittest.main()
