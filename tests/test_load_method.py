"""
Unit Tests for the Load Method Switch
"""

import unittest

from kaos_sync.load_method import LoadMethod, LoadMethodConfig


class TestLoadMethod(unittest.TestCase):

    def test_from_string(self):
        self.assertEqual(LoadMethod.from_string('local'), LoadMethod.LOCAL)
        self.assertEqual(LoadMethod.from_string(' API_REST '), LoadMethod.API_REST)

    def test_from_string_falls_back_to_api_rest(self):
        """Test that unknown or empty names select the REST API."""
        self.assertEqual(LoadMethod.from_string('SELENIUM'), LoadMethod.API_REST)
        self.assertEqual(LoadMethod.from_string(None), LoadMethod.API_REST)


class TestLoadMethodConfig(unittest.TestCase):

    def test_switch_is_visible_on_next_read(self):
        config = LoadMethodConfig()
        self.assertEqual(config.get_method(), LoadMethod.API_REST)

        previous = config.set_method('LOCAL')

        self.assertEqual(previous, LoadMethod.API_REST)
        self.assertEqual(config.get_method(), LoadMethod.LOCAL)

    def test_set_unknown_method(self):
        config = LoadMethodConfig()
        with self.assertRaises(ValueError):
            config.set_method('CARRIER_PIGEON')
        self.assertEqual(config.get_method(), LoadMethod.API_REST)

    def test_from_config(self):
        self.assertEqual(LoadMethodConfig.from_config().get_method(), LoadMethod.API_REST)


if __name__ == '__main__':
    unittest.main()
