#!/usr/bin/env python3
"""
Unit tests for configuration module.

Covers YAML loading, validation, defaults and environment variable overrides.
"""

import os
import sys
import tempfile
import yaml
import unittest
from unittest.mock import patch
from typing import Dict, Any

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_registry.config import ConfigLoader, ConfigurationError, load_config, validate_search_bases


class TestConfigLoader(unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'ldap': {
                'server_url': 'ldaps://ldap.example.com:636',
                'bind_dn': 'cn=sync,ou=services,dc=example,dc=com',
                'bind_password': 'password'
            },
            'registry': {
                'user_search_base': ['ou=people,dc=example,dc=com', 'ou=contractors,dc=example,dc=com'],
                'group_search_base': 'ou=groups,dc=example,dc=com',
                'query_batch_size': 500
            },
            'logging': {
                'level': 'DEBUG'
            }
        }
        self.temp_files = []

    def tearDown(self):
        """Remove temporary files."""
        for path in self.temp_files:
            if os.path.exists(path):
                os.unlink(path)

    def create_test_config(self, config_data: Any) -> str:
        """Create a temporary config file with the given data."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            yaml.safe_dump(config_data, f)
        self.temp_files.append(f.name)
        return f.name

    def test_valid_config(self):
        """Test loading a valid configuration."""
        config = ConfigLoader(self.create_test_config(self.valid_config)).load()

        self.assertEqual(config['ldap']['server_url'], 'ldaps://ldap.example.com:636')
        self.assertEqual(config['registry']['query_batch_size'], 500)
        self.assertEqual(config['logging']['level'], 'DEBUG')

    def test_defaults_applied(self):
        """Test that optional settings get their defaults."""
        config = load_config(self.create_test_config(self.valid_config))

        self.assertTrue(config['ldap']['use_ssl'])
        self.assertFalse(config['ldap']['start_tls'])
        self.assertTrue(config['ldap']['verify_ssl'])

        registry = config['registry']
        self.assertEqual(registry['person_query'], '(objectclass=inetOrgPerson)')
        self.assertEqual(registry['group_differential_query'],
                         '(&(objectclass=groupOfNames)(!(modifyTimestamp<={0})))')
        self.assertEqual(registry['user_id_attribute'], 'uid')
        self.assertEqual(registry['group_id_attribute'], 'cn')
        self.assertEqual(registry['timestamp_format'], '%Y%m%d%H%M%SZ')
        self.assertEqual(registry['attribute_batch_size'], 0)
        self.assertFalse(registry['error_on_missing_members'])
        self.assertTrue(registry['enable_progress_estimation'])
        self.assertTrue(registry['active'])
        self.assertEqual(registry['person_attribute_mapping'], {})

        self.assertEqual(config['logging']['console_level'], 'WARNING')
        self.assertEqual(config['error_handling']['max_retries'], 3)
        self.assertEqual(config['error_handling']['retry_wait_seconds'], 5)

    def test_plain_ldap_url(self):
        """Test that ldap:// URLs do not default to SSL."""
        self.valid_config['ldap']['server_url'] = 'ldap://ldap.example.com:389'
        config = load_config(self.create_test_config(self.valid_config))
        self.assertFalse(config['ldap']['use_ssl'])

    def test_default_dicts_not_shared(self):
        """Test that mapping defaults are copied per load."""
        first = load_config(self.create_test_config(self.valid_config))
        first['registry']['person_attribute_mapping']['cm:email'] = 'mail'
        second = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(second['registry']['person_attribute_mapping'], {})

    def test_file_not_found(self):
        """Test a missing configuration file."""
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader('/nonexistent/config.yaml').load()
        self.assertIn('not found', str(context.exception))

    def test_invalid_yaml(self):
        """Test a file that is not valid YAML."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write('ldap: [unclosed\n')
        self.temp_files.append(f.name)
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(f.name).load()
        self.assertIn('Invalid YAML', str(context.exception))

    def test_not_a_mapping(self):
        """Test a YAML document that is a list."""
        with self.assertRaises(ConfigurationError):
            ConfigLoader(self.create_test_config(['a', 'b'])).load()

    def test_missing_required_fields(self):
        """Test that every missing field is reported at once."""
        config_data = {'registry': {}}
        with self.assertRaises(ConfigurationError) as context:
            ConfigLoader(self.create_test_config(config_data)).load()

        message = str(context.exception)
        self.assertIn('server_url', message)
        self.assertIn('bind_dn', message)
        self.assertIn('bind_password', message)
        self.assertIn('registry.user_search_base', message)
        self.assertIn('registry.group_search_base', message)

    def test_invalid_search_base(self):
        """Test that a malformed base DN is a configuration error."""
        self.valid_config['registry']['user_search_base'] = ['ou=people,dc=example,dc=com', 'people']
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(self.valid_config))
        self.assertIn('registry.user_search_base', str(context.exception))

    def test_differential_query_placeholder(self):
        """Test that differential queries need exactly one placeholder."""
        self.valid_config['registry']['person_differential_query'] = '(objectclass=inetOrgPerson)'
        with self.assertRaises(ConfigurationError) as context:
            load_config(self.create_test_config(self.valid_config))
        self.assertIn('person_differential_query', str(context.exception))

    def test_negative_batch_size(self):
        """Test that batch sizes must be non-negative integers."""
        self.valid_config['registry']['attribute_batch_size'] = -1
        with self.assertRaises(ConfigurationError):
            load_config(self.create_test_config(self.valid_config))

        self.valid_config['registry']['attribute_batch_size'] = 'lots'
        with self.assertRaises(ConfigurationError):
            load_config(self.create_test_config(self.valid_config))

    def test_mapping_must_be_dict(self):
        """Test that attribute mappings must be mappings."""
        self.valid_config['registry']['person_attribute_mapping'] = ['mail']
        with self.assertRaises(ConfigurationError):
            load_config(self.create_test_config(self.valid_config))

    @patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'from-environment'})
    def test_env_var_overrides(self):
        """Test environment variable override of the bind password."""
        config = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(config['ldap']['bind_password'], 'from-environment')

    @patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'from-environment'})
    def test_env_var_fills_missing_password(self):
        """Test that the environment can supply a password absent from the file."""
        del self.valid_config['ldap']['bind_password']
        config = load_config(self.create_test_config(self.valid_config))
        self.assertEqual(config['ldap']['bind_password'], 'from-environment')

    def test_config_path_from_environment(self):
        """Test that CONFIG_PATH is used when no path is given."""
        path = self.create_test_config(self.valid_config)
        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            self.assertEqual(ConfigLoader().config_path, path)


class TestValidateSearchBases(unittest.TestCase):
    """Test cases for validate_search_bases."""

    def test_list(self):
        """Test a list of bases."""
        self.assertEqual(validate_search_bases(['ou=a,dc=x', 'ou=b,dc=x'], 'bases'), ['ou=a,dc=x', 'ou=b,dc=x'])

    def test_colon_separated(self):
        """Test a colon-separated string."""
        self.assertEqual(validate_search_bases('ou=a,dc=x:ou=b,dc=x', 'bases'), ['ou=a,dc=x', 'ou=b,dc=x'])

    def test_empty(self):
        """Test missing bases."""
        for value in (None, [], '', ' : '):
            with self.subTest(value=value):
                with self.assertRaises(ConfigurationError):
                    validate_search_bases(value, 'bases')

    def test_invalid(self):
        """Test a base that is not a DN."""
        with self.assertRaises(ConfigurationError):
            validate_search_bases(['dc=x', 'nonsense'], 'bases')


if __name__ == '__main__':
    unittest.main()
