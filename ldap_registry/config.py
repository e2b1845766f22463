"""
Configuration loading and management for the LDAP registry.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, List, Optional

from ldap_registry.dn import InvalidDNError, parse_distinguished_name, split_search_bases

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


REGISTRY_DEFAULTS = {
    'active': True,
    'person_query': '(objectclass=inetOrgPerson)',
    'person_differential_query': '(&(objectclass=inetOrgPerson)(!(modifyTimestamp<={0})))',
    'group_query': '(objectclass=groupOfNames)',
    'group_differential_query': '(&(objectclass=groupOfNames)(!(modifyTimestamp<={0})))',
    'user_id_attribute': 'uid',
    'group_id_attribute': 'cn',
    'member_attribute': 'member',
    'person_type': 'inetOrgPerson',
    'group_type': 'groupOfNames',
    'modify_timestamp_attribute': 'modifyTimestamp',
    'timestamp_format': '%Y%m%d%H%M%SZ',
    'person_attribute_mapping': {},
    'person_attribute_defaults': {},
    'group_attribute_mapping': {},
    'group_attribute_defaults': {},
    'namespace_prefixes': {},
    'user_name_property': 'cm:userName',
    'authority_name_property': 'cm:authorityName',
    'query_batch_size': 0,
    'attribute_batch_size': 0,
    'error_on_missing_uid': False,
    'error_on_missing_gid': False,
    'error_on_missing_members': False,
    'error_on_duplicate_gid': False,
    'enable_progress_estimation': True,
}


def validate_search_bases(value: Any, setting: str) -> List[str]:
    """
    Split and parse a configured search base setting.

    Returns:
        The list of base DNs, in configured order

    Raises:
        ConfigurationError: If the setting is empty or any base is not a valid DN
    """
    bases = split_search_bases(value)
    if not bases:
        raise ConfigurationError(f"No search base configured for {setting}")
    for base in bases:
        try:
            parse_distinguished_name(base)
        except InvalidDNError as e:
            raise ConfigurationError(f"Invalid search base in {setting}: {e}") from e
    return bases


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        # LDAP connection
        ldap_config = self.config.get('ldap') or {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        # Search bases and queries
        registry_config = self.config.get('registry') or {}
        for field in ['user_search_base', 'group_search_base']:
            try:
                validate_search_bases(registry_config.get(field), f"registry.{field}")
            except ConfigurationError as e:
                errors.append(str(e))

        for field in ['person_differential_query', 'group_differential_query']:
            query = registry_config.get(field)
            if query is not None and str(query).count('{0}') != 1:
                errors.append(f"registry.{field} must contain exactly one {{0}} placeholder")

        for field in ['query_batch_size', 'attribute_batch_size']:
            value = registry_config.get(field)
            if value is not None and (not isinstance(value, int) or isinstance(value, bool) or value < 0):
                errors.append(f"registry.{field} must be a non-negative integer")

        for field in ['person_attribute_mapping', 'person_attribute_defaults',
                      'group_attribute_mapping', 'group_attribute_defaults', 'namespace_prefixes']:
            value = registry_config.get(field)
            if value is not None and not isinstance(value, dict):
                errors.append(f"registry.{field} must be a mapping")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        # LDAP defaults
        ldap_defaults = {
            'use_ssl': str(self.config['ldap']['server_url']).lower().startswith('ldaps://'),
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        registry_config = self.config.setdefault('registry', {})
        for key, value in REGISTRY_DEFAULTS.items():
            if registry_config.get(key) is None:
                registry_config[key] = value.copy() if isinstance(value, dict) else value

        # Logging defaults
        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        # Error handling defaults (connection establishment only)
        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
