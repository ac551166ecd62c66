"""
Configuration loading and management for LDAP Auth Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults, plus small helpers for reading mapping and filter settings.
"""

import os
import re
import yaml
import logging
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

USERNAME_MARKER = '{USERNAME}'

POLICY_FLAGS = (
    'force_lowercase_username',
    'only_existing_users',
    'only_existing_groups',
    'do_not_synchronize_groups',
    'delete_user_if_no_local_groups',
    'delete_user_if_no_ldap_groups',
    'evaluate_groups_from_membership',
    'keep_local_groups',
)

POLICY_LISTS = ('required_groups', 'assign_groups', 'admin_groups')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'ldap.server_url': 'LDAP_SERVER_URL',
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
            raise ConfigurationError("Configuration root must be a mapping")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

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

        ldap_config = self.config.get('ldap', {})
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        users = self.config.get('users', {})
        if not users.get('basedn'):
            errors.append("Missing required field users.basedn")
        if USERNAME_MARKER not in users.get('filter', ''):
            errors.append(f"users.filter must contain the {USERNAME_MARKER} marker")

        for section in ('users', 'groups'):
            mapping = self.config.get(section, {}).get('mapping')
            if not isinstance(mapping, dict):
                errors.append(f"{section}.mapping must be a mapping of field to expression")

        policies = self.config.get('policies', {})
        for flag in POLICY_FLAGS:
            if not isinstance(policies.get(flag), bool):
                errors.append(f"policies.{flag} must be true or false")
        if policies.get('evaluate_groups_from_membership'):
            if not self.config.get('users', {}).get('mapping', {}).get('usergroup'):
                errors.append("policies.evaluate_groups_from_membership requires users.mapping.usergroup")

        processors = self.config.get('field_processors', {})
        if not isinstance(processors, dict):
            errors.append("field_processors must be a mapping of hook name to 'module:Class'")
        else:
            for hook_name, reference in processors.items():
                if not isinstance(reference, str) or ':' not in reference:
                    errors.append(f"field_processors.{hook_name} must look like 'module.path:ClassName'")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'use_ssl': str(self.config.get('ldap', {}).get('server_url', '')).lower().startswith('ldaps://'),
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
            'pass_through': False,
        }
        ldap_config = self._section('ldap')
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        users = self._section('users')
        users.setdefault('table', 'fe_users')
        users.setdefault('basedn', '')
        users.setdefault('filter', '(&(objectClass=inetOrgPerson)(uid={USERNAME}))')
        users.setdefault('mapping', {})

        groups = self._section('groups')
        groups.setdefault('table', 'fe_groups')
        groups.setdefault('basedn', '')
        groups.setdefault('filter', '(&(objectClass=groupOfNames)(member={USERDN}))')
        groups.setdefault('mapping', {})

        policies = self._section('policies')
        for flag in POLICY_FLAGS:
            policies.setdefault(flag, False)
        for key in POLICY_LISTS:
            policies[key] = split_list(policies.get(key))

        self.config.setdefault('field_processors', {})

        store = self._section('store')
        store.setdefault('path', 'records.yaml')
        store.setdefault('schemas', {})

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self._section('logging')
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

    def _section(self, name: str) -> Dict[str, Any]:
        if not isinstance(self.config.get(name), dict):
            self.config[name] = {}
        return self.config[name]


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


def split_list(value: Any) -> List[str]:
    """Normalize a list setting given either as a YAML list or a comma separated string."""
    if value is None or value == '':
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(',')
    return [str(item).strip() for item in items if str(item).strip()]


def is_enabled(config: Dict[str, Any], policy: str) -> bool:
    """Return whether a policy flag is switched on."""
    return bool(config.get('policies', {}).get(policy, False))


def get_pid(mapping: Optional[Dict[str, Any]]) -> int:
    """Return the parent container id configured as ``pid`` in a mapping, 0 otherwise."""
    if not mapping:
        return 0
    value = mapping.get('pid')
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def get_username_attribute(search_filter: str) -> str:
    """
    Return the attribute a filter compares against ``{USERNAME}``.

    For ``(&(objectClass=person)(uid={USERNAME}))`` this is ``uid``.
    """
    match = re.search(r'\(\s*([^()=\s]+)\s*=\s*\{USERNAME\}\s*\)', search_filter or '')
    return match.group(1).lower() if match else ''
