"""
Command line entry point for LDAP Auth Sync.

Wires the configuration, directory client, record store and synchronization
engine together and exposes authentication, single-user and bulk
synchronization, and a health check.
"""

import os
import sys
import json
import getpass
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from ldap_auth_sync.authentication import AuthenticationOrchestrator
from ldap_auth_sync.config import load_config, ConfigurationError
from ldap_auth_sync.errors import SyncError
from ldap_auth_sync.ldap_client import LDAPClient, LDAPConnectionError, LDAPQueryError
from ldap_auth_sync.logging_setup import setup_logging
from ldap_auth_sync.mapping import AttributeMapper, FieldProcessorRegistry
from ldap_auth_sync.store import YamlRecordStore, StoreError
from ldap_auth_sync.users import UserSynchronizer

logger = logging.getLogger(__name__)


class SyncApplication:
    """
    Application wiring for the command line.

    Each public command returns a process exit code:
    0 success, 1 authentication or synchronization failure, 2 configuration error,
    3 LDAP connection error, 4 unexpected error.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.config = None
        self.ldap_client = None
        self.store = None
        self.synchronizer = None
        self.orchestrator = None

        self.sync_stats = {
            'users_processed': 0,
            'users_synchronized': 0,
            'users_failed': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0,
        }

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))

    def _build_engine(self):
        """Create the directory client, record store and engine components."""
        store_config = self.config['store']
        self.ldap_client = LDAPClient(self.config['ldap'])
        self.store = YamlRecordStore(store_config['path'], store_config.get('schemas'))
        try:
            registry = FieldProcessorRegistry.from_config(self.config.get('field_processors'))
        except (ImportError, TypeError) as e:
            raise ConfigurationError(f"Failed to load field processors: {e}")
        mapper = AttributeMapper(registry)
        self.synchronizer = UserSynchronizer(self.ldap_client, self.store, self.config, mapper)
        self.orchestrator = AuthenticationOrchestrator(self.ldap_client, self.synchronizer, self.config)

    def _run(self, command) -> int:
        """Run a command with configuration, logging and error handling in place."""
        try:
            self._load_configuration()
            self._setup_logging()
            self._build_engine()
            return command()
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            return 3
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return 4
        finally:
            self._cleanup()

    def authenticate(self, username: str, password: Optional[str]) -> int:
        """Authenticate one user and print the outcome."""
        def command():
            result = self.orchestrator.authenticate(username, password)
            print(json.dumps({
                'success': result.success,
                'uid': result.user.uid if result.user else None,
                'diagnostic': result.diagnostic,
            }, indent=2))
            return 0 if result.success else 1
        return self._run(command)

    def sync_user(self, user_dn: str) -> int:
        """Synchronize a single directory user by DN without checking credentials."""
        def command():
            self.ldap_client.connect()
            try:
                user = self.synchronizer.synchronize(user_dn)
            except SyncError as e:
                logger.error(f"Failed to synchronize {user_dn}: {e}")
                return 1
            logger.info(f"Synchronized {user_dn} as local user {user.uid}")
            print(json.dumps({'uid': user.uid, 'username': user.username, 'deleted': user.deleted}, indent=2))
            return 0
        return self._run(command)

    def sync_all(self) -> int:
        """Synchronize every directory user below the user base DN."""
        def command():
            self.sync_stats['start_time'] = datetime.now()
            self.ldap_client.connect()
            logger.info("Starting LDAP user synchronization")

            for entry in self.synchronizer.get_directory_users():
                self.sync_stats['users_processed'] += 1
                try:
                    self.synchronizer.synchronize(entry.dn, directory_user=entry)
                    self.sync_stats['users_synchronized'] += 1
                except (SyncError, LDAPQueryError, StoreError) as e:
                    self.sync_stats['users_failed'] += 1
                    logger.error(f"Failed to synchronize {entry.dn}: {e}")

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()

            if self.sync_stats['users_failed'] > 0:
                logger.warning(f"Sync completed with {self.sync_stats['users_failed']} failures")
                return 1
            logger.info("Sync completed successfully")
            return 0
        return self._run(command)

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Users processed: {stats['users_processed']}")
        logger.info(f"Users synchronized: {stats['users_synchronized']}")
        logger.info(f"Users failed: {stats['users_failed']}")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the configuration, directory and record store.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        test_client = LDAPClient(self.config['ldap'])
        try:
            test_client.connect()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP connection successful'
            }
        except LDAPConnectionError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            test_client.disconnect()

        store_config = self.config['store']
        try:
            YamlRecordStore(store_config['path'], store_config.get('schemas'))
            health_status['checks']['store'] = {
                'status': 'pass',
                'message': f"Record store {store_config['path']} readable"
            }
        except StoreError as e:
            health_status['checks']['store'] = {
                'status': 'fail',
                'message': f'Record store unreadable: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.ldap_client:
            self.ldap_client.disconnect()


def main(argv=None):
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='LDAP Auth Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    subparsers = parser.add_subparsers(dest='command', required=True)

    auth_parser = subparsers.add_parser('authenticate', help='Authenticate a user and synchronize the local account')
    auth_parser.add_argument('--username', '-u', required=True)
    auth_parser.add_argument('--password-env', default='LDAP_USER_PASSWORD',
                             help='Environment variable holding the password (prompted when unset)')

    sync_parser = subparsers.add_parser('sync-user', help='Synchronize one directory user by DN')
    sync_parser.add_argument('dn')

    subparsers.add_parser('sync-all', help='Synchronize every directory user')
    subparsers.add_parser('health-check', help='Check configuration, directory and record store')

    args = parser.parse_args(argv)
    app = SyncApplication(config_path=args.config)

    if args.command == 'health-check':
        health_status = app.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.command == 'authenticate':
        password = os.getenv(args.password_env)
        if password is None:
            password = getpass.getpass(f"Password for {args.username}: ")
        sys.exit(app.authenticate(args.username, password))

    if args.command == 'sync-user':
        sys.exit(app.sync_user(args.dn))

    sys.exit(app.sync_all())


if __name__ == "__main__":
    main()
