"""
Authentication entry point.

Validates credentials against the directory and, on success, synchronizes the
local user. Every call returns its own AuthenticationResult, including the
diagnostic of the attempt.
"""

import logging
from typing import Any, Dict, Optional

from ldap_auth_sync.config import is_enabled
from ldap_auth_sync.errors import CredentialsRejected, DirectoryUnavailable, RequiredGroupsMissing, SyncError
from ldap_auth_sync.ldap_client import LDAPConnectionError, LDAPQueryError
from ldap_auth_sync.logging_setup import security_logger
from ldap_auth_sync.models import AuthenticationResult
from ldap_auth_sync.users import UserSynchronizer

logger = logging.getLogger(__name__)


class AuthenticationOrchestrator:
    """
    Authenticates users against the directory and provisions their local account.

    The orchestrator holds no per-attempt state. A directory client connection is
    not safe to share between threads, so concurrent callers should use one
    orchestrator (and client) per thread.
    """

    def __init__(self, directory, synchronizer: UserSynchronizer, config: Dict[str, Any]):
        self.directory = directory
        self.synchronizer = synchronizer
        self.config = config

    def authenticate(self, username: Optional[str], password: Optional[str]) -> AuthenticationResult:
        """
        Authenticate a user and synchronize the local record.

        Args:
            username: Login name
            password: Password to verify against the directory

        Returns:
            AuthenticationResult; ``user`` is the synchronized local user, or None for
            failures and pass-through successes
        """
        if username and is_enabled(self.config, 'force_lowercase_username'):
            username = username.lower()

        if not username:
            return self._fail(username, CredentialsRejected('Username is empty'), 'Username is empty')

        try:
            self.directory.connect()
        except LDAPConnectionError as e:
            diagnostic = f'Cannot connect to LDAP: {e}'
            return self._fail(username, DirectoryUnavailable(diagnostic), diagnostic)

        try:
            return self._authenticate_connected(username, password)
        except Exception as e:
            logger.error(f'Unexpected error while authenticating "{username}": {e}', exc_info=True)
            return self._fail(username, SyncError(str(e)), '')

    def _authenticate_connected(self, username: str, password: Optional[str]) -> AuthenticationResult:
        users_config = self.config['users']
        try:
            user_dn = self.directory.valid_user(username, password, users_config['basedn'], users_config['filter'])
        except LDAPQueryError as e:
            diagnostic = str(e)
            return self._fail(username, DirectoryUnavailable(diagnostic), diagnostic)

        if user_dn is True:
            logger.info(f'Successfully authenticated user "{username}" with LDAP (pass-through)')
            security_logger.log_authentication_attempt(username, True)
            return AuthenticationResult(success=True)

        if not user_dn:
            diagnostic = self.directory.get_last_bind_diagnostic() or ''
            if diagnostic:
                logger.info(diagnostic)
            logger.info(f'Could not authenticate user "{username}" with LDAP')
            error = CredentialsRejected(diagnostic or f'Could not authenticate user "{username}"')
            return self._fail(username, error, diagnostic)

        logger.info(f'Successfully authenticated user "{username}" with LDAP')

        try:
            user = self.synchronizer.synchronize(user_dn, username)
        except RequiredGroupsMissing as e:
            return self._fail(username, e, str(e))
        except SyncError as e:
            logger.info(f'Could not synchronize user "{username}": {e}')
            return self._fail(username, e, '')
        except LDAPQueryError as e:
            logger.warning(f'Directory query failed while synchronizing "{username}": {e}')
            return self._fail(username, DirectoryUnavailable(str(e)), '')

        security_logger.log_authentication_attempt(username, True)
        return AuthenticationResult(success=True, user=user)

    def _fail(self, username: Optional[str], error: SyncError, diagnostic: str) -> AuthenticationResult:
        self.directory.disconnect()
        security_logger.log_authentication_attempt(username or '', False, diagnostic or str(error))
        return AuthenticationResult(success=False, diagnostic=diagnostic, error=error)
