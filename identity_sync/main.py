"""
Service wiring and command line entry point for Identity Sync.

This module builds the readers, credential cache, engine and scheduler from
configuration, and runs either a single reconciliation cycle or the
periodic service.
"""

import sys
import json
import signal
import logging
import argparse
from datetime import datetime
from typing import Dict, Any, Optional

from identity_sync.config import load_config, ConfigurationError
from identity_sync.credentials import CredentialCache
from identity_sync.engine import ReconciliationEngine
from identity_sync.exceptions import SyncError
from identity_sync.identity_api import IdentityAPIClient, DatastoreReader
from identity_sync.ldap_client import DirectoryReader
from identity_sync.logging_setup import setup_logging
from identity_sync.models import CycleResult
from identity_sync.notifications import notify_cycle_result, send_test_notification
from identity_sync.scheduler import Scheduler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_CONFIG = 2
EXIT_ABORTED = 3


class SyncService:
    """
    Builds and runs the identity sync components.

    Components are created lazily by load(), so a service can be constructed
    and then health-checked or run.
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        """
        Initialize sync service.

        Args:
            config_path: Path to configuration file
            config: Already loaded configuration, skips file loading
        """
        self.config_path = config_path
        self.config = config
        self.api_client = None
        self.credentials = None
        self.directory_reader = None
        self.datastore_reader = None
        self.engine = None
        self.scheduler = None

    def load(self):
        """Load configuration, set up logging and build components."""
        if self.config is None:
            self.config = load_config(self.config_path)
        logging_config = self.config.get('logging', {})
        try:
            setup_logging(logging_config)
        except OSError as e:
            raise ConfigurationError(f"Cannot write logs to {logging_config.get('log_dir', 'logs')}: {e}")

        api_config = self.config['identity_api']
        sync_config = self.config.get('sync', {})

        self.api_client = IdentityAPIClient(api_config)
        self.credentials = CredentialCache(
            self.api_client.issue_token,
            expiry_margin_seconds=api_config.get('expiry_margin_seconds', 0)
        )
        self.directory_reader = DirectoryReader(self.config['ldap'])
        self.datastore_reader = DatastoreReader(self.api_client, self.credentials)
        self.engine = ReconciliationEngine(
            self.directory_reader,
            self.datastore_reader,
            self.api_client,
            self.credentials,
            creation_workers=sync_config.get('creation_workers', 4)
        )
        self.scheduler = Scheduler(self.engine.run_cycle, on_result=self.handle_result)
        logger.debug("Components initialized")

    def handle_result(self, result: CycleResult):
        """Send notifications for a finished cycle; never raises."""
        try:
            notify_cycle_result(result, self.config.get('notifications', {}))
        except Exception as e:
            logger.error(f"Failed to send cycle notification: {e}")

    def run_once(self) -> int:
        """
        Run a single reconciliation cycle.

        Returns:
            Exit code (0 all created, 1 some creations failed, 3 cycle aborted)
        """
        result = self.engine.run_cycle()
        self.handle_result(result)
        return exit_code_for(result)

    def serve(self):
        """Run cycles on the configured interval until SIGINT or SIGTERM."""
        sync_config = self.config.get('sync', {})
        interval = sync_config.get('interval_seconds', 30)

        def _shutdown(signum, frame):
            logger.info(f"Received signal {signum}, stopping scheduler")
            self.scheduler.stop(wait=False)

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)

        logger.info("Starting user synchronization")
        self.scheduler.start(interval, self.engine.run_cycle,
                             run_immediately=sync_config.get('run_on_start', False))
        while not self.scheduler.wait(timeout=1.0):
            pass
        self.scheduler.stop(wait=True)

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            if self.engine is None:
                self.load()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except (ConfigurationError, KeyError) as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            self.directory_reader.test_connection()
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': 'LDAP bind successful'
            }
        except SyncError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        try:
            self.credentials.invalidate()
            self.credentials.acquire()
            health_status['checks']['identity_api'] = {
                'status': 'pass',
                'message': 'Access token issued'
            }
        except SyncError as e:
            health_status['checks']['identity_api'] = {
                'status': 'fail',
                'message': f'Token request failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status


def exit_code_for(result: CycleResult) -> int:
    if result.aborted:
        return EXIT_ABORTED
    if result.failures:
        return EXIT_PARTIAL
    return EXIT_OK


def main():
    """Main entry point for the application."""
    parser = argparse.ArgumentParser(description='Identity Sync - create LDAP users missing from the identity API')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--once', action='store_true',
                        help='Run a single reconciliation cycle and exit')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of sync')
    parser.add_argument('--test-email', action='store_true',
                        help='Send test email notification')

    args = parser.parse_args()

    service = SyncService(config_path=args.config)

    if args.health_check:
        health_status = service.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    try:
        service.load()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)

    if args.test_email:
        if send_test_notification(service.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(0)
        print("Failed to send test email")
        sys.exit(1)

    if args.once:
        sys.exit(service.run_once())

    service.serve()
    sys.exit(EXIT_OK)


if __name__ == "__main__":
    main()
