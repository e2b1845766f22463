"""
Command-line runner for the LDAP registry.

Loads the configuration, builds the registry over an ldap3 connection
factory and exports groups and people as JSON lines, or runs a health check
or a single DN resolution.
"""

import sys
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, IO, Optional

from ldap_registry.config import load_config, ConfigurationError
from ldap_registry.errors import ResolutionNotFound, SyncError
from ldap_registry.ldap_client import LDAPConnectionFactory, LDAPConnectionError
from ldap_registry.logging_setup import setup_logging, audit_logger
from ldap_registry.registry import LDAPUserRegistry
from ldap_registry.timestamps import to_utc

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIGURATION = 2
EXIT_CONNECTION = 3
EXIT_SYNC = 4
EXIT_UNEXPECTED = 5


def parse_since(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 instant; naive values are taken to be UTC."""
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    try:
        return to_utc(datetime.fromisoformat(value))
    except ValueError as e:
        raise ConfigurationError(f"Invalid --since value '{value}': {e}")


class SyncRunner:
    """
    Runs one export of the directory.

    Statistics of the run are kept in ``sync_stats`` and logged as a summary.
    """

    def __init__(self, config_path: Optional[str] = None, factory_class=LDAPConnectionFactory):
        """
        Initialize the runner.

        Args:
            config_path: Path to configuration file
            factory_class: Connection factory type, called with the ``ldap``
                and ``error_handling`` sections
        """
        self.config = None
        self.config_path = config_path
        self.factory_class = factory_class
        self.registry = None

        self.sync_stats = {
            'groups': 0,
            'persons': 0,
            'members': 0,
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }

    def run(self, modified_since: Optional[datetime] = None, output: Optional[IO[str]] = None) -> int:
        """
        Export groups then people as JSON lines.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        output = output or sys.stdout
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            self._setup_logging()
            self._create_registry()

            if not self.registry.is_active():
                logger.info("Registry is not active, nothing to do")
                return EXIT_OK

            since = f" modified since {modified_since.isoformat()}" if modified_since else ""
            logger.info(f"Starting LDAP registry export{since}")

            self._export_groups(modified_since, output)
            self._export_persons(modified_since, output)

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()

            self._log_sync_summary()
            return EXIT_OK

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            audit_logger.log_security_event("LDAP connection failure", str(e))
            return EXIT_CONNECTION
        except SyncError as e:
            logger.error(f"Sync failed: {e}")
            return EXIT_SYNC
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED

    def resolve(self, user_id: str, output: Optional[IO[str]] = None) -> int:
        """Print the distinguished name of ``user_id``."""
        output = output or sys.stdout
        try:
            self._load_configuration()
            self._setup_logging()
            self._create_registry()
            output.write(self.registry.resolve_distinguished_name(user_id) + '\n')
            return EXIT_OK
        except ResolutionNotFound as e:
            logger.error(str(e))
            return EXIT_FAILED
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIGURATION
        except LDAPConnectionError as e:
            logger.error(f"LDAP connection error: {e}")
            audit_logger.log_security_event("LDAP connection failure", str(e))
            return EXIT_CONNECTION
        except SyncError as e:
            logger.error(f"Resolution failed: {e}")
            return EXIT_SYNC
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")
        logger.debug("Configuration loaded successfully")

    def _setup_logging(self):
        setup_logging(self.config.get('logging', {}))
        audit_logger.log_configuration_access(str(self.config_path or 'config.yaml'))

    def _create_factory(self):
        return self.factory_class(self.config['ldap'], self.config.get('error_handling', {}))

    def _create_registry(self):
        self.registry = LDAPUserRegistry(self.config.get('registry', {}), self._create_factory())

    def _export_groups(self, modified_since: Optional[datetime], output: IO[str]):
        for group in self.registry.sync_groups(modified_since):
            self._write_record(output, 'group', group.to_dict())
            self.sync_stats['groups'] += 1
            self.sync_stats['members'] += len(group.members)

    def _export_persons(self, modified_since: Optional[datetime], output: IO[str]):
        with self.registry.stream_persons(modified_since) as persons:
            if persons.size >= 0:
                logger.info(f"Exporting {persons.size} people")
            for person in persons:
                self._write_record(output, 'person', person.to_dict())
                self.sync_stats['persons'] += 1
                if persons.size > 0 and self.sync_stats['persons'] % 1000 == 0:
                    logger.info(f"Exported {self.sync_stats['persons']} of {persons.size} people")

    @staticmethod
    def _write_record(output: IO[str], kind: str, record: Dict[str, Any]):
        output.write(json.dumps({'type': kind, **record}, sort_keys=True) + '\n')

    def _log_sync_summary(self):
        """Log final statistics."""
        stats = self.sync_stats

        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Export Summary ===")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Groups exported: {stats['groups']}")
        logger.info(f"Group memberships: {stats['members']}")
        logger.info(f"People exported: {stats['persons']}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check the configuration and directory connectivity.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except Exception as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'

        if self.config:
            try:
                factory = self.factory_class(self.config['ldap'], {'max_retries': 1, 'retry_wait_seconds': 1})
                if not factory.test_connection():
                    raise LDAPConnectionError("Root DSE could not be read")
                health_status['checks']['ldap'] = {
                    'status': 'pass',
                    'message': 'LDAP connection successful',
                    'details': factory.get_connection_stats()
                }
            except Exception as e:
                health_status['checks']['ldap'] = {
                    'status': 'fail',
                    'message': f'LDAP connection failed: {e}'
                }
                health_status['status'] = 'unhealthy'

        return health_status


def main():
    """Main entry point for the application."""
    import argparse

    parser = argparse.ArgumentParser(description='LDAP multi-base registry export')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--since', help='Only export entries modified after this ISO-8601 instant')
    parser.add_argument('--output', '-o', help='Write JSON lines to this file instead of stdout')
    parser.add_argument('--health-check', action='store_true',
                        help='Perform health check instead of export')
    parser.add_argument('--resolve', metavar='USER',
                        help='Print the distinguished name of a user id')

    args = parser.parse_args()

    runner = SyncRunner(config_path=args.config)

    if args.health_check:
        health_status = runner.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(EXIT_OK if health_status['status'] == 'healthy' else EXIT_FAILED)

    if args.resolve:
        sys.exit(runner.resolve(args.resolve))

    try:
        modified_since = parse_since(args.since)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIGURATION)

    if args.output:
        with open(args.output, 'w', encoding='utf-8') as output:
            exit_code = runner.run(modified_since, output)
    else:
        exit_code = runner.run(modified_since)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
