"""Command line entry point: run one backup and exit with its status."""

import sys
import logging
import argparse
from typing import List, Optional

from projbackup import configure_logging
from projbackup.config import BackupConfig, ConfigError, CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH
from projbackup.backup.executor import execute_backup


logger = logging.getLogger('projbackup.cli')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='projbackup',
        description='Archive a project directory (and optionally its database), '
                    'upload it and prune old backups.',
    )
    parser.add_argument(
        '-c', '--config',
        help=f"dotenv config file (default: ${CONFIG_ENV_VAR} or {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        '--log-level',
        help='override LOG_LEVEL from the config file',
    )
    parser.add_argument(
        '--log-file',
        help='also append logs to this rotating log file',
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    configure_logging(args.log_level or 'INFO', args.log_file)

    try:
        config = BackupConfig.from_env_file(args.config)
    except ConfigError as e:
        logger.error(f"FATAL: {e}")
        return e.exit_code

    if not args.log_level and config.log_level != 'INFO':
        logging.getLogger('projbackup').setLevel(getattr(logging, config.log_level, logging.INFO))

    result = execute_backup(config)
    return result.exit_code


if __name__ == '__main__':
    sys.exit(main())
