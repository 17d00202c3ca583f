"""CLI entry point."""

import os
import sys
from typing import List

from common.logging_config import setup_logging
from cli.repl import repl_loop

LOGGED_COMPONENTS = ('cli', 'uploader')


def resolve_log_level(argv: List[str]) -> str:
    """--debug wins over LOG_LEVEL; upload progress owns stdout, so the default is quiet."""
    if '--debug' in argv:
        return 'DEBUG'
    return os.getenv('LOG_LEVEL', 'WARNING')


def main() -> None:
    log_level = resolve_log_level(sys.argv)
    loggers = [setup_logging(name, log_level=log_level) for name in LOGGED_COMPONENTS]
    logger = loggers[0]

    if '--debug' in sys.argv:
        sys.argv.remove('--debug')
        logger.debug(f"Debug logging enabled for {', '.join(LOGGED_COMPONENTS)}")

    logger.info("VaultLift CLI starting")
    try:
        repl_loop()
    except Exception as e:
        logger.error(f"VaultLift CLI crashed: {e}", exc_info=True)
        raise
    finally:
        logger.info("VaultLift CLI exiting")


if __name__ == "__main__":
    main()
