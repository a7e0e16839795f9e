import os
import sys
import logging
import logging.handlers
import signal

from guard_errors import ConfigError, LockHeldError, StartupLockTimeout
from ruleguard import GuardConfig, RuleGuard

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def setup_logging(level, syslog_ident=None):
    """Log to stderr and, when an ident is given, to the local syslog socket."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    if syslog_ident and os.path.exists("/dev/log"):
        handler = logging.handlers.SysLogHandler(address="/dev/log")
        handler.ident = f"{syslog_ident}[{os.getpid()}]: "
        logging.getLogger().addHandler(handler)


def main():
    setup_logging(os.getenv("LOG_LEVEL", "INFO").upper(), os.getenv("SYSLOG_IDENT"))

    try:
        config = GuardConfig.from_env()
        guard = RuleGuard(config)
    except ConfigError as e:
        logging.error(f"Invalid configuration: {e}")
        return 1

    signal.signal(signal.SIGINT, guard.stop)
    signal.signal(signal.SIGTERM, guard.stop)

    try:
        guard.start()
    except LockHeldError:
        return 1
    except (StartupLockTimeout, OSError) as e:
        logging.error(f"Fatal: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
