"""Exception hierarchy shared by the rule guard modules."""


class GuardError(Exception):
    """Base class for every failure raised by the rule guard."""


class ConfigError(GuardError):
    """An environment variable holds an unusable value."""


class IptablesError(GuardError):
    """An iptables command failed for a reason other than a missing rule."""


class LockError(GuardError):
    pass


class LockHeldError(LockError):
    """A live instance of the same policy already owns the instance lock."""


class LockTimeout(LockError):
    """The shared resource lock was not acquired within the allowed time."""


class StartupLockTimeout(LockTimeout):
    """The resource lock timed out during the initial pass, which is fatal."""
