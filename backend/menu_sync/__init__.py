"""Menu Sync Reliability Engine."""

import logging

__version__ = "1.0.0"

# Custom TRACE level, available to every module logger in the package
logging.TRACE = 5
logging.addLevelName(logging.TRACE, "TRACE")


def _trace(self, msg, *args, **kwargs):
    if self.isEnabledFor(logging.TRACE):
        self._log(logging.TRACE, msg, args, **kwargs)


logging.Logger.trace = _trace
