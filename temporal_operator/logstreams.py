"""Configure the log streams of the operator.

Every log line is a single JSON object. Callers may attach structured
metadata by passing a dict as the only positional argument, eg

    logit.info("reconcile started", {"owner": "default/demo"})

The dict is merged into the JSON line instead of being %-formatted into the
message.

"""

import json
import logging
import sys
from datetime import UTC, datetime

# Convenience: the loggers we configure.
LOGGER_NAMES = ("app", "k8s", "watch")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        # A single dict argument is structured metadata, not a format argument.
        meta = {}
        if isinstance(record.args, dict):
            meta = record.args
            msg = str(record.msg)
        else:
            msg = record.getMessage()

        line = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": msg,
        }
        line.update({k: v for k, v in meta.items() if k not in line})

        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


def setup(level: str) -> None:
    """Install a JSON stream handler with severity `level` on our loggers."""
    level = level.upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(level)
        logger.propagate = False
