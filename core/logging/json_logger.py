import logging
import json
from logging.handlers import HTTPHandler

# Attributes every LogRecord has; anything else came in through `extra=`.
_RESERVED = set(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {'message', 'asctime'}


class JSONFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name, value in vars(record).items():
            if name not in _RESERVED and not name.startswith('_'):
                payload[name] = value
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_json_logging(siem_endpoint: str | None = None, level=logging.INFO):
    """Send root logging through JSONFormatter.

    Handlers already on the root logger (the Lambda runtime installs one) are
    switched to JSON; a stream handler is only added when there are none.
    Safe to call on every invocation: later calls just update the level.
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    if any(getattr(h, '_json_logging', False) for h in logger.handlers):
        return logger

    if not logger.handlers:
        logger.addHandler(logging.StreamHandler())
    for handler in logger.handlers:
        handler.setFormatter(JSONFormatter())
        handler._json_logging = True

    if siem_endpoint:
        # siem_endpoint format: host:port
        host, port = siem_endpoint.rsplit(':', 1)
        http = HTTPHandler(f"{host}:{port}", '/ingest', method='POST')
        http.setFormatter(JSONFormatter())
        http._json_logging = True
        logger.addHandler(http)

    return logger
