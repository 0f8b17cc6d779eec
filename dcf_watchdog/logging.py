import datetime
import json
import logging.config
import logging.handlers
import os
import sys

SERVICE_NAME = 'dcf-watchdog'

#: `extra` keys copied into json log lines
EXTRA_FIELDS = ('cycle', 'tier')


class BetterRotatingFileHandler(logging.handlers.RotatingFileHandler):
    def _open(self):
        os.makedirs(os.path.dirname(self.baseFilename), exist_ok=True)
        return super()._open()


class JsonFormatter(logging.Formatter):
    """One json object per line, the shape log collectors of the gateway expect"""

    def format(self, record):
        data = {
            'timestamp': datetime.datetime.fromtimestamp(record.created).astimezone().isoformat(timespec='seconds'),
            'level': record.levelname.lower(),
            'service': SERVICE_NAME,
            'logger': record.name,
            'message': record.getMessage(),
        }
        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                data[field] = str(value)

        if record.exc_info:
            data['exception'] = self.formatException(record.exc_info)

        return json.dumps(data, ensure_ascii=False)


def get_file_handler_opts(filename: str, level: str, formatter: str = 'verbose'):
    if filename == '/dev/null':
        return {
            'class': 'logging.NullHandler',
            'level': level,
        }

    if filename.startswith('/dev/'):
        filename = filename.rstrip('/')
        stream = {'/dev/stderr': sys.stderr, '/dev/stdout': sys.stdout}[filename]
        return {
            'class': 'logging.StreamHandler',
            'stream': stream,
            'level': level,
            'formatter': formatter,
        }

    return {
        'class': BetterRotatingFileHandler.__module__ + '.' + BetterRotatingFileHandler.__qualname__,
        'maxBytes': 1024 * 1024,
        'backupCount': 3,
        'level': level,
        'formatter': formatter,
        'filename': filename,
    }


def setup_logging(loglevel=logging.INFO, error_filename: str = None, log_format: str = 'verbose'):
    if error_filename is None:
        error_filename = '/dev/null'

    # fmt: off
    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'verbose': {
                    'format': '%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                },
                'json': {
                    '()': JsonFormatter.__module__ + '.' + JsonFormatter.__qualname__,
                },
            },
            'handlers': {
                'null': {
                    'level': 'DEBUG',
                    'class': 'logging.NullHandler',
                },
                'console': {
                    'class': 'logging.StreamHandler',
                    'level': loglevel,
                    'formatter': log_format,
                },
                'error_file': get_file_handler_opts(error_filename, 'ERROR', log_format),
            },
            'loggers': {
                '': {'handlers': ['console', 'error_file'], 'level': 'DEBUG', 'propagate': False},
                'PidFile': {'handlers': ['null'], 'propagate': False},
                'backoff': {'level': 'WARNING'},
                'pyroute2': {'level': 'WARNING'},
            },
        }
    )
    # fmt: on
