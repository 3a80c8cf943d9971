import json
import logging
import logging.config
import os
import re
from typing import Optional

LOG_DIRECTORY = os.environ.get('PULSARR_LOG_DIR', os.path.join(os.getcwd(), 'logs'))
LOG_FILE = os.path.join(LOG_DIRECTORY, 'pulsarr.log')


class Colors:
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'


LEVEL_COLOURS = {
    'WARNING': Colors.WARNING,
    'ERROR': Colors.FAIL,
    'CRITICAL': Colors.FAIL,
}


class ColoredFormatter(logging.Formatter):
    colon_pattern = re.compile(r'^(.*?):\s(.*)$')

    def format(self, record):
        base_message = super().format(record)
        if not getattr(record, 'is_console', False):
            return base_message

        level_colour = LEVEL_COLOURS.get(record.levelname)
        if level_colour:
            return f"{level_colour}{base_message}{Colors.ENDC}"

        match = self.colon_pattern.match(base_message)
        if match:
            colored_label = f"{Colors.OKCYAN}{match.group(1)}{Colors.ENDC}"
            colored_value = f"{Colors.OKBLUE}{match.group(2)}{Colors.ENDC}"
            base_message = f"{colored_label}: {colored_value}"
        return base_message


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "lvl": record.levelname,
            "msg": record.getMessage(),
            "rid": getattr(record, 'request_id', ''),
            "cid": getattr(record, 'correlation_id', ''),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ConsoleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.is_console = True
        return True


class ContextDefaultsFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'request_id'):
            record.request_id = ''
        if not hasattr(record, 'correlation_id'):
            record.correlation_id = ''
        return True


LOGGING_CONFIG = {
    'version': 1,
    'disable_existing_loggers': False,

    'formatters': {
        'colored':  {'()': f'{__name__}.ColoredFormatter',
                     'format': '%(asctime)s - %(levelname)s - %(message)s'},
        'json':     {'()': f'{__name__}.JsonFormatter'}
    },

    'filters': {
        'console_filter': {'()': f'{__name__}.ConsoleFilter'},
        'context_defaults': {'()': f'{__name__}.ContextDefaultsFilter'},
    },

    'handlers': {
        'console': {
            'level': 'DEBUG', 'class': 'logging.StreamHandler',
            'formatter': 'colored',
            'filters': ['console_filter', 'context_defaults']
        },
        'file': {
            'level': 'DEBUG', 'class': 'logging.FileHandler',
            'filename': LOG_FILE, 'formatter': 'json', 'encoding': 'utf-8',
            'delay': True,
            'filters': ['context_defaults']
        }
    },

    'root': {
        'level': os.environ.get('LOG_LEVEL', 'INFO'),
        'handlers': ['console', 'file']
    }
}


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    if level:
        LOGGING_CONFIG['root']['level'] = level.upper()
    if log_file:
        LOGGING_CONFIG['handlers']['file']['filename'] = log_file
    log_dir = os.path.dirname(LOGGING_CONFIG['handlers']['file']['filename'])
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    logging.config.dictConfig(LOGGING_CONFIG)
