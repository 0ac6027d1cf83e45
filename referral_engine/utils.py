import os
from typing import Iterable, List, Any
import logging
import datetime
import traceback
import sys

import psycopg2
from psycopg2._psycopg import connection
from pythonjsonlogger import jsonlogger

PUBLIC_SCHEMA_NAME = os.getenv('PUBLIC_SCHEMA_NAME', 'public')

DATE_ISO8601_FORMAT = '%Y-%m-%d'
MONTH_KEY_FORMAT = '%Y-%m'


class CustomJsonFormatter(jsonlogger.JsonFormatter):

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record,
                                                    message_dict)
        if not log_record.get('timestamp'):
            # this doesn't use record.created, so it is slightly off
            now = datetime.datetime.now(
                datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
            log_record['timestamp'] = now
        if log_record.get('level'):
            log_record['level'] = log_record['level'].upper()
        else:
            log_record['level'] = record.levelname

        log_record['name'] = record.name
        log_record['pathname'] = record.pathname
        log_record['lineno'] = record.lineno

        (exc_type, exc_value, exc_tb) = sys.exc_info()
        if exc_type is not None:
            log_record["exc_type"] = exc_type.__name__
            log_record["traceback"] = [{
                "filename": frame.filename,
                "lineno": frame.lineno,
                "name": frame.name
            } for frame in traceback.extract_tb(exc_tb)]


ENV_LOCAL = "local"


def env() -> str:
    return os.environ.get("ENV", ENV_LOCAL)


formatter = CustomJsonFormatter()
LOG_LEVEL = logging.DEBUG if env() == ENV_LOCAL else logging.INFO
LOG_HANDLER = logging.StreamHandler()
LOG_HANDLER.setFormatter(formatter)
logging.basicConfig(level=LOG_LEVEL, handlers=[LOG_HANDLER], force=True)


def get_logger(name):
    logger = logging.getLogger(name)
    logger.setLevel(LOG_LEVEL)
    return logger


def batch_iter(ary: List[Any], batch_size: int = 100) -> Iterable[List[Any]]:
    for i in range(0, len(ary), batch_size):
        yield ary[i:i + batch_size]


def month_key(moment: datetime.date = None) -> str:
    if moment is None:
        moment = datetime.datetime.now(datetime.timezone.utc)
    return moment.strftime(MONTH_KEY_FORMAT)


def db_connect() -> connection:
    HOST = os.getenv("PG_HOST")
    PORT = os.getenv("PG_PORT")
    USERNAME = os.getenv("PG_USERNAME")
    PASSWORD = os.getenv("PG_PASSWORD")
    DB_NAME = os.getenv('PG_DBNAME')

    if not HOST or not PORT or not DB_NAME or not USERNAME or not PASSWORD:
        raise Exception('Missing db connection env variables')

    DB_CONN_STRING = f"postgresql://{USERNAME}:{PASSWORD}@{HOST}:{PORT}/{DB_NAME}?options=-csearch_path%3D{PUBLIC_SCHEMA_NAME}"
    return psycopg2.connect(DB_CONN_STRING)
