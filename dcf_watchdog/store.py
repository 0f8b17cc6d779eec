import contextlib
import logging
import sqlite3
import typing

import backoff

from . import config

logger = logging.getLogger('dcf.store')

USER_COLUMNS = 'username, last_ip, last_seen, is_vip, data_used, account_balance'


class StoreUnavailable(Exception):
    pass


class Query(typing.NamedTuple):
    """Fixed sql text with its bound parameters"""

    sql: str
    params: tuple = ()


def _ago(seconds: int) -> str:
    """sqlite `datetime('now', ?)` modifier"""
    return f'-{int(seconds)} seconds'


def standard_candidates(activity_window: int) -> Query:
    """Users with an address who were active within `activity_window` seconds"""
    return Query(
        f'''
        SELECT {USER_COLUMNS}
        FROM users
        WHERE last_ip IS NOT NULL
          AND last_ip != ''
          AND last_seen >= datetime('now', ?)
        ''',
        (_ago(activity_window),),
    )


VIP_CANDIDATES = Query(
    f'''
    SELECT {USER_COLUMNS}
    FROM users
    WHERE is_vip = 1
      AND last_ip IS NOT NULL
      AND last_ip != ''
    '''
)


def peer_listing(online_window: int, limit: int) -> Query:
    """Sanitized user list for the status snapshot, no addresses or balances"""
    return Query(
        '''
        SELECT
            username,
            CASE WHEN is_vip = 1 THEN 1 ELSE 0 END AS is_vip,
            CASE
                WHEN is_vip = 1 THEN 'vip'
                WHEN account_balance > 0 THEN 'paid'
                ELSE 'trial'
            END AS tier,
            CASE
                WHEN last_seen >= datetime('now', ?) THEN 'online'
                ELSE 'offline'
            END AS status
        FROM users
        WHERE username IS NOT NULL
        ORDER BY
            is_vip DESC,
            CASE WHEN last_seen >= datetime('now', ?) THEN 0 ELSE 1 END,
            username ASC
        LIMIT ?
        ''',
        (_ago(online_window), _ago(online_window), int(limit)),
    )


def _is_not_locked(exc: sqlite3.Error) -> bool:
    return 'locked' not in str(exc)


class UserStore:
    """Read-only access to the identity database"""

    def __init__(self, settings: config.StoreModel):
        self.settings = settings
        self.logger = logger

    @property
    def uri(self) -> str:
        return f'{self.settings.path.resolve().as_uri()}?mode=ro'

    @property
    def _retry_locked(self):
        # ingestion writes to the same file, lock contention is expected and short
        return backoff.on_exception(
            backoff.constant,
            sqlite3.OperationalError,
            max_tries=self.settings.locked_retries,
            giveup=_is_not_locked,
            logger=self.logger,
            backoff_log_level=logging.INFO,
            giveup_log_level=logging.DEBUG,
            interval=0.2,
            jitter=None,
        )

    def _execute(self, query: Query) -> typing.List[dict]:
        connection = sqlite3.connect(self.uri, uri=True, timeout=self.settings.busy_timeout)
        with contextlib.closing(connection):
            connection.row_factory = sqlite3.Row
            rows = connection.execute(query.sql, query.params).fetchall()
        return [dict(row) for row in rows]

    def fetch(self, query: Query) -> typing.List[dict]:
        if not self.settings.path.exists():
            raise StoreUnavailable(f'Database not found: {self.settings.path.as_posix()}')

        try:
            return self._retry_locked(self._execute)(query)
        except sqlite3.Error as exc:
            raise StoreUnavailable(f'Database query failed: {exc}') from exc
