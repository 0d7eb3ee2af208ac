"""
Disk cache for facts pulled from external services.

Holds investigated (ignored) accounts, account metadata, IP threat and IP
location answers, plus the last used account name and the analyst name.
Everything here should be consulted before making a network query.
"""
import enum
import ipaddress
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime

from authwatch.models import IpInfo, IpThreat, Location

logger = logging.getLogger('storage')

CACHE_PATH = os.getenv('AUTHWATCH_CACHE', os.path.join(os.path.expanduser('~'), '.cache', 'authwatch.db'))

INVESTIGATION_EXPIRATION = 86400  # 24hrs

SCHEMA = {
    'investigated_users': [('name', 'TEXT'), ('time', 'INTEGER')],
    'metadata': [('name', 'TEXT'), ('time', 'INTEGER'), ('city', 'TEXT'), ('state', 'TEXT'),
                 ('country', 'TEXT')],
    'ipthreat': [('ip', 'INTEGER')] + [(flag, 'INTEGER') for flag in IpThreat.FLAGS],
    'ipinfo': [('ip', 'INTEGER'), ('hostname', 'TEXT'), ('city', 'TEXT'), ('region', 'TEXT'),
               ('country', 'TEXT'), ('lat', 'REAL'), ('lon', 'REAL'), ('org', 'TEXT'),
               ('postal', 'TEXT'), ('timezone', 'TEXT')],
    'misc': [('key', 'INTEGER'), ('value', 'TEXT')],
}

# The first column of every table is unique
UNIQUE_COLUMNS = {'investigated_users': 'name', 'metadata': 'name', 'ipthreat': 'ip', 'ipinfo': 'ip',
                  'misc': 'key'}


class SettingKey(enum.IntEnum):
    USERNAME = 0
    ANALYST_NAME = 1


class Storage:
    def __init__(self, path=CACHE_PATH, clock=time.time):
        self.path = path
        self.clock = clock
        self.lock = threading.Lock()
        if path != ':memory:':
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        self.conn = self._open()

    def _open(self):
        conn = sqlite3.connect(self.path, check_same_thread=False)
        if self._valid_schema(conn):
            return conn
        logger.warning('Cache at %s has an invalid schema, rebuilding it empty', self.path)
        conn.close()
        if self.path != ':memory:' and os.path.exists(self.path):
            os.remove(self.path)
        conn = sqlite3.connect(self.path, check_same_thread=False)
        self._init_sqlite(conn)
        return conn

    def _valid_schema(self, conn):
        try:
            existing = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
            if not existing:
                self._init_sqlite(conn)
                return True
            for table, columns in SCHEMA.items():
                rows = conn.execute(f'PRAGMA table_info({table})').fetchall()
                found = [(r[1], r[2].upper()) for r in rows]
                if sorted(found) != sorted(columns):
                    logger.error('Invalid schema in %s: %s', table, found)
                    return False
        except sqlite3.Error as e:
            logger.error('Could not check cache schema: %s', e)
            return False
        return True

    def _init_sqlite(self, conn):
        c = conn.cursor()
        for table, columns in SCHEMA.items():
            cols = ', '.join(
                f'{name} {kind}' + (' UNIQUE' if name == UNIQUE_COLUMNS[table] else '')
                for name, kind in columns
            )
            c.execute(f'CREATE TABLE IF NOT EXISTS {table} ({cols})')
        conn.commit()

    def _execute(self, what, query, params=()):
        with self.lock:
            try:
                cur = self.conn.execute(query, params)
                self.conn.commit()
                return cur.rowcount
            except sqlite3.Error as e:
                logger.error('Could not execute %s: %s', what, e)
                return None

    def _fetchone(self, what, query, params=()):
        with self.lock:
            try:
                return self.conn.execute(query, params).fetchone()
            except sqlite3.Error as e:
                logger.error('Could not query %s: %s', what, e)
                return None

    def close(self):
        with self.lock:
            self.conn.close()

    # -------------------- Investigated --------------------

    def investigated(self, name):
        """True if the account was marked investigated and the mark hasn't expired."""
        row = self._fetchone('SELECT for investigated_users',
                             'SELECT time FROM investigated_users WHERE name = ?', (name,))
        if row is None:
            return False
        return self.clock() - row[0] < INVESTIGATION_EXPIRATION

    def mark_investigated(self, name, mark):
        with self.lock:
            try:
                self.conn.execute('DELETE FROM investigated_users WHERE name = ?', (name,))
                if mark:
                    self.conn.execute('INSERT INTO investigated_users VALUES (?, ?)',
                                      (name, int(self.clock())))
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error('Could not update investigated_users for %s: %s', name, e)

    # -------------------- Account metadata --------------------

    def get_metadata(self, name):
        """Returns (creation date, Location or None) for a cached account."""
        row = self._fetchone('SELECT for metadata',
                             'SELECT time, city, state, country FROM metadata WHERE name = ?', (name,))
        if row is None:
            return None
        created, city, state, country = row
        try:
            created = datetime.fromtimestamp(created)
        except (TypeError, ValueError, OverflowError, OSError):
            return None
        if not (city or state or country):
            return created, None
        return created, Location(city=city or '', state=state or None, country=country or None)

    def add_metadata(self, name, info):
        created, location = info
        location = location or Location(city='')
        self._execute('INSERT for metadata', 'INSERT INTO metadata VALUES (?, ?, ?, ?, ?)', (
            name, int(created.timestamp()), location.city, location.state or '', location.country or ''
        ))

    # -------------------- IP facts --------------------

    def get_threat(self, ip):
        row = self._fetchone('SELECT for ipthreat', 'SELECT * FROM ipthreat WHERE ip = ?',
                             (int(ipaddress.IPv4Address(ip)),))
        if row is None:
            return None
        return IpThreat(**{flag: value == 1 for flag, value in zip(IpThreat.FLAGS, row[1:])})

    def add_threat(self, ip, threat):
        params = [int(ipaddress.IPv4Address(ip))] + [int(getattr(threat, flag)) for flag in IpThreat.FLAGS]
        self._execute('INSERT for ipthreat', 'INSERT INTO ipthreat VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)', params)

    def get_ipinfo(self, ip):
        ip = ipaddress.IPv4Address(ip)
        row = self._fetchone('SELECT for ipinfo', 'SELECT * FROM ipinfo WHERE ip = ?', (int(ip),))
        if row is None:
            return None
        _, hostname, city, region, country, lat, lon, org, postal, timezone = row
        return IpInfo(
            ip=str(ip),
            hostname=hostname or None,
            city=city or '',
            region=region or '',
            country=country or '',
            lat=lat or 0.0,
            lon=lon or 0.0,
            org=org or '',
            postal=postal or '',
            timezone=timezone or '',
        )

    def add_ipinfo(self, ip, info):
        self._execute('INSERT for ipinfo', 'INSERT INTO ipinfo VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)', (
            int(ipaddress.IPv4Address(ip)), info.hostname or '', info.city, info.region, info.country,
            info.lat, info.lon, info.org, info.postal, info.timezone,
        ))

    # -------------------- Settings --------------------

    def _get_setting(self, key):
        row = self._fetchone('SELECT for misc', 'SELECT value FROM misc WHERE key = ?', (int(key),))
        return row[0] if row else ''

    def _set_setting(self, key, value):
        updated = self._execute('UPDATE for misc', 'UPDATE misc SET value = ? WHERE key = ?', (value, int(key)))
        if not updated:
            self._execute('INSERT for misc', 'INSERT INTO misc VALUES (?, ?)', (int(key), value))

    def get_username(self):
        return self._get_setting(SettingKey.USERNAME)

    def set_username(self, value):
        self._set_setting(SettingKey.USERNAME, value)

    def get_analyst_name(self):
        return self._get_setting(SettingKey.ANALYST_NAME)

    def set_analyst_name(self, value):
        self._set_setting(SettingKey.ANALYST_NAME, value)
