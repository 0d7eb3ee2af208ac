"""
Static IP databases used to geolocate login addresses.

Three range tables (location, proxy, ASN) are read from pre-processed
IP2Location-style CSV exports at startup and never change afterwards.  Each row
covers `[lower, upper]` with both bounds stored as the integer form of an IPv4
address; rows are sorted by `lower` and do not overlap, so a lookup is a
binary search followed by a containment check.

Location CSV (`-` stands in for a missing value, lat/lon are the last columns):
    16777216,16777471,US,United States of America,California,San Jose,37.339390,-121.894960
Proxy CSV:
    16778241,16778241
ASN CSV:
    16777216,16777471,13335
"""
import bisect
import csv
import ipaddress
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger('ipdb')

GEO_DB = os.getenv('AUTHWATCH_GEO_DB', 'data/ip2location.csv')
PROXY_DB = os.getenv('AUTHWATCH_PROXY_DB', 'data/ip2proxy.csv')
ASN_DB = os.getenv('AUTHWATCH_ASN_DB', 'data/ip2asn.csv')


@dataclass(frozen=True)
class GeoEntry:
    lower: int
    upper: int
    country_code: Optional[str]
    country: Optional[str]
    state: Optional[str]
    city: Optional[str]
    lat: float
    lon: float


def _empty_check(value):
    return None if value == '-' else value


def geo_row(cols):
    return GeoEntry(
        lower=int(cols[0]),
        upper=int(cols[1]),
        country_code=_empty_check(cols[2]),
        country=_empty_check(cols[3]),
        state=_empty_check(cols[4]),
        city=_empty_check(cols[5]),
        lat=float(cols[-2]),
        lon=float(cols[-1]),
    )


def proxy_row(cols):
    return (int(cols[0]), int(cols[1]))


def asn_row(cols):
    return (int(cols[0]), int(cols[1]), _empty_check(cols[2]))


def read_table(path, build):
    """Read one CSV table, skipping rows that do not parse.  A missing file gives an empty table."""
    rows = []
    try:
        with open(path, newline='', encoding='utf-8') as f:
            for cols in csv.reader(f):
                if not cols:
                    continue
                try:
                    rows.append(build(cols))
                except (ValueError, IndexError):
                    logger.debug('Skipping bad row in %s: %s', path, cols)
    except OSError as e:
        logger.warning('Could not load IP table %s: %s', path, e)
    return rows


class RangeTable:
    """Sorted, non-overlapping `[lower, upper]` ranges with the payload kept alongside."""

    def __init__(self, rows, bounds=lambda r: (r[0], r[1])):
        self.rows = sorted(rows, key=lambda r: bounds(r)[0])
        self._bounds = bounds
        self._lowers = [bounds(r)[0] for r in self.rows]

    def __len__(self):
        return len(self.rows)

    def find(self, ip):
        key = int(ipaddress.IPv4Address(ip))
        i = bisect.bisect_right(self._lowers, key) - 1
        if i < 0:
            return None
        row = self.rows[i]
        if self._bounds(row)[1] < key:
            return None
        return row


class IpDB:
    def __init__(self, geo_rows=(), proxy_rows=(), asn_rows=()):
        self.geo = RangeTable(geo_rows, bounds=lambda r: (r.lower, r.upper))
        self.proxy = RangeTable(proxy_rows)
        self.asn = RangeTable(asn_rows)

    @classmethod
    def load(cls, geo_path=GEO_DB, proxy_path=PROXY_DB, asn_path=ASN_DB):
        with ThreadPoolExecutor(max_workers=3) as pool:
            geo = pool.submit(read_table, geo_path, geo_row)
            proxy = pool.submit(read_table, proxy_path, proxy_row)
            asn = pool.submit(read_table, asn_path, asn_row)
            db = cls(geo.result(), proxy.result(), asn.result())
        logger.info('Loaded IP databases: %d locations, %d proxies, %d ASNs',
                    len(db.geo), len(db.proxy), len(db.asn))
        return db

    def lookup_geo(self, ip):
        return self.geo.find(ip)

    def is_proxy(self, ip):
        return self.proxy.find(ip) is not None

    def lookup_asn(self, ip):
        row = self.asn.find(ip)
        return row[2] if row else None
