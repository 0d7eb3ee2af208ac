"""
Network clients for the services the engine consumes.

- SearchClient: raw Duo, VPN and network logs from Elasticsearch
- IpService: threat data from ipdata.co and locations from ipinfo.io
- MetadataClient: account creation date and home address

Every call returns None or an empty list on failure; callers treat that as
"no data available".
"""
import json
import logging
import os
import re
from datetime import datetime

import requests
from dateutil import parser as dateparser
from dateutil import tz
from elasticsearch import Elasticsearch
from elasticsearch.helpers import scan

from authwatch.models import IpInfo, IpThreat, Location

logger = logging.getLogger('clients')

ES_HOST = os.getenv('ES_HOST', 'http://localhost:9200')
ES_DUO_INDEX = os.getenv('ES_DUO_INDEX', 'duo')
ES_VPN_INDEX = os.getenv('ES_VPN_INDEX', 'network-ise')
ES_NETWORK_INDEX = os.getenv('ES_NETWORK_INDEX', 'network-*')
ES_TIME_FIELD = os.getenv('ES_TIME_FIELD', '@timestamp')

IPDATA_KEY = os.getenv('IPDATA_KEY', '')
IPINFO_KEY = os.getenv('IPINFO_KEY', '')
METADATA_URL = os.getenv('METADATA_URL')
METADATA_SESSION = os.getenv('METADATA_SESSION')

HTTP_TIMEOUT = 10
# Cap on hits read for the pivot lookups
PIVOT_HITS = 100

DHCP_IP_RE = re.compile(r'on ([0-9.]+) to')
DHCP_MAC_RE = re.compile(r'to ([0-9a-f:]{17})')
CISCO_IP_RE = re.compile(r'IP (?:= |<)([0-9.]+)')
CISCO_USER_RE = re.compile(r'(?:user = |Username = |User <)(\w+)')
ISE_MAC_RE = re.compile(r'([0-9a-fA-F]{2}(?:[-:][0-9a-fA-F]{2}){5})')

ZID_RE = re.compile(r'"zid":"(\S+?)"')
CREATE_DATE_RE = re.compile(r'"createDate":"(\S+?)"')
STUDENT_ADDRESS_RE = re.compile(
    r'"(?:primary|campus)AddressCity":"(?P<city>[^"]*)"'
    r'(?:,"(?:primary|campus)AddressState":"(?P<state>[^"]*)")?'
    r'(?:.*,"(?:primary|campus)AddressCountry":"(?P<country>[^"]*)")?'
)
EMPLOYEE_ADDRESS_RE = re.compile(r'"hCity":"(?P<city>[^"]*)","hState":"(?P<state>[^"]*)"')


def is_mac(value):
    parts = value.split(':')
    return len(value) == 17 and len(parts) == 6 and all(
        len(p) == 2 and all(c in '0123456789abcdefABCDEF' for c in p) for p in parts
    )


def is_account_name(value):
    return 2 <= len(value) < 20 and value.isascii() and value.isalnum()


class SearchClient:
    def __init__(self, es_host=ES_HOST, duo_index=ES_DUO_INDEX, vpn_index=ES_VPN_INDEX,
                 network_index=ES_NETWORK_INDEX):
        self.es = Elasticsearch(es_host, request_timeout=30, max_retries=1)
        self.duo_index = duo_index
        self.vpn_index = vpn_index
        self.network_index = network_index

    def _range(self, span):
        # Span bounds are naive local time; Elasticsearch reads an offset-less date as UTC
        return {'range': {ES_TIME_FIELD: {'gte': span.start.astimezone().isoformat(),
                                           'lte': span.end.astimezone().isoformat()}}}

    def _scan(self, index, filters, source=True):
        query = {'query': {'bool': {'filter': filters}}, '_source': source}
        try:
            return [hit['_source'] for hit in scan(self.es, index=index, query=query)]
        except Exception as e:
            logger.exception('Search on %s failed: %s', index, e)
            return None

    def _search_text(self, index, text, span):
        """Full-text search for pivot lookups, returning the raw hits joined as one buffer."""
        try:
            res = self.es.search(index=index, size=PIVOT_HITS, query={'bool': {
                'must': {'query_string': {'query': f'"{text}"'}},
                'filter': [self._range(span)],
            }})
        except Exception as e:
            logger.exception('Search for %s failed: %s', text, e)
            return ''
        return '\n'.join(json.dumps(h['_source']) for h in res['hits']['hits'])

    def fetch_account_list(self, span):
        logger.info('Querying account list from %s to %s', span.start, span.end)
        docs = self._scan(self.duo_index, [self._range(span), {'exists': {'field': 'user'}}], source=['user'])
        if docs is None:
            return None
        users = sorted({d['user'] for d in docs if isinstance(d.get('user'), str)})
        logger.info('Retrieved %d users', len(users))
        return users

    def fetch_records(self, span, account=None):
        filters = [self._range(span), {'exists': {'field': 'result'}}]
        if account is not None:
            filters.append({'term': {'user': account}})
        docs = self._scan(self.duo_index, filters)
        if docs is None:
            return None
        logger.info('Got %d raw logins', len(docs))
        return [json.dumps(d) for d in docs]

    def fetch_vpn_records(self, span, account):
        filters = [self._range(span), {'term': {'UserName': account}}, {'term': {'Class': 'CUVPN'}}]
        docs = self._scan(self.vpn_index, filters)
        if docs is None:
            return None
        logger.info('Got %d raw VPN logs', len(docs))
        return [json.dumps(d) for d in docs]

    # -------------------- Pivot lookups --------------------

    def ip_from_mac(self, mac, span):
        m = DHCP_IP_RE.search(self._search_text(self.network_index, mac, span))
        return m.group(1) if m else None

    def ip_from_account(self, account, span):
        m = CISCO_IP_RE.search(self._search_text(self.network_index, account, span))
        return m.group(1) if m else None

    def macs_from_ip(self, ip, span):
        return sorted({m for m in DHCP_MAC_RE.findall(self._search_text(self.network_index, ip, span))
                       if is_mac(m)})

    def macs_from_account(self, account, span):
        found = (m.lower().replace('-', ':')
                 for m in ISE_MAC_RE.findall(self._search_text(self.vpn_index, account, span)))
        return sorted({m for m in found if is_mac(m)})

    def account_from_ip(self, ip, span):
        m = CISCO_USER_RE.search(self._search_text(self.network_index, ip, span))
        if m and is_account_name(m.group(1)):
            return m.group(1)
        return None

    def account_from_mac(self, mac, span):
        m = CISCO_USER_RE.search(self._search_text(self.vpn_index, mac, span))
        if m and is_account_name(m.group(1)):
            return m.group(1)
        return None


class IpService:
    """Free-tier IP services: ipdata.co for threat flags, ipinfo.io for locations."""

    def __init__(self, ipdata_key=IPDATA_KEY, ipinfo_key=IPINFO_KEY):
        self.ipdata_key = ipdata_key
        self.session = requests.Session()
        if ipinfo_key:
            self.session.headers['Authorization'] = f'Bearer {ipinfo_key}'

    def fetch_ip_threat(self, ip):
        logger.info('Getting IP threat for %s', ip)
        try:
            r = requests.get(f'https://api.ipdata.co/{ip}/threat', params={'api-key': self.ipdata_key},
                             timeout=HTTP_TIMEOUT)
            r.raise_for_status()
            return IpThreat.from_json(r.json())
        except (requests.RequestException, ValueError) as e:
            logger.warning('IP threat lookup for %s failed: %s', ip, e)
            return None

    def fetch_ip_geoinfo(self, ip):
        logger.info('Getting IP info for %s', ip)
        try:
            r = self.session.get(f'https://ipinfo.io/{ip}', timeout=HTTP_TIMEOUT)
            r.raise_for_status()
            return IpInfo.from_json(r.json())
        except (requests.RequestException, ValueError, KeyError) as e:
            logger.warning('IP info lookup for %s failed: %s', ip, e)
            return None


class MetadataClient:
    """Account directory reached with an existing single sign-on session cookie."""

    def __init__(self, base_url=METADATA_URL, session_cookie=METADATA_SESSION):
        self.base_url = base_url.rstrip('/')
        self.session = requests.Session()
        name, _, value = session_cookie.partition('=')
        self.session.cookies.set(name, value)

    @classmethod
    def from_env(cls):
        if not METADATA_URL or not METADATA_SESSION:
            return None
        return cls()

    def _get(self, path):
        try:
            r = self.session.get(f'{self.base_url}/{path}', timeout=HTTP_TIMEOUT, allow_redirects=False)
            r.raise_for_status()
            return r.text
        except requests.RequestException as e:
            logger.warning('Metadata request %s failed: %s', path, e)
            return None

    def fetch_account_metadata(self, name):
        """Returns (creation date, Location or None), or None when the account can't be resolved."""
        logger.info('Fetching metadata for %s', name)
        resp = self._get(f'users/{name}')
        m = resp and ZID_RE.search(resp)
        if not m:
            return None
        zid = m.group(1)

        resp = self._get(f'accounts/{zid}')
        m = resp and CREATE_DATE_RE.search(resp)
        if not m:
            return None
        try:
            created = dateparser.isoparse(m.group(1))
        except ValueError:
            return None
        if created.tzinfo is not None:
            created = created.astimezone(tz.tzlocal()).replace(tzinfo=None)

        resp = self._get(f'students/{zid}')
        m = resp and STUDENT_ADDRESS_RE.search(resp)
        if m:
            return created, Location(city=m.group('city'), state=m.group('state'), country=m.group('country'))

        resp = self._get(f'employees/{zid}')
        m = resp and EMPLOYEE_ADDRESS_RE.search(resp)
        if m:
            return created, Location(city=m.group('city'), state=m.group('state'))
        return created, None


class TimeSpan:
    def __init__(self, start, end):
        self.start = start
        self.end = end

    @classmethod
    def last(cls, duration):
        end = datetime.now()
        return cls(end - duration, end)

    @classmethod
    def from_strings(cls, start, end):
        return cls(dateparser.parse(start), dateparser.parse(end))

    def __repr__(self):
        return f'TimeSpan({self.start.isoformat()}, {self.end.isoformat()})'
