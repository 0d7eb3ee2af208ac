import ipaddress
import json
from datetime import datetime, timedelta

import pytest
from dateutil import tz

from authwatch.clients import TimeSpan
from authwatch.engine import Engine, PivotDetails
from authwatch.ipdb import GeoEntry, IpDB
from authwatch.models import IpInfo, IpThreat, Location
from authwatch.storage import Storage

BASE = datetime(2024, 3, 1, 12, 0)
USER_RANGE = TimeSpan(BASE - timedelta(hours=2), BASE)
HISTORY_RANGE = TimeSpan(BASE - timedelta(days=7), BASE)

TX_IP = '20.0.0.1'
OH_IP = '30.0.0.1'
BERLIN_IP = '40.0.0.1'
CLEMSON_IP = '50.0.0.1'


def block(ip, country_code, state, city, lat, lon):
    lower = int(ipaddress.IPv4Address(ip)) & ~0xFF
    return GeoEntry(lower, lower + 255, country_code, country_code, state, city, lat, lon)


def make_ipdb():
    return IpDB(geo_rows=[
        block(TX_IP, 'US', 'Texas', 'Austin', 30.2672, -97.7431),
        block(OH_IP, 'US', 'Ohio', 'Columbus', 39.9612, -82.9988),
        block(BERLIN_IP, 'DE', 'Berlin', 'Berlin', 52.52, 13.40),
        block(CLEMSON_IP, 'US', 'South Carolina', 'Clemson', 34.68, -82.84),
    ])


def utc_string(t):
    return t.replace(tzinfo=tz.tzlocal()).astimezone(tz.UTC).strftime('%Y-%m-%d %H:%M:%S.000 UTC')


def duo(user, minutes_ago, result='SUCCESS', ip=TX_IP, base=BASE):
    return json.dumps({'_time': utc_string(base - timedelta(minutes=minutes_ago)), 'user': user,
                       'result': result, 'ip': ip, 'integration': 'Shibboleth'})


def vpn(minutes_ago, source, mac=None, base=BASE):
    raw = f'Framed-IP-Address=10.10.0.5, Calling-Station-ID={source}, device-platform=win, '
    if mac:
        raw += f'device-mac={mac}, '
    raw += 'user-agent=AnyConnect Windows, Class=CUVPN'
    return json.dumps({'_time': utc_string(base - timedelta(minutes=minutes_ago)), '_raw': raw})


class DummySearch:
    def __init__(self, names=(), lines=(), vpn_lines=()):
        self.names = list(names)
        self.lines = list(lines)
        self.vpn_lines = list(vpn_lines)
        self.ip_by_mac = {}
        self.ip_by_account = {}
        self.macs_by_ip = {}
        self.macs_by_account = {}
        self.account_by_ip = {}
        self.account_by_mac = {}

    def fetch_account_list(self, span):
        return self.names

    def fetch_records(self, span, account=None):
        if self.lines is None:
            return None
        if account is None:
            return self.lines
        return [line for line in self.lines if json.loads(line)['user'] == account]

    def fetch_vpn_records(self, span, account):
        return self.vpn_lines

    def ip_from_mac(self, mac, span):
        return self.ip_by_mac.get(mac)

    def ip_from_account(self, account, span):
        return self.ip_by_account.get(account)

    def macs_from_ip(self, ip, span):
        return self.macs_by_ip.get(ip, [])

    def macs_from_account(self, account, span):
        return self.macs_by_account.get(account, [])

    def account_from_ip(self, ip, span):
        return self.account_by_ip.get(ip)

    def account_from_mac(self, mac, span):
        return self.account_by_mac.get(mac)


class DummyIpService:
    def __init__(self, geoinfo=None, threats=None):
        self.geoinfo = geoinfo or {}
        self.threats = threats or {}
        self.geoinfo_calls = []
        self.threat_calls = []

    def fetch_ip_geoinfo(self, ip):
        self.geoinfo_calls.append(str(ip))
        return self.geoinfo.get(str(ip))

    def fetch_ip_threat(self, ip):
        self.threat_calls.append(str(ip))
        return self.threats.get(str(ip))


class DummyMetadata:
    def __init__(self, accounts):
        self.accounts = accounts
        self.calls = []

    def fetch_account_metadata(self, name):
        self.calls.append(name)
        return self.accounts.get(name)


OLD = datetime(2020, 1, 1)
CLEMSON_HOME = Location('Clemson', 'SC', 'US')
GREENVILLE = IpInfo(ip=BERLIN_IP, city='Greenville', region='South Carolina', country='US',
                    lat=34.8526, lon=-82.394)


def scan_lines():
    return [
        # alice: nothing but successes
        duo('alice', 0), duo('alice', 30), duo('alice', 60),
        # bob: fraud from Texas
        duo('bob', 0), duo('bob', 20, 'FRAUD'), duo('bob', 40),
        # carol: failures from her home state
        duo('carol', 0, 'FAILURE', OH_IP), duo('carol', 60, 'FAILURE', OH_IP),
        # dave: a bad geolocation in Berlin
        duo('dave', 0, 'SUCCESS', BERLIN_IP), duo('dave', 10, 'NONE', CLEMSON_IP),
        # erin: fraud, but already being looked at
        duo('erin', 0, 'FRAUD'),
        # frank: repeated failures, no metadata available
        duo('frank', 0, 'FAILURE'), duo('frank', 40, 'FAILURE'), duo('frank', 80, 'FAILURE'),
        # duplicate of one of bob's logs
        duo('bob', 0),
        'not a log line',
    ]


@pytest.fixture
def storage(tmp_path):
    s = Storage(str(tmp_path / 'cache.db'))
    yield s
    s.close()


def make_engine(storage, search, metadata=None, ipservice=None):
    return Engine(search, storage, make_ipdb(), metadata=metadata, ipservice=ipservice)


def test_full_scan(storage):
    search = DummySearch(['alice', 'bob', 'carol', 'dave', 'erin', 'frank'], scan_lines())
    metadata = DummyMetadata({
        'bob': (OLD, CLEMSON_HOME),
        'carol': (OLD, Location('Columbus', 'OH', 'US')),
        'dave': (OLD, CLEMSON_HOME),
    })
    ipservice = DummyIpService(geoinfo={BERLIN_IP: GREENVILLE})
    storage.mark_investigated('erin', True)

    engine = make_engine(storage, search, metadata, ipservice)
    try:
        accounts = engine.run_scan(USER_RANGE, HISTORY_RANGE).result()
    finally:
        engine.shutdown()

    assert [a.name for a in accounts] == ['bob', 'frank']
    bob, frank = accounts
    assert bob.score == 20
    assert [str(r) for r in bob.reasons] == ['Fraud']
    assert len(bob.records) == 3
    assert bob.location == CLEMSON_HOME
    assert frank.score == 3
    assert frank.location is None
    assert engine.progress == 1.0

    # The address that failed to resolve is only asked for once per scan
    assert ipservice.geoinfo_calls.count(TX_IP) == 1
    assert sorted(metadata.calls) == ['bob', 'carol', 'dave', 'frank']

    # Answers are cached for next time
    assert storage.get_metadata('bob') == (OLD, CLEMSON_HOME)
    assert storage.get_metadata('frank') is None
    assert storage.get_ipinfo(BERLIN_IP).city == 'Greenville'


def test_scan_uses_cached_metadata(storage):
    storage.add_metadata('carol', (OLD, Location('Columbus', 'OH', 'US')))
    search = DummySearch(['carol'], scan_lines())
    metadata = DummyMetadata({})
    engine = make_engine(storage, search, metadata)
    try:
        assert engine.scan(USER_RANGE, HISTORY_RANGE) == []
    finally:
        engine.shutdown()
    assert metadata.calls == []


def test_scan_without_metadata_skips_second_check(storage):
    search = DummySearch(['carol'], scan_lines())
    engine = make_engine(storage, search)
    try:
        accounts = engine.scan(USER_RANGE, HISTORY_RANGE)
    finally:
        engine.shutdown()
    assert [a.name for a in accounts] == ['carol']
    assert accounts[0].score == 2
    assert engine.progress == 1.0


def test_scan_with_unreachable_backend(storage):
    search = DummySearch()
    search.names = None
    engine = make_engine(storage, search)
    try:
        assert engine.scan(USER_RANGE, HISTORY_RANGE) == []
        search.names = ['bob']
        search.lines = None
        assert engine.scan(USER_RANGE, HISTORY_RANGE) == []
    finally:
        engine.shutdown()


def test_lookup(storage):
    now = datetime.now().replace(microsecond=0)
    search = DummySearch(lines=[
        duo('bob', 5, 'FRAUD', base=now), duo('bob', 15, base=now), duo('alice', 5, base=now),
    ])
    storage.mark_investigated('bob', True)
    engine = make_engine(storage, search, DummyMetadata({'bob': (OLD, CLEMSON_HOME)}))
    try:
        account = engine.run_lookup('bob', 7).result()
        more = engine.more_records('bob', 30).result()
    finally:
        engine.shutdown()
    assert account.name == 'bob'
    assert account.investigated
    assert account.location == CLEMSON_HOME
    assert account.score == 20
    assert account.checked_login_count == 2
    assert [r.time for r in more] == [now - timedelta(minutes=5), now - timedelta(minutes=15)]


def test_vpn_logs(storage):
    search = DummySearch(vpn_lines=[
        vpn(30, '1.1.1.1', 'AA-BB-CC-DD-EE-FF'),
        vpn(0, '8.8.8.8'),
        vpn(10, '8.8.8.8', 'AA-BB-CC-DD-EE-FF'),
        vpn(10, '8.8.8.8', 'AA-BB-CC-DD-EE-FF'),
        vpn(60, '9.9.9.9'),
        '{"_time": "garbage"}',
    ])
    engine = make_engine(storage, search)
    try:
        records = engine.run_vpn('jdoe').result()
    finally:
        engine.shutdown()
    assert [r.time for r in records] == [BASE - timedelta(minutes=m) for m in (0, 10, 30, 60)]
    assert [r.correlate_prev for r in records] == [True, True, False, False]


def test_threat_lookups_are_cached(storage):
    ipservice = DummyIpService(threats={'8.8.8.8': IpThreat(is_datacenter=True)})
    engine = make_engine(storage, DummySearch(), ipservice=ipservice)
    try:
        assert engine.get_threat('8.8.8.8').is_datacenter
        assert engine.get_threat('8.8.8.8').is_datacenter
        assert engine.get_threat('1.1.1.1') is None
        assert engine.get_threat('1.1.1.1') is None
        with pytest.raises(ValueError):
            engine.get_threat('not an ip')
    finally:
        engine.shutdown()
    assert ipservice.threat_calls == ['8.8.8.8', '1.1.1.1']
    assert storage.get_threat('8.8.8.8').is_datacenter


def test_pivot_from_mac(storage):
    search = DummySearch()
    search.ip_by_mac = {'aa:bb:cc:dd:ee:ff': '10.1.2.3'}
    search.macs_by_ip = {'10.1.2.3': ['aa:bb:cc:dd:ee:ff', '11:22:33:44:55:66']}
    search.account_by_ip = {'10.1.2.3': 'jdoe'}
    search.ip_by_account = {'jdoe': '10.1.2.3'}
    engine = make_engine(storage, search)
    details = PivotDetails()
    try:
        engine.run_pivot('AA:BB:CC:DD:EE:FF', details).result()
    finally:
        engine.shutdown()
    assert details.snapshot() == {
        'running': False,
        'ips': ['10.1.2.3'],
        'macs': ['aa:bb:cc:dd:ee:ff', '11:22:33:44:55:66'],
        'account': 'jdoe',
    }


def test_pivot_from_account(storage):
    search = DummySearch()
    search.ip_by_account = {'jdoe': '10.1.2.3'}
    search.macs_by_account = {'jdoe': ['aa:bb:cc:dd:ee:ff']}
    engine = make_engine(storage, search)
    try:
        details = engine.pivot('jdoe', PivotDetails())
    finally:
        engine.shutdown()
    assert details.ips == ['10.1.2.3']
    assert details.macs == ['aa:bb:cc:dd:ee:ff']
    assert details.account == 'jdoe'


def test_pivot_rejects_unknown_values(storage):
    engine = make_engine(storage, DummySearch())
    try:
        details = engine.pivot('not an account!', PivotDetails())
    finally:
        engine.shutdown()
    assert details.snapshot() == {'running': False, 'ips': [], 'macs': [], 'account': None}


def test_settings_pass_through(storage):
    engine = make_engine(storage, DummySearch())
    try:
        engine.set_analyst_name('Pat')
        engine.set_username('jdoe')
        engine.mark_investigated('jdoe', True)
        assert engine.analyst_name() == 'Pat'
        assert engine.username() == 'jdoe'
        assert engine.investigated('jdoe')
    finally:
        engine.shutdown()


def test_progress_reaches_half_after_first_check(storage):
    search = DummySearch(['carol', 'frank'], scan_lines())
    engine = make_engine(storage, search)
    values = []
    set_progress = engine._set_progress

    def record(value):
        values.append(value)
        set_progress(value)

    engine._set_progress = record
    try:
        engine.scan(USER_RANGE, HISTORY_RANGE)
    finally:
        engine.shutdown()
    assert values == [0.5, 0.75, 1.0, 1.0]
