"""
Turn raw Duo and VPN log lines into typed records.

The upstream logs do not share one shape: fields move around, get nested, or
arrive string-encoded inside other fields.  Instead of decoding each line as a
whole, every field is pulled out on its own with a small regex and falls back
to a default when it is missing.  Only the account name and the timestamp are
mandatory for login records.
"""
import enum
import ipaddress
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from dateutil import parser as dateparser
from dateutil import tz

logger = logging.getLogger('parser')

# Fixed timestamp shape, e.g. "2023-06-01 14:03:11.000 EDT"
RE_TIME_VALUE = re.compile(r'^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\.\d{3} [A-Z]{3,4}$')

TZINFOS = {
    'UTC': tz.UTC,
    'GMT': tz.UTC,
    'EST': tz.tzoffset('EST', -5 * 3600),
    'EDT': tz.tzoffset('EDT', -4 * 3600),
    'CST': tz.tzoffset('CST', -6 * 3600),
    'CDT': tz.tzoffset('CDT', -5 * 3600),
    'MST': tz.tzoffset('MST', -7 * 3600),
    'MDT': tz.tzoffset('MDT', -6 * 3600),
    'PST': tz.tzoffset('PST', -8 * 3600),
    'PDT': tz.tzoffset('PDT', -7 * 3600),
}

USER_RE = re.compile(r'"user": ?"([^"]+)"')
TIME_RE = re.compile(r'"_time": ?"([^"]*)"')
DEVICE_RE = re.compile(r'"device": ?"([^"]+)"')
FACTOR_RE = re.compile(r'"factor": ?"([^"]+)"')
INTEGRATION_RE = re.compile(r'"integration": ?"([^"]+)"')
REASON_RE = re.compile(r'"reason": ?"([^"]+)"')
RESULT_RE = re.compile(r'"result": ?"([^"]+)"')
IP_RE = re.compile(r'"ip": ?"([^"]+)"')

VPN_IP_RE = re.compile(r'Framed-IP-Address=([^,"]+)')
SOURCE_IP_RE = re.compile(r'Calling-Station-ID=([^,"]+)')
PLATFORM_RE = re.compile(r'device-platform=([^,"]+)')
MAC_RE = re.compile(r'device-mac=([0-9A-Fa-f]{2}(?:[-:][0-9A-Fa-f]{2}){5})')
USER_AGENT_RE = re.compile(r'user-agent=([^,"]+)')

# Addresses handed out by the VPN concentrators; logins from them carry no
# real geography.
VPN_IPS = frozenset(
    ipaddress.IPv4Address(ip.strip())
    for ip in os.getenv('AUTHWATCH_VPN_IPS', '130.127.255.220,130.127.255.222,0.0.0.0').split(',')
    if ip.strip()
)

NON_PUBLIC_NETWORKS = tuple(ipaddress.IPv4Network(n) for n in (
    '10.0.0.0/8', '172.16.0.0/12', '192.168.0.0/16',  # private
    '127.0.0.0/8',  # loopback
    '169.254.0.0/16',  # link local
    '224.0.0.0/4',  # multicast
    '255.255.255.255/32',  # broadcast
    '192.0.2.0/24', '198.51.100.0/24', '203.0.113.0/24',  # documentation
    '0.0.0.0/32',  # unspecified
))


class _Label(enum.Enum):
    def __str__(self):
        return self.value


class Factor(_Label):
    DUO_PUSH = 'Duo push'
    BYPASS = 'Bypass code'
    REMEMBERED_DEVICE = 'Remembered device'
    SMS_PASSCODE = 'SMS passcode'
    PASSCODE = 'Passcode'
    HARDWARE_TOKEN = 'Hardware token'
    PHONE_CALL = 'Phone call'
    SECURITY_KEY = 'Security Key'
    NONE = 'None'

    @classmethod
    def parse(cls, raw):
        return FACTORS.get(raw, cls.NONE)


FACTORS = {
    'Duo Push': Factor.DUO_PUSH,
    'n/a': Factor.NONE,
    'Bypass Status': Factor.BYPASS,
    'Bypass Code': Factor.BYPASS,
    'Remembered Device': Factor.REMEMBERED_DEVICE,
    'SMS Passcode': Factor.SMS_PASSCODE,
    'Passcode': Factor.PASSCODE,
    'Hardware Token': Factor.HARDWARE_TOKEN,
    'Phone Call': Factor.PHONE_CALL,
    'Touch ID (WebAuthn)': Factor.SECURITY_KEY,
    'Yubikey Passcode': Factor.SECURITY_KEY,
    'Security Key (WebAuthn)': Factor.SECURITY_KEY,
}


class Integration(_Label):
    """Service the login was for.  Unknown integrations stay as their raw string."""
    SHIBBOLETH = 'Shibboleth'
    CITRIX = 'Citrix'
    CU_VPN = 'CUVPN'
    LINUX = 'Linux Access'
    ADFS = 'ADFS'
    DMP = 'Device Management'
    RDP = 'RDP'
    PASSWORD_RESET = 'Password Reset'
    SPLUNK = 'Splunk'
    NONE = 'None'

    @classmethod
    def parse(cls, raw):
        return INTEGRATIONS.get(raw, raw)


INTEGRATIONS = {
    'Shibboleth': Integration.SHIBBOLETH,
    'Shibboleth External': Integration.SHIBBOLETH,
    'Radius Proxy Duo Only (Citrix)': Integration.CITRIX,
    'Clemson University VPN': Integration.CU_VPN,
    'UNIX Application (Palmetto)': Integration.LINUX,
    'School of Computing Linux Access': Integration.LINUX,
    'CECAS Linux Fastx Access': Integration.LINUX,
    'Infrastucture Linux Host': Integration.LINUX,
    'adfs.clemson.edu': Integration.ADFS,
    'Device Management Portal': Integration.DMP,
    'Device Management Portal Protected Resource': Integration.DMP,
    'Microsoft RDP Gateway': Integration.RDP,
    'Password Reset on IDP': Integration.PASSWORD_RESET,
    'CU Splunk': Integration.SPLUNK,
}


class Reason(_Label):
    USER_APPROVED = 'User approved'
    BYPASS = 'Bypass'
    REMEMBERED_DEVICE = 'Remembered device'
    VALID_PASSCODE = 'Valid passcode'
    TRUSTED_NETWORK = 'Trusted network'
    NO_RESPONSE = 'No response'
    USER_CANCELLED = 'User cancelled'
    INVALID_PASSCODE = 'Invalid passcode'
    DENY_UNENROLLED_USER = 'Deny unenrolled user'
    LOCKED_OUT = 'Locked out'
    USER_MISTAKE = 'User mistake'
    ERROR = 'Error'
    RESTRICTED_OFAC = 'Restricted Location'
    NONE = 'None'

    @classmethod
    def parse(cls, raw):
        raw = raw.lower()
        return REASONS.get(raw, raw)


REASONS = {
    'user approved': Reason.USER_APPROVED,
    'bypass user': Reason.BYPASS,
    'remembered device': Reason.REMEMBERED_DEVICE,
    'valid passcode': Reason.VALID_PASSCODE,
    'trusted network': Reason.TRUSTED_NETWORK,
    'no response': Reason.NO_RESPONSE,
    'user cancelled': Reason.USER_CANCELLED,
    'invalid passcode': Reason.INVALID_PASSCODE,
    'deny unenrolled user': Reason.DENY_UNENROLLED_USER,
    'locked out': Reason.LOCKED_OUT,
    'user mistake': Reason.USER_MISTAKE,
    'error': Reason.ERROR,
    'restricted ofac location': Reason.RESTRICTED_OFAC,
}


class LoginResult(_Label):
    SUCCESS = 'Success'
    FAILURE = 'Failure'
    FRAUD = 'Fraud'
    NONE = 'None'

    @classmethod
    def parse(cls, raw):
        return RESULTS.get(raw, raw)


RESULTS = {
    'SUCCESS': LoginResult.SUCCESS,
    'FAILURE': LoginResult.FAILURE,
    'FRAUD': LoginResult.FRAUD,
}


class FlagReason(_Label):
    """Why a login or an account was flagged."""
    FRAUD = 'Fraud'
    FAILURE = 'Failure'
    DMP = 'DMP'
    TRAVEL = 'Travel'


def _format_location(city, state, country):
    if country is None:
        return None
    if state is None:
        return country
    if city is None:
        return f'{state}, {country}'
    return f'{city}, {state}, {country}'


@dataclass(eq=False)
class LoginRecord:
    time: datetime
    account: str
    device: Optional[str] = None
    factor: Factor = Factor.NONE
    integration: object = Integration.NONE
    reason: object = Reason.NONE
    result: object = LoginResult.NONE
    ip: Optional[ipaddress.IPv4Address] = None
    country: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    # (longitude, latitude)
    location: Optional[Tuple[float, float]] = None
    asn: Optional[str] = None
    is_relay: bool = False
    flag_reasons: set = field(default_factory=set)

    def __eq__(self, other):
        if not isinstance(other, LoginRecord):
            return NotImplemented
        return self.time == other.time and self.account == other.account

    def __hash__(self):
        return hash((self.time, self.account))

    # Most recent first
    def __lt__(self, other):
        return self.time > other.time

    def is_vpn_ip(self):
        return self.ip is not None and self.ip in VPN_IPS

    def is_private_ip(self):
        return self.ip is not None and any(self.ip in net for net in NON_PUBLIC_NETWORKS)

    def format_location(self):
        if self.is_vpn_ip():
            return 'VPN'
        return _format_location(self.city, self.state, self.country)

    def to_dict(self):
        return {
            'time': self.time.isoformat(),
            'account': self.account,
            'device': self.device,
            'factor': str(self.factor),
            'integration': str(self.integration),
            'reason': str(self.reason),
            'result': str(self.result),
            'ip': str(self.ip) if self.ip else None,
            'location': self.format_location(),
            'coordinates': list(self.location) if self.location else None,
            'asn': self.asn,
            'is_relay': self.is_relay,
            'flags': sorted(str(f) for f in self.flag_reasons),
        }


@dataclass(eq=False)
class VpnRecord:
    time: datetime
    vpn_ip: ipaddress.IPv4Address
    source_ip: ipaddress.IPv4Address
    platform: str
    user_agent: str
    mac: Optional[str] = None
    country: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    is_relay: bool = False
    # True when the next (older) record belongs to the same device or address
    correlate_prev: bool = False

    def __eq__(self, other):
        if not isinstance(other, VpnRecord):
            return NotImplemented
        return self.time == other.time

    def __hash__(self):
        return hash(self.time)

    def __lt__(self, other):
        return self.time > other.time

    def format_location(self):
        return _format_location(self.city, self.state, self.country)

    def to_dict(self):
        return {
            'time': self.time.isoformat(),
            'vpn_ip': str(self.vpn_ip),
            'source_ip': str(self.source_ip),
            'platform': self.platform,
            'mac': self.mac,
            'user_agent': self.user_agent,
            'location': self.format_location(),
            'is_relay': self.is_relay,
            'correlate_prev': self.correlate_prev,
        }


def parse_time(value):
    """Parse the fixed Splunk timestamp format into naive local time, or None."""
    if not RE_TIME_VALUE.match(value):
        return None
    try:
        dt = dateparser.parse(value, tzinfos=TZINFOS)
    except (ValueError, OverflowError):
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(tz.tzlocal()).replace(tzinfo=None)
    return dt


def parse_ipv4(value):
    try:
        return ipaddress.IPv4Address(value)
    except ValueError:
        return None


def extract_ip(value):
    """Read an address from a literal, `localhost`, or a hostname like 10-0-0-1.host.example."""
    ip = parse_ipv4(value)
    if ip is not None:
        return ip
    if value == 'localhost':
        return ipaddress.IPv4Address('127.0.0.1')
    return parse_ipv4(value.split('.')[0].replace('-', '.'))


def normalize_mac(value):
    return value.lower().replace('-', ':')


def _search(pattern, text):
    m = pattern.search(text)
    return m.group(1) if m else None


def parse_login(raw, ipdb):
    """Build a LoginRecord from one raw Duo log line, or None when it must be skipped."""
    text = raw.replace('\\', '')

    user = _search(USER_RE, text)
    if user is None:
        logger.warning("Couldn't find user: %s", text)
        return None
    if any(c.isspace() for c in user) or user == 'System':
        return None

    logger.debug('Parsing log for %s', user)

    stamp = _search(TIME_RE, text)
    if stamp is None:
        return None
    time = parse_time(stamp)
    if time is None:
        logger.warning("Couldn't parse time of %s for user %s", stamp, user)
        return None

    record = LoginRecord(time=time, account=user)
    record.device = _search(DEVICE_RE, text)

    factor = _search(FACTOR_RE, text)
    if factor is not None:
        record.factor = Factor.parse(factor)
    integration = _search(INTEGRATION_RE, text)
    if integration is not None:
        record.integration = Integration.parse(integration)
    reason = _search(REASON_RE, text)
    if reason is not None:
        record.reason = Reason.parse(reason)
    result = _search(RESULT_RE, text)
    if result is not None:
        record.result = LoginResult.parse(result)

    ip = _search(IP_RE, text)
    if ip is not None:
        record.ip = extract_ip(ip)
        if record.ip is None:
            logger.warning("Couldn't parse ip for user %s: %s", user, ip)

    if record.ip is not None:
        geo = ipdb.lookup_geo(record.ip)
        if geo is not None:
            record.country = geo.country_code
            record.state = geo.state
            record.city = geo.city
            record.location = (geo.lon, geo.lat)
        record.is_relay = ipdb.is_proxy(record.ip)
        record.asn = ipdb.lookup_asn(record.ip)

    return record


def parse_vpn(raw, ipdb):
    """Build a VpnRecord from one raw VPN accounting log line, or None."""
    stamp = _search(TIME_RE, raw)
    if stamp is None:
        return None
    time = parse_time(stamp)
    if time is None:
        return None

    vpn_ip = _search(VPN_IP_RE, raw)
    source_ip = _search(SOURCE_IP_RE, raw)
    platform = _search(PLATFORM_RE, raw)
    user_agent = _search(USER_AGENT_RE, raw)
    if None in (vpn_ip, source_ip, platform, user_agent):
        return None
    vpn_ip, source_ip = parse_ipv4(vpn_ip), parse_ipv4(source_ip)
    if vpn_ip is None or source_ip is None:
        return None

    record = VpnRecord(
        time=time,
        vpn_ip=vpn_ip,
        source_ip=source_ip,
        platform=platform,
        user_agent=user_agent,
    )
    mac = _search(MAC_RE, raw)
    if mac is not None:
        record.mac = normalize_mac(mac)

    geo = ipdb.lookup_geo(source_ip)
    if geo is not None:
        record.country = geo.country_code
        record.state = geo.state
        record.city = geo.city
    record.is_relay = ipdb.is_proxy(source_ip)
    return record
