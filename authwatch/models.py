"""
Facts returned by the external services and kept in the cache.
"""
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Location:
    """Home location of an account as reported by the metadata service."""
    city: str
    # The metadata service does not always return a state or a country
    state: Optional[str] = None
    country: Optional[str] = None

    def __str__(self):
        return ', '.join(p for p in (self.city, self.state, self.country) if p)


@dataclass
class IpThreat:
    """Threat flags for one address (ipdata.co)."""
    FLAGS = ('is_tor', 'is_icloud_relay', 'is_proxy', 'is_datacenter', 'is_anonymous',
             'is_known_attacker', 'is_known_abuser', 'is_threat', 'is_bogon')

    is_tor: bool = False
    is_icloud_relay: bool = False
    is_proxy: bool = False
    is_datacenter: bool = False
    is_anonymous: bool = False
    is_known_attacker: bool = False
    is_known_abuser: bool = False
    is_threat: bool = False
    is_bogon: bool = False
    # Never cached
    blocklists: List[dict] = field(default_factory=list)

    @classmethod
    def from_json(cls, data):
        return cls(blocklists=list(data.get('blocklists') or []),
                   **{flag: bool(data.get(flag, False)) for flag in cls.FLAGS})

    def is_clean(self):
        return not (any(getattr(self, flag) for flag in self.FLAGS) or self.blocklists)

    def to_dict(self):
        d = {flag: getattr(self, flag) for flag in self.FLAGS}
        d['blocklists'] = self.blocklists
        d['clean'] = self.is_clean()
        return d


@dataclass
class IpInfo:
    """Location of one address according to ipinfo.io."""
    ip: str
    city: str
    region: str
    country: str
    lat: float
    lon: float
    hostname: Optional[str] = None
    org: str = ''
    postal: str = ''
    timezone: str = ''

    @property
    def location(self):
        return (self.lon, self.lat)

    @classmethod
    def from_json(cls, data):
        """ipinfo returns the coordinates as a single "lat,lon" string."""
        lat, lon = (float(x) for x in data['loc'].split(','))
        return cls(
            ip=data['ip'],
            hostname=data.get('hostname'),
            city=data.get('city', ''),
            region=data.get('region', ''),
            country=data.get('country', ''),
            lat=lat,
            lon=lon,
            org=data.get('org', ''),
            postal=data.get('postal', ''),
            timezone=data.get('timezone', ''),
        )
