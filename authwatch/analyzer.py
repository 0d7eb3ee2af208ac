"""
Rule-based scoring of accounts ("vibe checks").

Each check returns True when the account passes, meaning it looks benign and
is dropped.  Accounts that fail every check are kept for an analyst:
- first check: failures, fraud, impossible travel and device management portal failures
- second check: recently created accounts and activity from the account's home state
- third check: re-locate IPs with a second provider and re-run the first check
"""
import logging
import math
from datetime import timedelta

from authwatch.geo import haversine_distance
from authwatch.parser import FlagReason, Integration, LoginResult, Reason

logger = logging.getLogger('analyzer')

EARTH_CIRCUMFERENCE = 40_030.23  # km
# Time to cross half the earth at the impossible travel speed.  Logs this far
# before the window start still count as neighbours of logs inside it.
MAX_IMPOSSIBLE_TRAVEL_TIME = timedelta(minutes=int(EARTH_CIRCUMFERENCE / 2 / 1000 * 60))

RETRY_WINDOW = timedelta(minutes=30)
# GeoIP is only about 82% accurate at 250 km in the US
MIN_TRAVEL_DISTANCE = 250  # km
IMPOSSIBLE_SPEED = 1000  # kph
MAX_TRAVEL_POINTS = 15
FRAUD_WEIGHT = 20
DMP_WEIGHT = 2
NEW_ACCOUNT_AGE = timedelta(days=6 * 30)

SOUTH_CAROLINA = 'South Carolina'
NORTH_CAROLINA = 'North Carolina'
GEORGIA = 'Georgia'
HOME_STATE_SETS = (
    {SOUTH_CAROLINA},
    {NORTH_CAROLINA},
    {SOUTH_CAROLINA, NORTH_CAROLINA},
    {SOUTH_CAROLINA, GEORGIA},
)

STATE_ABBREVIATIONS = {
    'AL': 'Alabama', 'AK': 'Alaska', 'AZ': 'Arizona', 'AR': 'Arkansas', 'CA': 'California',
    'CO': 'Colorado', 'CT': 'Connecticut', 'DE': 'Delaware', 'FL': 'Florida', 'GA': 'Georgia',
    'HI': 'Hawaii', 'ID': 'Idaho', 'IL': 'Illinois', 'IN': 'Indiana', 'IA': 'Iowa',
    'KS': 'Kansas', 'KY': 'Kentucky', 'LA': 'Louisiana', 'ME': 'Maine', 'MD': 'Maryland',
    'MA': 'Massachusetts', 'MI': 'Michigan', 'MN': 'Minnesota', 'MS': 'Mississippi',
    'MO': 'Missouri', 'MT': 'Montana', 'NE': 'Nebraska', 'NV': 'Nevada', 'NH': 'New Hampshire',
    'NJ': 'New Jersey', 'NM': 'New Mexico', 'NY': 'New York', 'NC': 'North Carolina',
    'ND': 'North Dakota', 'OH': 'Ohio', 'OK': 'Oklahoma', 'OR': 'Oregon', 'PA': 'Pennsylvania',
    'RI': 'Rhode Island', 'SC': 'South Carolina', 'SD': 'South Dakota', 'TN': 'Tennessee',
    'TX': 'Texas', 'UT': 'Utah', 'VT': 'Vermont', 'VA': 'Virginia', 'WA': 'Washington',
    'WV': 'West Virginia', 'WI': 'Wisconsin', 'WY': 'Wyoming',
}


class Account:
    def __init__(self, name, records, window_start):
        self.name = name
        # Most recent first
        self.records = records
        cutoff = window_start - MAX_IMPOSSIBLE_TRAVEL_TIME
        count = 0
        for record in records:
            if record.time < cutoff:
                break
            count += 1
        self.checked_login_count = count
        self.reasons = []
        self.score = 0
        self.location = None
        self.creation_date = None
        self.investigated = False

    @property
    def checked(self):
        return self.records[:self.checked_login_count]

    def reset(self):
        self.score = 0
        self.reasons = []
        for record in self.records:
            record.flag_reasons.clear()

    def first_check(self):
        if self.checked_login_count == 0 or not self.records:
            return True

        self.reset()

        if all(r.result == LoginResult.SUCCESS for r in self.checked):
            return True

        if self.in_state():
            logger.info('%s is in state - ignored', self.name)
            return True

        failures = self.failures()
        if failures > 0:
            self.reasons.append(FlagReason.FAILURE)

        fraud = self.flag_fraud()
        if fraud > 0:
            self.reasons.append(FlagReason.FRAUD)

        travel = 0
        if self.impossible_travel_precheck():
            travel = self.impossible_travel()
            if travel > 0:
                self.reasons.append(FlagReason.TRAVEL)

        dmp = self.flag_dmp()
        if dmp > 0:
            self.reasons.append(FlagReason.DMP)

        self.score = failures + fraud * FRAUD_WEIGHT + dmp * DMP_WEIGHT + travel
        return not self.reasons

    def second_check(self):
        if self.location is None or self.creation_date is None or self.fraud() > 0:
            return False

        latest = self.records[0]
        if (latest.time - NEW_ACCOUNT_AGE < self.creation_date
                and any(r.reason == Reason.DENY_UNENROLLED_USER for r in self.checked)):
            logger.info('%s was created in the past 6 months', self.name)
            return True

        if all(self.same_state(r.state) for r in self.checked if not r.is_vpn_ip() and r.state is not None):
            logger.info("%s's activity is from home state", self.name)
            return True

        return False

    def failures(self):
        """Count failures, forgiving ones followed by a success on the same integration and IP within 30 minutes."""
        checked = self.checked
        count = 0
        for i in reversed(range(len(checked))):
            record = checked[i]
            if record.result != LoginResult.FAILURE:
                continue
            retried = any(
                later.result == LoginResult.SUCCESS
                and later.time - record.time <= RETRY_WINDOW
                and later.integration == record.integration
                and later.ip == record.ip
                for later in checked[:i]
            )
            if not retried:
                count += 1
        return count

    def flag_fraud(self):
        count = 0
        for record in self.checked:
            if record.result == LoginResult.FRAUD:
                record.flag_reasons.add(FlagReason.FRAUD)
                count += 1
        return count

    def fraud(self):
        return sum(1 for r in self.checked if r.result == LoginResult.FRAUD)

    def flag_dmp(self):
        count = 0
        for record in self.checked:
            if record.integration == Integration.DMP and record.result == LoginResult.FAILURE:
                record.flag_reasons.add(FlagReason.DMP)
                count += 1
        return count

    def in_state(self):
        states = {r.state for r in self.checked if not r.is_vpn_ip() and r.state is not None}
        return states in HOME_STATE_SETS

    def impossible_travel_precheck(self):
        located = [r for r in self.checked if not r.is_vpn_ip() and r.state is not None and r.country is not None]
        countries = {r.country for r in located}
        states = {r.state for r in located}
        return len(countries) > 1 or len(states) >= 2

    def impossible_travel(self):
        records = [
            r for r in self.checked
            if r.location is not None
            and not r.is_vpn_ip()
            and not r.is_private_ip()
            and not r.is_relay
            and r.integration != Integration.LINUX
        ]

        travel = 0.0
        for prev, nxt in zip(records, records[1:]):
            distance = haversine_distance(prev.location, nxt.location) / 1000  # km
            if distance < MIN_TRAVEL_DISTANCE:
                continue

            hours = abs((nxt.time - prev.time).total_seconds()) / 3600
            kph = distance / hours if hours else math.inf

            # 1000 kph filters out geoIP noise without missing inter-country travel
            if kph >= IMPOSSIBLE_SPEED:
                travel += min(math.log2(kph), MAX_TRAVEL_POINTS)
                prev.flag_reasons.add(FlagReason.TRAVEL)
                nxt.flag_reasons.add(FlagReason.TRAVEL)

        return int(travel)

    def closer_to(self, info, i):
        """True if `info` places record `i` nearer its previous record or the account's home."""
        record = self.records[i]
        if record.location is None:
            return False

        if i != 0:
            prev = self.records[i - 1].location
            if prev is not None:
                current = haversine_distance(prev, record.location)
                proposed = haversine_distance(prev, info.location)
                if proposed < current:
                    return True

        if self.location is not None:
            if (info.city and self.location.city == info.city) or self.same_state(info.region):
                return True
        return False

    def relocate(self, i, info):
        record = self.records[i]
        record.location = info.location
        record.country = info.country
        record.state = info.region
        record.city = info.city

    def same_state(self, state):
        if self.location is None or not self.location.state:
            return False
        home = self.location.state
        return home == state or STATE_ABBREVIATIONS.get(home) == state

    def to_dict(self, all_records=False):
        records = self.records if all_records else self.checked
        return {
            'name': self.name,
            'score': self.score,
            'fraud': self.fraud(),
            'reasons': [str(r) for r in self.reasons],
            'investigated': self.investigated,
            'location': str(self.location) if self.location else None,
            'creation_date': self.creation_date.isoformat() if self.creation_date else None,
            'checked_login_count': self.checked_login_count,
            'records': [r.to_dict() for r in records],
        }


def group_accounts(names, records, window_start):
    """Split parsed login records per account and build sorted, de-duplicated Accounts."""
    by_name = {name: [] for name in names}
    for record in records:
        if record.account in by_name:
            by_name[record.account].append(record)

    accounts = []
    for name, logins in by_name.items():
        logins.sort()
        accounts.append(Account(name, dedup(logins), window_start))
    return accounts


def dedup(records):
    """Drop consecutive duplicates from a sorted list."""
    out = []
    for record in records:
        if not out or out[-1] != record:
            out.append(record)
    return out


def rank_accounts(accounts):
    return sorted(accounts, key=lambda a: (-a.fraud(), -a.score))
