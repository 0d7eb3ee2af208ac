"""
Glue between the log backend, the IP databases, the cache and the scoring passes.

Every long running job is submitted to a thread pool and handed back as a
`concurrent.futures.Future`; callers poll `done()` and collect `result()`.
"""
import ipaddress
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from authwatch.analyzer import Account, dedup, group_accounts, rank_accounts
from authwatch.clients import TimeSpan, is_account_name, is_mac
from authwatch.geo import correlate_vpn_records
from authwatch.parser import parse_ipv4, parse_login, parse_vpn

logger = logging.getLogger('engine')

HISTORY_RANGE = timedelta(days=7)
VPN_RANGE = timedelta(days=7)
PIVOT_RANGE = timedelta(hours=24)
PIVOT_ROUNDS = 2


class PivotDetails:
    """What a pivot lookup has found so far.  Shared with the caller while the job runs."""

    def __init__(self):
        self.lock = threading.Lock()
        self.running = False
        self.ips = []
        self.macs = []
        self.account = None

    def snapshot(self):
        with self.lock:
            return {'running': self.running, 'ips': list(self.ips), 'macs': list(self.macs),
                    'account': self.account}


class Engine:
    def __init__(self, search, storage, ipdb, metadata=None, ipservice=None, max_workers=4):
        self.search = search
        self.storage = storage
        self.ipdb = ipdb
        self.metadata = metadata
        self.ipservice = ipservice
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self._progress = 0.0
        self._progress_lock = threading.Lock()
        # IPs whose threat lookup failed; not retried while the engine lives
        self.failed_ips = set()
        self._failed_lock = threading.Lock()

    def shutdown(self):
        self.executor.shutdown(wait=False)

    @property
    def progress(self):
        with self._progress_lock:
            return self._progress

    def _set_progress(self, value):
        with self._progress_lock:
            self._progress = value

    # -------------------- Parsing --------------------

    def parse_logins(self, raw_lines):
        return [r for r in (parse_login(line, self.ipdb) for line in raw_lines) if r is not None]

    def parse_vpn_logs(self, raw_lines):
        records = [r for r in (parse_vpn(line, self.ipdb) for line in raw_lines) if r is not None]
        records.sort()
        return dedup(records)

    # -------------------- Scan --------------------

    def run_scan(self, user_range, history_range=None):
        """Start a full scan.  Returns a Future resolving to the ranked list of flagged accounts."""
        self._set_progress(0.0)
        history_range = history_range or TimeSpan.last(HISTORY_RANGE)
        return self.executor.submit(self.scan, user_range, history_range)

    def scan(self, user_range, history_range):
        logger.info('Starting scan for %s', user_range)
        names = self.search.fetch_account_list(user_range)
        if names is None:
            return []
        raw = self.search.fetch_records(history_range)
        if raw is None:
            return []
        accounts = group_accounts(names, self.parse_logins(raw), user_range.start)
        failed = set()

        logger.info('Performing first check for %d accounts', len(accounts))
        accounts = [a for a in accounts if not a.first_check() and not self.storage.investigated(a.name)]

        if self.metadata is not None:
            count = len(accounts)
            logger.info('Performing second check for %d accounts', count)
            kept = []
            for i, account in enumerate(accounts):
                self._set_progress((i + 1) / count / 2)
                self.load_metadata(account, failed)
                if not account.second_check():
                    logger.info('%s failed second check', account.name)
                    kept.append(account)
            accounts = kept
        self._set_progress(0.5)

        count = len(accounts)
        logger.info('Performing third check for %d accounts', count)
        kept = []
        for i, account in enumerate(accounts):
            self._set_progress(0.5 + (i + 1) / count / 2)
            self.relocate_records(account, failed)
            if not account.first_check() and not self.storage.investigated(account.name):
                kept.append(account)
            else:
                logger.info('%s is no longer suspicious', account.name)
        if len(kept) == count:
            logger.info('Third check did not remove any accounts')

        self._set_progress(1.0)
        kept = rank_accounts(kept)
        logger.info('Finished scan with %d accounts', len(kept))
        return kept

    def load_metadata(self, account, failed=None):
        """Fill in creation date and home location, from the cache first."""
        info = self.storage.get_metadata(account.name)
        if info is None and self.metadata is not None and (failed is None or account.name not in failed):
            info = self.metadata.fetch_account_metadata(account.name)
            if info is not None:
                self.storage.add_metadata(account.name, info)
            elif failed is not None:
                failed.add(account.name)
        if info is not None:
            account.creation_date, account.location = info

    def ipinfo(self, ip, failed=None):
        info = self.storage.get_ipinfo(ip)
        if info is not None or self.ipservice is None:
            return info
        if failed is not None and ip in failed:
            return None
        info = self.ipservice.fetch_ip_geoinfo(ip)
        if info is not None:
            self.storage.add_ipinfo(ip, info)
        elif failed is not None:
            failed.add(ip)
        return info

    def relocate_records(self, account, failed=None):
        """Move checked records to the provider location when it fits the surrounding activity better."""
        for i in range(account.checked_login_count):
            record = account.records[i]
            if record.ip is None or record.is_private_ip() or record.is_vpn_ip():
                continue
            info = self.ipinfo(record.ip, failed)
            if info is not None and account.closer_to(info, i):
                logger.info('Updating log with ip %s for %s', record.ip, account.name)
                account.relocate(i, info)

    # -------------------- Single account --------------------

    def run_lookup(self, name, days):
        return self.executor.submit(self.lookup, name, days)

    def lookup(self, name, days):
        span = TimeSpan.last(timedelta(days=days))
        raw = self.search.fetch_records(span, name)
        if raw is None:
            return None
        records = self.parse_logins(raw)
        records.sort()
        account = Account(name, dedup(records), span.start)
        self.load_metadata(account)
        account.investigated = self.storage.investigated(name)
        account.first_check()
        return account

    def more_records(self, name, days):
        """Future resolving to a longer history for one account."""
        def fetch():
            raw = self.search.fetch_records(TimeSpan.last(timedelta(days=days)), name)
            if raw is None:
                return None
            records = self.parse_logins(raw)
            records.sort()
            return dedup(records)
        return self.executor.submit(fetch)

    # -------------------- VPN --------------------

    def run_vpn(self, name):
        return self.executor.submit(self.vpn_logs, name)

    def vpn_logs(self, name):
        raw = self.search.fetch_vpn_records(TimeSpan.last(VPN_RANGE), name)
        if raw is None:
            return None
        return correlate_vpn_records(self.parse_vpn_logs(raw))

    # -------------------- Pivot --------------------

    def run_pivot(self, value, details):
        return self.executor.submit(self.pivot, value, details)

    def pivot(self, value, details):
        """Chase IPs, MACs and the owning account from any one of them."""
        span = TimeSpan.last(PIVOT_RANGE)
        with details.lock:
            details.running = True
            if is_mac(value):
                details.macs.append(value.lower())
            elif parse_ipv4(value) is not None:
                details.ips.append(value)
            elif is_account_name(value):
                details.account = value
            else:
                details.running = False
                return details

        def add(found, bucket):
            for item in found:
                with details.lock:
                    if item not in bucket:
                        bucket.append(item)

        try:
            for _ in range(PIVOT_ROUNDS):
                account = details.account
                add([ip for ip in (self.search.ip_from_mac(m, span) for m in list(details.macs)) if ip],
                    details.ips)
                if account:
                    add([ip for ip in [self.search.ip_from_account(account, span)] if ip], details.ips)

                for ip in list(details.ips):
                    add(self.search.macs_from_ip(ip, span), details.macs)
                if account:
                    add(self.search.macs_from_account(account, span), details.macs)

                if details.account is None:
                    for found in [self.search.account_from_ip(ip, span) for ip in list(details.ips)] + \
                            [self.search.account_from_mac(m, span) for m in list(details.macs)]:
                        if found:
                            with details.lock:
                                details.account = found
        finally:
            with details.lock:
                details.running = False
        return details

    # -------------------- Cache accessors --------------------

    def get_threat(self, ip):
        ip = ipaddress.IPv4Address(ip)
        threat = self.storage.get_threat(ip)
        if threat is not None:
            return threat
        with self._failed_lock:
            if ip in self.failed_ips:
                return None
        if self.ipservice is None:
            return None
        threat = self.ipservice.fetch_ip_threat(ip)
        if threat is not None:
            self.storage.add_threat(ip, threat)
        else:
            with self._failed_lock:
                self.failed_ips.add(ip)
        return threat

    def investigated(self, name):
        return self.storage.investigated(name)

    def mark_investigated(self, name, mark):
        self.storage.mark_investigated(name, mark)

    def analyst_name(self):
        return self.storage.get_analyst_name()

    def set_analyst_name(self, value):
        self.storage.set_analyst_name(value)

    def username(self):
        return self.storage.get_username()

    def set_username(self, value):
        self.storage.set_username(value)
