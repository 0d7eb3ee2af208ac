#!/usr/bin/env python3
"""
Command line front end: scan a time range for suspicious accounts, look up one
account, list correlated VPN sessions, or manage investigated marks.
"""
import argparse
import json
import logging
import sys
from datetime import timedelta

from authwatch.clients import ES_HOST, IpService, MetadataClient, SearchClient, TimeSpan
from authwatch.engine import Engine, PivotDetails
from authwatch.ipdb import IpDB
from authwatch.storage import CACHE_PATH, Storage

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger('authwatch')


def build_engine(es_host, cache):
    return Engine(
        search=SearchClient(es_host=es_host),
        storage=Storage(cache),
        ipdb=IpDB.load(),
        metadata=MetadataClient.from_env(),
        ipservice=IpService(),
    )


def cmd_scan(engine, args):
    span = TimeSpan.from_strings(args.start, args.end)
    accounts = engine.run_scan(span, TimeSpan.last(timedelta(days=args.history))).result()
    return [a.to_dict() for a in accounts]


def cmd_lookup(engine, args):
    account = engine.run_lookup(args.name, args.days).result()
    return account.to_dict(all_records=True) if account else None


def cmd_history(engine, args):
    records = engine.more_records(args.name, args.days).result()
    return [r.to_dict() for r in records] if records is not None else None


def cmd_vpn(engine, args):
    records = engine.run_vpn(args.name).result()
    return [r.to_dict() for r in records] if records is not None else None


def cmd_investigate(engine, args):
    engine.mark_investigated(args.name, not args.clear)
    return {'name': args.name, 'investigated': engine.investigated(args.name)}


def cmd_threat(engine, args):
    threat = engine.get_threat(args.ip)
    return threat.to_dict() if threat else None


def cmd_pivot(engine, args):
    return engine.run_pivot(args.value, PivotDetails()).result().snapshot()


def main(argv=None):
    parser = argparse.ArgumentParser(description='Flag suspicious authentication activity')
    parser.add_argument('--es-host', type=str, default=ES_HOST)
    parser.add_argument('--cache', type=str, default=CACHE_PATH)
    sub = parser.add_subparsers(dest='command', required=True)

    scan = sub.add_parser('scan', help='score every account active in a time range')
    scan.add_argument('--start', required=True)
    scan.add_argument('--end', required=True)
    scan.add_argument('--history', type=int, default=7, help='days of logs to score against')
    scan.set_defaults(func=cmd_scan)

    lookup = sub.add_parser('lookup', help='show one account')
    lookup.add_argument('name')
    lookup.add_argument('--days', type=int, default=7)
    lookup.set_defaults(func=cmd_lookup)

    history = sub.add_parser('history', help='list every login of one account over a longer range')
    history.add_argument('name')
    history.add_argument('--days', type=int, default=30)
    history.set_defaults(func=cmd_history)

    vpn = sub.add_parser('vpn', help='show correlated VPN sessions for an account')
    vpn.add_argument('name')
    vpn.set_defaults(func=cmd_vpn)

    investigate = sub.add_parser('investigate', help='hide an account from scans for 24 hours')
    investigate.add_argument('name')
    investigate.add_argument('--clear', action='store_true')
    investigate.set_defaults(func=cmd_investigate)

    threat = sub.add_parser('threat', help='show threat data for an IP')
    threat.add_argument('ip')
    threat.set_defaults(func=cmd_threat)

    pivot = sub.add_parser('pivot', help='find the IPs, MACs and account tied to a value')
    pivot.add_argument('value', help='an IPv4 address, a MAC address or an account name')
    pivot.set_defaults(func=cmd_pivot)

    args = parser.parse_args(argv)
    engine = build_engine(args.es_host, args.cache)
    try:
        out = args.func(engine, args)
    except ValueError as e:
        parser.error(str(e))
    finally:
        engine.shutdown()
    json.dump(out, sys.stdout, indent=2)
    sys.stdout.write('\n')
    return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info('Shutting down')
