"""
Distance math and VPN log correlation.

Coordinates are `(longitude, latitude)` tuples everywhere in this package.
"""
import math

MEAN_EARTH_RADIUS = 6_371_008.8  # m


def haversine_distance(p1, p2):
    """Great-circle distance in metres between two (lon, lat) points."""
    theta1 = math.radians(p1[1])
    theta2 = math.radians(p2[1])
    delta_theta = math.radians(p2[1] - p1[1])
    delta_lambda = math.radians(p2[0] - p1[0])
    a = math.sin(delta_theta / 2) ** 2 + math.cos(theta1) * math.cos(theta2) * math.sin(delta_lambda / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))
    return MEAN_EARTH_RADIUS * c


def vpn_correlates(a, b):
    return a.source_ip == b.source_ip or (bool(a.mac) and a.mac == b.mac)


def correlate_vpn_records(records):
    """Mark each record whose older neighbour came from the same address or device.

    `records` must be sorted most recent first.  The oldest record has nothing
    to correlate against and is left alone.
    """
    for i in range(1, len(records)):
        if vpn_correlates(records[i - 1], records[i]):
            records[i - 1].correlate_prev = True
    return records
