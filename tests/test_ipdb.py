import ipaddress

from authwatch.ipdb import GeoEntry, IpDB


def ip_int(ip):
    return int(ipaddress.IPv4Address(ip))


def make_ipdb():
    geo = [
        GeoEntry(ip_int('1.0.0.0'), ip_int('1.0.0.255'), 'US', 'United States of America', 'California',
                 'San Jose', 37.33939, -121.89496),
        GeoEntry(ip_int('1.0.1.0'), ip_int('1.0.3.255'), 'CN', 'China', 'Fujian', 'Fuzhou', 26.06139, 119.30611),
        # gap between 1.0.4.0 and 1.0.7.255
        GeoEntry(ip_int('1.0.8.0'), ip_int('1.0.15.255'), 'JP', 'Japan', 'Tokyo', 'Tokyo', 35.689497, 139.692317),
    ]
    proxy = [(ip_int('1.0.0.1'), ip_int('1.0.0.1')), (ip_int('1.0.2.10'), ip_int('1.0.2.20'))]
    asn = [(ip_int('1.0.0.0'), ip_int('1.0.0.255'), '13335'), (ip_int('1.0.1.0'), ip_int('1.0.3.255'), None)]
    return IpDB(geo, proxy, asn)


def test_lookup_inside_range():
    db = make_ipdb()
    assert db.lookup_geo('1.0.0.77').city == 'San Jose'
    assert db.lookup_geo(ipaddress.IPv4Address('1.0.2.1')).city == 'Fuzhou'
    assert db.lookup_geo('1.0.12.1').country_code == 'JP'


def test_lookup_bounds_are_inclusive():
    db = make_ipdb()
    assert db.lookup_geo('1.0.1.0').city == 'Fuzhou'
    assert db.lookup_geo('1.0.3.255').city == 'Fuzhou'
    assert db.lookup_geo('1.0.0.255').city == 'San Jose'


def test_lookup_outside_every_range():
    db = make_ipdb()
    assert db.lookup_geo('0.255.255.255') is None
    assert db.lookup_geo('1.0.5.5') is None
    assert db.lookup_geo('200.1.1.1') is None


def test_every_address_matches_at_most_one_row():
    db = make_ipdb()
    for last in range(0, 256, 7):
        for third in range(0, 17):
            ip = ip_int(f'1.0.{third}.{last}')
            matches = [r for r in db.geo.rows if r.lower <= ip <= r.upper]
            found = db.lookup_geo(ip)
            assert len(matches) <= 1
            assert found == (matches[0] if matches else None)


def test_proxy():
    db = make_ipdb()
    assert db.is_proxy('1.0.0.1')
    assert not db.is_proxy('1.0.0.2')
    assert db.is_proxy('1.0.2.15')
    assert not db.is_proxy('1.0.2.21')
    assert not db.is_proxy('9.9.9.9')


def test_asn():
    db = make_ipdb()
    assert db.lookup_asn('1.0.0.9') == '13335'
    assert db.lookup_asn('1.0.2.9') is None
    assert db.lookup_asn('8.8.8.8') is None


def test_empty_tables():
    db = IpDB()
    assert db.lookup_geo('1.2.3.4') is None
    assert not db.is_proxy('1.2.3.4')
    assert db.lookup_asn('1.2.3.4') is None


def test_load_from_csv(tmp_path):
    geo = tmp_path / 'ip2location.csv'
    geo.write_text(
        '0,16777215,-,-,-,-,0.000000,0.000000\n'
        '16777216,16777471,US,United States of America,California,San Jose,37.339390,-121.894960\n'
        'garbage\n'
    )
    proxy = tmp_path / 'ip2proxy.csv'
    proxy.write_text('16778241,16778241\n16777300,16777310\n')
    asn = tmp_path / 'ip2asn.csv'
    asn.write_text('16777216,16777471,13335\n')

    db = IpDB.load(str(geo), str(proxy), str(asn))
    unknown = db.lookup_geo('0.1.2.3')
    assert unknown.country_code is None
    assert unknown.city is None
    assert db.lookup_geo('1.0.0.5').lon == -121.89496
    assert db.is_proxy('1.0.0.90')
    assert db.is_proxy('1.0.4.1')
    assert db.lookup_asn('1.0.0.5') == '13335'


def test_load_missing_files(tmp_path):
    db = IpDB.load(str(tmp_path / 'a.csv'), str(tmp_path / 'b.csv'), str(tmp_path / 'c.csv'))
    assert len(db.geo) == 0
    assert db.lookup_geo('1.2.3.4') is None
