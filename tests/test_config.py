'''Tests for command line handling and interface detection.'''
import pytest
import doradhcp
from doradhcp import build_parser, get_interface_address, main


class FakeAddr(dict):
    def __init__(self, ip, prefixlen):
        super().__init__(prefixlen=prefixlen)
        self.ip = ip

    def get_attr(self, name):
        return self.ip if name == 'IFA_LOCAL' else None


class FakeIPRoute:
    addrs = {}

    def link_lookup(self, ifname):
        return [7] if ifname in self.addrs else []

    def get_addr(self, index, family):
        return [a for addrs in self.addrs.values() for a in addrs]

    def close(self):
        pass


class TestParser:

    def test_defaults(self):
        args = build_parser().parse_args([])
        assert args.bind == '0.0.0.0'
        assert args.port == 6767
        assert args.pool is None
        assert args.lease_file == 'dhcp_leases.json'
        assert args.db == 'dhcp.db'
        assert args.rate == 2.0
        assert not args.no_console

    def test_overrides(self):
        args = build_parser().parse_args(
            ['-b', '127.0.0.1', '-P', '16767', '-p', '10.0.0.1-10.0.0.9',
             '--no-db', '--rate', '0', '--no-console', '-v'])
        assert (args.bind, args.port, args.pool) == \
            ('127.0.0.1', 16767, '10.0.0.1-10.0.0.9')
        assert args.no_db and args.no_console and args.verbose
        assert args.rate == 0

    def test_invalid_pool_exits(self):
        with pytest.raises(SystemExit) as exc:
            main(['--pool', 'bogus', '--no-db'])
        assert exc.value.code == 1


class TestInterfaceAddress:

    @pytest.fixture(autouse=True)
    def fake_ipr(self, monkeypatch):
        monkeypatch.setattr(doradhcp, 'IPRoute', FakeIPRoute)

    def test_main_network_wins_over_alias(self):
        FakeIPRoute.addrs = {'eth1': [FakeAddr('10.100.0.5', 30),
                                      FakeAddr('192.168.1.1', 24)]}
        assert get_interface_address('eth1') == ('192.168.1.1',
                                                 '192.168.1.0/24')

    def test_missing_interface(self):
        FakeIPRoute.addrs = {}
        with pytest.raises(ValueError, match='does not exist'):
            get_interface_address('nope0')

    def test_interface_without_ipv4(self):
        FakeIPRoute.addrs = {'eth1': []}
        with pytest.raises(ValueError, match='No IPv4 address'):
            get_interface_address('eth1')
