'''Tests for the DORA client.'''
import socket
import threading

import pytest
import doraclient
from doraclient import DoraClient, ProtocolError, get_local_mac, parse_server
from doradhcp import (AddressPool, Discover, LeaseManager, LeaseServer,
                      UdpTransport)


@pytest.fixture
def server():
    pool = AddressPool.from_range('192.168.1.100', '192.168.1.101')
    srv = LeaseServer(LeaseManager(pool), UdpTransport('127.0.0.1', 0, 0.1))
    srv.start()
    yield srv
    srv.shutdown()


@pytest.fixture
def make_client(server):
    clients = []

    def factory(hw=None, timeout=2.0):
        client = DoraClient(('127.0.0.1', server.transport.address[1]), hw,
                            timeout)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


class TestDoraClient:

    def test_handshake_and_release(self, server, make_client):
        client = make_client('3C5A37A1B2C3')
        address = client.discover()
        assert address == '192.168.1.101'
        assert client.request(address) == address
        assert client.address == address
        assert server.list_leases()[0].identity == '3C5A37A1B2C3'

        client.release()
        assert client.address is None
        # RELEASE has no reply; wait for the server to process it
        for _ in range(100):
            if not server.list_leases(): break
            threading.Event().wait(0.02)
        assert server.list_leases() == []

    def test_declined_request(self, server, make_client):
        first, second = make_client('3C5A37A1B2C3'), make_client()
        first.request(first.discover())
        with pytest.raises(ProtocolError, match='IP_IN_USE'):
            second.request('192.168.1.101')
        with pytest.raises(ProtocolError, match='UNKNOWN_IP'):
            second.request('10.0.0.1')

    def test_no_address_available(self, server, make_client):
        make_client().discover()
        make_client().discover()
        with pytest.raises(ProtocolError, match='no address'):
            make_client().discover()

    def test_timeout_on_silent_server(self):
        silent = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        silent.bind(('127.0.0.1', 0))
        client = DoraClient(silent.getsockname(), timeout=0.2)
        try:
            with pytest.raises(ProtocolError, match='No reply'):
                client.discover()
        finally:
            client.close()
            silent.close()

    def test_unreadable_reply(self):
        fake = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        fake.bind(('127.0.0.1', 0))
        fake.settimeout(2.0)
        client = DoraClient(fake.getsockname(), timeout=2.0)
        try:
            client.send(Discover())
            _, source = fake.recvfrom(1024)
            fake.sendto(b'OFFER:nowhere', source)
            with pytest.raises(ProtocolError, match='Unreadable'):
                client.receive()
        finally:
            client.close()
            fake.close()

    def test_eviction_notice(self, server, make_client):
        client = make_client('3C5A37A1B2C3')
        client.request(client.discover())
        server.evict('3C5A37A1B2C3')
        assert client.wait_for_eviction(timeout=2.0) == '192.168.1.101'
        assert client.address is None

    def test_wait_for_eviction_times_out(self, server, make_client):
        client = make_client()
        assert client.wait_for_eviction(timeout=0.1) is None
        assert client.sock.gettimeout() == 2.0


class TestParseServer:

    def test_host_and_port(self):
        assert parse_server('10.0.0.1:67') == ('10.0.0.1', 67)

    def test_host_only(self):
        assert parse_server('localhost') == ('localhost', 6767)

    def test_bad_port(self):
        with pytest.raises(ValueError):
            parse_server('localhost:http')


class FakeLink:
    def __init__(self, name, mac):
        self.attrs = {'IFLA_IFNAME': name, 'IFLA_ADDRESS': mac}

    def get_attr(self, name):
        return self.attrs.get(name)


class FakeIPRoute:
    links = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def get_links(self):
        return self.links


class TestGetLocalMac:

    @pytest.fixture(autouse=True)
    def fake_links(self, monkeypatch):
        FakeIPRoute.links = [
            FakeLink('lo', '00:00:00:00:00:00'),
            FakeLink('eth0', '3c:5a:37:a1:b2:c3'),
            FakeLink('wlan0', 'b8:27:eb:00:11:22'),
        ]
        monkeypatch.setattr(doraclient, 'IPRoute', FakeIPRoute)

    def test_first_real_link(self):
        assert get_local_mac() == '3C5A37A1B2C3'

    def test_named_interface(self):
        assert get_local_mac('wlan0') == 'B827EB001122'

    def test_scapy_fallback(self, monkeypatch):
        FakeIPRoute.links = [FakeLink('lo', '00:00:00:00:00:00')]
        monkeypatch.setattr(doraclient, 'get_if_hwaddr',
                            lambda iface: 'f0:de:61:00:00:01')
        assert get_local_mac('eth9') == 'F0DE61000001'

    def test_nothing_found(self, monkeypatch):
        FakeIPRoute.links = []

        def broken(iface):
            raise OSError('no such device')
        monkeypatch.setattr(doraclient, 'get_if_hwaddr', broken)
        assert get_local_mac('eth9') is None
