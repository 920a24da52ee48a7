'''Tests for the datagram codec.'''
import pytest
from doradhcp import (Ack, Decline, Discover, EvictedByAdmin,
                      MalformedMessage, NoAddressAvailable, Offer, Release,
                      Request, encode_message, normalize_mac, parse_message)


class TestNormalizeMac:

    @pytest.mark.parametrize('raw', [
        '3c:5a:37:a1:b2:c3', '3C-5A-37-A1-B2-C3', '3C5A37A1B2C3',
        ' 3c5a37a1b2c3\n'])
    def test_notations(self, raw):
        assert normalize_mac(raw) == '3C5A37A1B2C3'

    @pytest.mark.parametrize('raw', [None, '', 'UNKNOWN', '3C5A37',
                                     '3C5A37A1B2C3FF', 'zz5a37a1b2c3'])
    def test_invalid(self, raw):
        assert normalize_mac(raw) is None


class TestParse:

    def test_bare_discover(self):
        assert parse_message(b'DISCOVER') == Discover()

    def test_discover_with_mac(self):
        assert parse_message(b'DISCOVER:3c:5a:37:a1:b2:c3') == \
            Discover('3C5A37A1B2C3')

    def test_discover_with_unknown_mac(self):
        # Clients send UNKNOWN when they could not find their own address
        assert parse_message(b'DISCOVER:UNKNOWN') == Discover()

    def test_request(self):
        assert parse_message(b'REQUEST:192.168.1.101:3C5A37A1B2C3\n') == \
            Request('192.168.1.101', '3C5A37A1B2C3')
        assert parse_message(b'REQUEST:192.168.1.101') == \
            Request('192.168.1.101')

    def test_request_with_colon_mac(self):
        assert parse_message(b'REQUEST:10.0.0.1:3c:5a:37:a1:b2:c3') == \
            Request('10.0.0.1', '3C5A37A1B2C3')

    def test_release_forms(self):
        assert parse_message(b'RELEASE') == Release()
        assert parse_message(b'RELEASE:10.0.0.1') == Release('10.0.0.1')
        assert parse_message(b'RELEASE::3C5A37A1B2C3') == \
            Release(None, '3C5A37A1B2C3')

    def test_server_replies(self):
        assert parse_message(b'OFFER:10.0.0.1') == Offer('10.0.0.1')
        assert parse_message(b'ACK:10.0.0.1:3C5A37A1B2C3') == \
            Ack('10.0.0.1', '3C5A37A1B2C3')
        assert parse_message(b'DECLINE:IP_IN_USE') == \
            Decline(Decline.IN_USE)
        assert parse_message(b'NO_AVAILABLE_IP') == NoAddressAvailable()
        assert parse_message(b'RELEASED_BY_ADMIN:10.0.0.1') == \
            EvictedByAdmin('10.0.0.1')

    @pytest.mark.parametrize('data', [
        b'', b'HELLO', b'discover', b'REQUEST', b'REQUEST:',
        b'REQUEST:192.168.1.300', b'REQUEST:not-an-ip:3C5A37A1B2C3',
        b'RELEASE:garbage', b'DECLINE:BECAUSE', b'RELEASED_BY_ADMIN',
        b'OFFER:\xff', b'\xc3\xa9DISCOVER'])
    def test_malformed(self, data):
        with pytest.raises(MalformedMessage):
            parse_message(data)


class TestEncode:

    def test_wire_forms(self):
        assert encode_message(Discover()) == b'DISCOVER'
        assert encode_message(Offer('192.168.1.101')) == \
            b'OFFER:192.168.1.101'
        assert encode_message(Ack('192.168.1.101', '3C5A37A1B2C3')) == \
            b'ACK:192.168.1.101:3C5A37A1B2C3'
        assert encode_message(Decline(Decline.UNKNOWN)) == \
            b'DECLINE:UNKNOWN_IP'
        assert encode_message(NoAddressAvailable()) == b'NO_AVAILABLE_IP'
        assert encode_message(EvictedByAdmin('192.168.1.100')) == \
            b'RELEASED_BY_ADMIN:192.168.1.100'

    def test_release_skips_missing_fields(self):
        assert encode_message(Release()) == b'RELEASE'
        assert encode_message(Release(None, '3C5A37A1B2C3')) == \
            b'RELEASE::3C5A37A1B2C3'

    def test_not_a_message(self):
        with pytest.raises(TypeError):
            encode_message('DISCOVER')
