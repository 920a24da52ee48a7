import argparse
import logging
import socket
import sys
import threading
import time
from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError
from scapy.all import conf, get_if_hwaddr

from doradhcp import (MAX_DATAGRAM, SERVER_PORT, Ack, Decline, Discover,
                      EvictedByAdmin, MalformedMessage, NoAddressAvailable,
                      Offer, Release, Request, encode_message, normalize_mac,
                      parse_message)

SERVER = f'127.0.0.1:{SERVER_PORT}'
TIMEOUT = 5.0

logger = logging.getLogger(__name__)


class ProtocolError(Exception):
    '''The server did not answer, or answered something we cannot use.'''


def get_local_mac(interface=None):
    '''
    Returns the hardware address of interface, or of the first
    non-loopback link that has one, as 12 hex digits. None if nothing
    usable is found.
    '''
    try:
        with IPRoute() as ipr:
            links = ipr.get_links()
        for link in links:
            name = link.get_attr('IFLA_IFNAME')
            mac = normalize_mac(link.get_attr('IFLA_ADDRESS'))
            if interface and name != interface: continue
            if name == 'lo' or not mac or mac == '000000000000': continue
            return mac
    except (OSError, NetlinkError) as e:
        logger.debug(f'Link table lookup failed: {e}')

    # Fall back on scapy, which also knows non-Linux interfaces
    try:
        return normalize_mac(get_if_hwaddr(interface or conf.iface))
    except Exception as e:
        logger.debug(f'scapy could not read a hardware address: {e}')
        return None


class DoraClient:
    def __init__(self, server, hw=None, timeout=TIMEOUT):
        self.server = server
        self.hw = hw
        self.timeout = timeout
        self.address = None
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(('', 0))
        self.sock.settimeout(timeout)

    def send(self, msg):
        self.sock.sendto(encode_message(msg), self.server)

    def receive(self):
        try:
            data, _ = self.sock.recvfrom(MAX_DATAGRAM)
        except socket.timeout:
            raise ProtocolError('No reply from the server') from None
        try:
            return parse_message(data)
        except MalformedMessage as e:
            raise ProtocolError(f'Unreadable reply: {e}') from e

    def discover(self):
        '''Sends DISCOVER and returns the offered address.'''
        logger.info(f'➡️ DISCOVER with MAC {self.hw or "-"}')
        self.send(Discover(self.hw))
        reply = self.receive()
        match reply:
            case Offer(address=address):
                logger.info(f'⬅️ OFFER {address}')
                return address
            case NoAddressAvailable():
                raise ProtocolError('The server has no address available')
            case _:
                raise ProtocolError(f'Unexpected reply to DISCOVER: {reply}')

    def request(self, address):
        '''Asks for address; returns it once acknowledged.'''
        logger.info(f'➡️ REQUEST {address}')
        self.send(Request(address, self.hw))
        reply = self.receive()
        match reply:
            case Ack(address=acked):
                self.address = acked
                logger.info(f'⬅️ ACK {acked}')
                return acked
            case Decline(reason=reason):
                raise ProtocolError(f'The server declined {address}: {reason}')
            case _:
                raise ProtocolError(f'Unexpected reply to REQUEST: {reply}')

    def release(self):
        if self.address is None: return
        logger.info(f'➡️ RELEASE {self.address}')
        self.send(Release(self.address, self.hw))
        self.address = None

    def wait_for_eviction(self, timeout=None):
        '''
        Waits for a RELEASED_BY_ADMIN notice and returns the address it
        names, or None once timeout seconds have passed. Any other datagram
        is ignored.
        '''
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while True:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0: return None
                self.sock.settimeout(remaining)
                try:
                    data, _ = self.sock.recvfrom(MAX_DATAGRAM)
                except socket.timeout:
                    return None
                try:
                    msg = parse_message(data)
                except MalformedMessage as e:
                    logger.debug(f'Ignoring unreadable datagram: {e}')
                    continue
                if isinstance(msg, EvictedByAdmin):
                    logger.warning(f'⚠️ {msg.address} was released by the '
                                   f'server administrator')
                    if msg.address == self.address: self.address = None
                    return msg.address
                logger.debug(f'Ignoring {msg} while waiting')
        finally:
            self.sock.settimeout(self.timeout)

    def close(self):
        self.sock.close()


def parse_server(text):
    host, _, port = text.rpartition(':')
    if not host:
        return text, SERVER_PORT
    return host, int(port)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='DORA client for the doradhcp lease server',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument(
        '-s', '--server', default=SERVER, help='Server as HOST:PORT.')
    parser.add_argument(
        '-i', '--interface', help='Interface whose MAC address to report.')
    parser.add_argument(
        '--mac', help='Report this MAC address instead of the local one.')
    parser.add_argument(
        '-t', '--timeout', type=float, default=TIMEOUT,
        help='Seconds to wait for each reply.')
    args = parser.parse_args(argv)

    try:
        server = parse_server(args.server)
    except ValueError:
        logger.critical(f'⛔ Invalid server address "{args.server}"')
        return 1

    hw = normalize_mac(args.mac) if args.mac else get_local_mac(args.interface)
    if hw is None:
        logger.warning('⚠️ Could not determine the local MAC address, '
                       'sending without one.')

    client = DoraClient(server, hw, args.timeout)
    try:
        address = client.request(client.discover())
        logger.info(f'✅ Lease accepted for {address}')

        def watch():
            try:
                client.wait_for_eviction()
            except OSError:
                pass # Socket closed on exit
        threading.Thread(target=watch, daemon=True).start()

        input('Press Enter to release the address...')
        if client.address:
            client.release()
            logger.info('🔁 Lease released.')
    except ProtocolError as e:
        logger.error(f'❌ {e}')
        return 1
    except (KeyboardInterrupt, EOFError):
        client.release()
    finally:
        client.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
