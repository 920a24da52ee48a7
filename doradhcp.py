import argparse
import ipaddress
import json
import logging
import os
import queue
import re
import signal
import socket
import sqlite3
import sys
import threading
import time
from dataclasses import dataclass, replace
from pyroute2 import IPRoute
from pyroute2.netlink.exceptions import NetlinkError
from scapy.all import conf

BIND_ADDRESS = '0.0.0.0'
SERVER_PORT = 6767
DEFAULT_POOL = '192.168.1.100-192.168.1.199'
LEASE_FILE = 'dhcp_leases.json'
DB_FILE = 'dhcp.db'
MAX_DATAGRAM = 1024
RECORDER_QUEUE_SIZE = 1024
CLEANUP_INTERVAL = 300  # seconds between rate limiter sweeps

logging.basicConfig(level=logging.INFO, format='[%(levelname)s] %(message)s')
logger = logging.getLogger(__name__)

MAC_RE = re.compile(r'[0-9A-F]{12}$')


class LeaseError(Exception):
    '''Base class for the recoverable errors of lease negotiation.'''

class PoolExhausted(LeaseError):
    pass

class AddressConflict(LeaseError):
    reason = 'IP_IN_USE'

class UnknownAddress(LeaseError):
    reason = 'UNKNOWN_IP'

class MalformedMessage(LeaseError):
    pass

class PersistenceFailure(LeaseError):
    pass


def normalize_mac(raw):
    '''
    Returns a hardware address as 12 upper-case hex digits, or None if raw
    is not one. Accepts ":" or "-" separators in any case.
    '''
    if not raw: return None
    mac = re.sub(r'[:\-]', '', str(raw).strip()).upper()
    return mac if MAC_RE.match(mac) else None

def format_mac(mac):
    return ':'.join(mac[i:i + 2] for i in range(0, 12, 2))

def format_source(source):
    return f'{source[0]}:{source[1]}'

def format_time(ts):
    return time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(ts))

def client_identity(hw, source):
    '''
    Canonical lease key: the hardware address when the client reported a
    valid one, otherwise its transport source as "host:port".
    '''
    return hw or format_source(source)


# Wire messages. Every datagram is one ASCII line, VERB or VERB:payload.

@dataclass(frozen=True)
class Discover:
    hw: str | None = None

@dataclass(frozen=True)
class Offer:
    address: str
    hw: str | None = None

@dataclass(frozen=True)
class Request:
    address: str
    hw: str | None = None

@dataclass(frozen=True)
class Ack:
    address: str
    hw: str | None = None

@dataclass(frozen=True)
class Decline:
    IN_USE = AddressConflict.reason
    UNKNOWN = UnknownAddress.reason
    REASONS = (IN_USE, UNKNOWN)

    reason: str

@dataclass(frozen=True)
class Release:
    address: str | None = None
    hw: str | None = None

@dataclass(frozen=True)
class NoAddressAvailable:
    pass

@dataclass(frozen=True)
class EvictedByAdmin:
    address: str


def _parse_address(text, verb):
    try:
        return str(ipaddress.IPv4Address(text))
    except ValueError:
        raise MalformedMessage(f'{verb} carries invalid address '
                               f'"{text}"') from None

def _address_and_hw(payload, verb):
    if not payload:
        raise MalformedMessage(f'{verb} without an address')
    address, _, hw = payload.partition(':')
    return _parse_address(address, verb), normalize_mac(hw)

def parse_message(data):
    '''Decodes one datagram into a message, raising MalformedMessage.'''
    try:
        text = data.decode('ascii').strip()
    except UnicodeDecodeError:
        raise MalformedMessage('datagram is not ASCII text') from None
    verb, _, payload = text.partition(':')

    match verb:
        case 'DISCOVER':
            return Discover(normalize_mac(payload))
        case 'OFFER':
            return Offer(*_address_and_hw(payload, verb))
        case 'REQUEST':
            return Request(*_address_and_hw(payload, verb))
        case 'ACK':
            return Ack(*_address_and_hw(payload, verb))
        case 'DECLINE':
            if payload not in Decline.REASONS:
                raise MalformedMessage(f'unknown DECLINE reason "{payload}"')
            return Decline(payload)
        case 'RELEASE':
            address, _, hw = payload.partition(':')
            if address: address = _parse_address(address, verb)
            return Release(address or None, normalize_mac(hw))
        case 'NO_AVAILABLE_IP':
            return NoAddressAvailable()
        case 'RELEASED_BY_ADMIN':
            return EvictedByAdmin(_parse_address(payload, verb))
        case _:
            raise MalformedMessage(f'unknown verb "{verb[:32]}"')

def encode_message(msg):
    match msg:
        case Discover(hw=hw):
            fields = ['DISCOVER', hw]
        case Offer(address=address, hw=hw):
            fields = ['OFFER', address, hw]
        case Request(address=address, hw=hw):
            fields = ['REQUEST', address, hw]
        case Ack(address=address, hw=hw):
            fields = ['ACK', address, hw]
        case Decline(reason=reason):
            fields = ['DECLINE', reason]
        case Release(address=address, hw=hw):
            fields = ['RELEASE', address, hw]
        case NoAddressAvailable():
            fields = ['NO_AVAILABLE_IP']
        case EvictedByAdmin(address=address):
            fields = ['RELEASED_BY_ADMIN', address]
        case _:
            raise TypeError(f'not a protocol message: {msg!r}')
    # Optional fields are positional: drop trailing ones, blank inner ones
    while fields[-1] is None: fields.pop()
    return ':'.join(f or '' for f in fields).encode('ascii')


class AddressPool:
    '''
    The managed addresses, split into an ordered free list and a leased
    set. allocate() takes from the end of the free list and release()
    appends to it, so the most recently freed address is handed out first
    (LIFO).
    '''
    def __init__(self, addresses):
        ips = sorted({ipaddress.IPv4Address(a) for a in addresses})
        if not ips:
            raise ValueError('Address pool is empty')
        self._available = [str(ip) for ip in ips]
        self._managed = frozenset(self._available)
        self._leased = set()

    @classmethod
    def from_range(cls, first, last, exclude=()):
        skip = {int(ipaddress.IPv4Address(x)) for x in exclude}
        first = int(ipaddress.IPv4Address(first))
        last = int(ipaddress.IPv4Address(last))
        if last < first:
            raise ValueError('Pool range ends before it starts')
        return cls(ipaddress.IPv4Address(i) for i in range(first, last + 1)
                   if i not in skip)

    @classmethod
    def from_cidr(cls, cidr, exclude=()):
        '''Host addresses of cidr, minus anything in exclude (e.g. the
        server's own address).'''
        skip = {ipaddress.IPv4Address(x) for x in exclude}
        net = ipaddress.IPv4Network(cidr, strict=False)
        return cls(ip for ip in net.hosts() if ip not in skip)

    @property
    def size(self):
        return len(self._managed)

    @property
    def available(self):
        return list(self._available)

    @property
    def leased(self):
        return set(self._leased)

    def __contains__(self, addr):
        return str(addr) in self._managed

    def stats(self):
        return {'size': self.size, 'available': len(self._available),
                'leased': len(self._leased)}

    def allocate(self):
        if not self._available:
            raise PoolExhausted('No free address left in the pool')
        ip = self._available.pop()
        self._leased.add(ip)
        return ip

    def confirm(self, addr):
        '''
        Marks addr as leased. Already leased addresses are accepted as they
        are, free ones are taken out of the free list, and addresses outside
        the pool are refused.
        '''
        addr = str(addr)
        if addr in self._leased: return True
        if addr not in self._managed: return False
        self._available.remove(addr)
        self._leased.add(addr)
        return True

    def release(self, addr):
        addr = str(addr)
        if addr in self._leased:
            self._leased.remove(addr)
            self._available.append(addr)


def parse_pool_range(text, exclude=()):
    '''Builds a pool from "FIRST-LAST" or from a CIDR network, leaving out
    the addresses in exclude.'''
    text = text.strip()
    if '-' in text:
        first, _, last = text.partition('-')
        return AddressPool.from_range(first.strip(), last.strip(), exclude)
    return AddressPool.from_cidr(text, exclude)

def default_pool_range(bind_ip):
    '''.100 to .199 inside the /24 of the bind address. Wildcard and
    loopback binds fall back to DEFAULT_POOL.'''
    ip = ipaddress.IPv4Address(bind_ip)
    if ip.is_unspecified or ip.is_loopback:
        return DEFAULT_POOL
    prefix = str(ip).rsplit('.', 1)[0]
    return f'{prefix}.100-{prefix}.199'

def build_pool(text, bind_ip):
    '''The configured pool, or the default one for bind_ip. A concrete
    bind address is never handed out to a client.'''
    ip = ipaddress.IPv4Address(bind_ip)
    exclude = () if ip.is_unspecified else (str(ip),)
    return parse_pool_range(text or default_pool_range(bind_ip), exclude)


@dataclass
class Lease:
    OFFERED = 'offered'
    BOUND = 'bound'

    identity: str
    address: str
    hw_address: str | None = None
    status: str = OFFERED
    updated_at: float = 0.0
    # Last transport address the client spoke from; target of eviction
    # notices. Unknown for leases restored from disk.
    source: tuple | None = None

@dataclass(frozen=True)
class HistoryEntry:
    OFFERED = 'offered'
    BOUND = 'bound'
    RELEASED = 'released'
    EVICTED = 'evicted'
    WITHDRAWN = 'withdrawn'

    identity: str
    address: str
    hw_address: str | None
    event: str
    timestamp: float


class LeaseTable:
    '''identity -> Lease. A plain store; it enforces nothing.'''
    def __init__(self):
        self._leases = {}

    def get(self, identity):
        return self._leases.get(identity)

    def upsert(self, identity, lease):
        self._leases[identity] = lease

    def remove(self, identity):
        return self._leases.pop(identity, None)

    def find_by_address(self, address):
        for identity, lease in self._leases.items():
            if lease.address == address:
                return identity
        return None

    def __contains__(self, identity):
        return identity in self._leases

    def __iter__(self):
        return iter(list(self._leases.values()))

    def __len__(self):
        return len(self._leases)


class HistoryLog:
    def __init__(self):
        self._entries = []

    def append(self, entry):
        self._entries.append(entry)

    def entries(self):
        return list(self._entries)

    def __iter__(self):
        return iter(self.entries())

    def __len__(self):
        return len(self._entries)


class LeaseManager:
    '''
    The shared lease state: pool, lease table and history behind one lock.
    The receive loop and the admin console both go through this lock for
    every read-modify-write.
    '''
    def __init__(self, pool, lease_file=None, recorder=None, clock=time.time):
        self.pool = pool
        self.table = LeaseTable()
        self.history = HistoryLog()
        self.lease_file = lease_file
        self.recorder = recorder
        self.clock = clock
        self.lock = threading.RLock()

        if self.lease_file:
            self.load_leases()

    def record(self, event, lease):
        '''Appends a history entry for lease. Caller holds the lock.'''
        entry = HistoryEntry(lease.identity, lease.address, lease.hw_address,
                             event, self.clock())
        self.history.append(entry)
        if self.recorder:
            self.recorder.record(entry)
        return entry

    def drop(self, identity, event):
        '''
        Deletes the lease of identity, hands its address back to the pool
        and records event. Caller holds the lock.
        '''
        lease = self.table.remove(identity)
        if lease is None: return None
        self.pool.release(lease.address)
        self.record(event, lease)
        return lease

    def leases(self):
        with self.lock:
            snapshot = [replace(lease) for lease in self.table]
        return sorted(snapshot,
                      key=lambda l: ipaddress.IPv4Address(l.address))

    def history_entries(self):
        with self.lock:
            return self.history.entries()

    def stats(self):
        with self.lock:
            bound = sum(1 for l in self.table if l.status == Lease.BOUND)
            return self.pool.stats() | {'bound': bound,
                                        'offered': len(self.table) - bound}

    def load_leases(self):
        '''Restores the bound leases saved by a previous run.'''
        if not os.path.exists(self.lease_file): return
        try:
            with open(self.lease_file, 'r') as f: saved_data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f'⚠️ Failed to load lease file: {e}')
            return

        saved = saved_data.get('leases') if isinstance(saved_data, dict) \
            else None
        if not isinstance(saved, dict):
            logger.error(f'⚠️ Lease file {self.lease_file} has no lease map')
            return

        loaded_count = 0
        with self.lock:
            for identity, data in saved.items():
                ip = data.get('ip') if isinstance(data, dict) else None
                if ip not in self.pool:
                    logger.warning(f'⚠️ Skipping saved lease of {identity}: '
                                   f'{ip} is not in the pool')
                    continue
                holder = self.table.find_by_address(ip)
                if holder:
                    logger.warning(f'⚠️ Skipping saved lease of {identity}: '
                                   f'{ip} already restored for {holder}')
                    continue
                self.pool.confirm(ip)
                self.table.upsert(identity, Lease(
                    identity, ip, normalize_mac(data.get('hw')), Lease.BOUND,
                    data.get('updated_at', self.clock())))
                loaded_count += 1
        logger.info(f'📁 Loaded {loaded_count} bound leases from disk.')

    def save_leases(self):
        '''Writes the bound leases to the lease file, atomically.'''
        if not self.lease_file: return
        with self.lock:
            out = {'leases': {
                l.identity: {'ip': l.address, 'hw': l.hw_address,
                             'updated_at': l.updated_at}
                for l in self.table if l.status == Lease.BOUND}}
        try:
            tmp_file = self.lease_file + '.tmp'
            with open(tmp_file, 'w') as f: json.dump(out, f, indent=2)
            os.replace(tmp_file, self.lease_file)
        except OSError as e:
            logger.error(f'Failed to write lease file: {e}')

    def close(self):
        self.save_leases()
        if self.recorder:
            self.recorder.close()


class ProtocolHandler:
    '''
    The DORA state machine. Each transition runs entirely under the manager
    lock and returns its replies as (destination, message) pairs. Sending
    them is up to the caller, after the lock has been released, so a slow
    peer never holds up anybody else's transition.

    With a limiter, Discover and Request are metered per client identity.
    Release is never metered: dropping one would strand the address.
    '''
    def __init__(self, manager, limiter=None):
        self.mgr = manager
        self.limiter = limiter

    def allowed(self, identity):
        if self.limiter is None or self.limiter.is_allowed(identity):
            return True
        logger.warning(f'⚠️ Rate limited {identity}, datagram dropped')
        return False

    def handle_datagram(self, data, source):
        try:
            msg = parse_message(data)
        except MalformedMessage as e:
            logger.warning(f'⚠️ Dropping datagram from '
                           f'{format_source(source)}: {e}')
            return []
        logger.debug(f'📩 {format_source(source)}: {msg}')

        match msg:
            case Discover(hw=hw):
                identity = client_identity(hw, source)
                if not self.allowed(identity): return []
                return [(source, self.discover(identity, hw, source))]
            case Request(address=address, hw=hw):
                identity = client_identity(hw, source)
                if not self.allowed(identity): return []
                return [(source, self.request(identity, address, hw, source))]
            case Release(address=address, hw=hw):
                self.release(client_identity(hw, source), address)
                return []
            case _:
                logger.warning(f'⚠️ Ignoring {type(msg).__name__} sent to '
                               f'the server by {format_source(source)}')
                return []

    def discover(self, identity, hw=None, source=None):
        with self.mgr.lock:
            table = self.mgr.table
            lease = table.get(identity)
            if lease and lease.status == Lease.BOUND:
                lease.source = source or lease.source
                logger.info(f'🔁 {identity} already holds {lease.address}, '
                            f'offering it again')
                return Offer(lease.address, hw)
            if lease:
                # Unanswered offer from an earlier DISCOVER
                self.mgr.drop(identity, HistoryEntry.WITHDRAWN)
                logger.info(f'♻️ Withdrew stale offer {lease.address} from '
                            f'{identity}')

            try:
                address = self.mgr.pool.allocate()
            except PoolExhausted:
                logger.warning(f'⚠️ No address available for {identity}')
                return NoAddressAvailable()

            lease = Lease(identity, address, hw, Lease.OFFERED,
                          self.mgr.clock(), source)
            table.upsert(identity, lease)
            self.mgr.record(HistoryEntry.OFFERED, lease)
            logger.info(f'➡️ OFFER {address} to {identity}')
            return Offer(address, hw)

    def request(self, identity, address, hw=None, source=None):
        with self.mgr.lock:
            try:
                lease = self.bind(identity, address, hw, source)
            except (AddressConflict, UnknownAddress) as e:
                logger.warning(f'❌ DECLINE {address} for {identity}: {e}')
                return Decline(e.reason)
            return Ack(lease.address, hw)

    def bind(self, identity, address, hw=None, source=None):
        '''
        Binds address to identity, raising AddressConflict or UnknownAddress
        before anything is changed. Caller holds the lock.
        '''
        table = self.mgr.table
        lease = table.get(identity)
        owner = table.find_by_address(address)
        if owner is not None and owner != identity and \
           table.get(owner).status == Lease.BOUND:
            raise AddressConflict(f'{address} is bound to {owner}')

        if lease and lease.status == Lease.BOUND and lease.address == address:
            lease.source = source or lease.source
            logger.info(f'🔁 Repeated REQUEST of {address} by {identity}')
            return lease

        if not self.mgr.pool.confirm(address):
            raise UnknownAddress(f'{address} is not managed by this server')

        if owner is not None and owner != identity:
            # Someone else's unanswered offer; the first binder wins and the
            # address stays leased.
            self.mgr.record(HistoryEntry.WITHDRAWN, table.remove(owner))
            logger.info(f'♻️ Offer of {address} to {owner} superseded by '
                        f'{identity}')

        if lease and lease.address != address:
            event = HistoryEntry.RELEASED if lease.status == Lease.BOUND \
                else HistoryEntry.WITHDRAWN
            self.mgr.drop(identity, event)
            logger.info(f'🔁 {identity} moves from {lease.address} to '
                        f'{address}')

        hw = hw or (lease.hw_address if lease else None)
        bound = Lease(identity, address, hw, Lease.BOUND, self.mgr.clock(),
                      source or (lease.source if lease else None))
        table.upsert(identity, bound)
        self.mgr.record(HistoryEntry.BOUND, bound)
        logger.info(f'✅ ACK {address} bound to {identity}')
        return bound

    def release(self, identity, address=None):
        with self.mgr.lock:
            lease = self.mgr.table.get(identity)
            if lease is None:
                logger.info(f'⚠️ RELEASE from {identity} ignored, it holds '
                            f'no lease')
                return None
            if address is not None and address != lease.address:
                logger.warning(f'⚠️ Ignored RELEASE of {address} from '
                               f'{identity}, which holds {lease.address}')
                return None
            self.mgr.drop(identity, HistoryEntry.RELEASED)
            logger.info(f'🔁 {lease.address} released by {identity}')
            return lease

    def resolve(self, target):
        '''
        Finds the identity an admin means by target: an identity as listed,
        the host:port a client last spoke from, a leased IP address, or a
        hardware address in any notation. Caller holds the lock.
        '''
        table = self.mgr.table
        target = target.strip()
        if target in table: return target
        host, sep, port = target.rpartition(':')
        if sep and port.isdigit():
            for lease in table:
                if lease.source == (host, int(port)): return lease.identity
        try:
            return table.find_by_address(str(ipaddress.IPv4Address(target)))
        except ValueError:
            pass
        mac = normalize_mac(target)
        if mac and mac in table: return mac
        return None

    def evict(self, target):
        '''
        Server-initiated release. Returns the evicted lease (or None) and
        the RELEASED_BY_ADMIN notice to deliver.
        '''
        with self.mgr.lock:
            identity = self.resolve(target)
            if identity is None:
                logger.warning(f'⚠️ No client found for "{target}"')
                return None, []
            lease = self.mgr.drop(identity, HistoryEntry.EVICTED)
        logger.info(f'✅ Client {identity} evicted, {lease.address} is free '
                    f'again')
        if lease.source is None:
            logger.warning(f'⚠️ No known address for {identity}, it will not '
                           f'be notified')
            return lease, []
        return lease, [(lease.source, EvictedByAdmin(lease.address))]


class RateLimiter:
    def __init__(self, rate=2.0, burst=5, clock=time.time):
        self.rate = rate          # Tokens added per second
        self.burst = burst        # Maximum bucket size
        self.clients = {}         # identity -> {tokens, last_update}
        self.clock = clock
        self.lock = threading.Lock()

    def is_allowed(self, identity):
        now = self.clock()

        with self.lock:
            if identity not in self.clients:
                self.clients[identity] = {
                    'tokens': self.burst - 1,
                    'last_update': now
                }
                return True

            client = self.clients[identity]
            elapsed = now - client['last_update']
            client['last_update'] = now
            client['tokens'] = min(self.burst,
                                   client['tokens'] + (elapsed * self.rate))
            if client['tokens'] >= 1.0:
                client['tokens'] -= 1.0
                return True
            return False

    def cleanup(self, max_idle=3600):
        '''Forgets clients that have been quiet for max_idle seconds.'''
        now = self.clock()
        with self.lock:
            stale = [identity for identity, data in self.clients.items()
                     if (now - data['last_update']) > max_idle]
            for identity in stale:
                self.clients.pop(identity, None)
        if stale:
            logger.debug(f'🧹 RateLimiter forgot {len(stale)} idle clients')


class VendorLookup:
    '''
    Names the vendor behind a hardware address, for display only. A small
    built-in OUI table wins; anything else goes to scapy's manufacturer
    database.
    '''
    UNKNOWN = 'Unknown'
    OUI_TABLE = {
        '3C5A37': 'Apple',
        '3C5AB4': 'Apple',
        'FCFBFB': 'Samsung',
        'A4C138': 'Dell',
        '00163E': 'Cisco',
        '001A2B': 'Hewlett-Packard',
        'F4F5E8': 'Sony',
        'F0DE61': 'Microsoft',
        'B827EB': 'Raspberry Pi Foundation',
    }

    def __init__(self, manufdb=None):
        self.manufdb = manufdb

    def classify(self, hw):
        mac = normalize_mac(hw)
        if not mac: return self.UNKNOWN
        if mac[:6] in self.OUI_TABLE: return self.OUI_TABLE[mac[:6]]

        db = self.manufdb if self.manufdb is not None else conf.manufdb
        if db is None: return self.UNKNOWN
        colon_mac = format_mac(mac)
        try:
            name = db._get_manuf(colon_mac)
        except (AttributeError, KeyError) as e:
            logger.debug(f'Manufacturer lookup failed for {colon_mac}: {e}')
            return self.UNKNOWN
        # scapy echoes the address back when it has no entry
        if not name or name.upper() == colon_mac: return self.UNKNOWN
        return name


class SqliteLeaseRecorder:
    '''
    Audit trail of lease history in SQLite. record() only enqueues; a single
    worker thread owns the connection and does the writes, so storage
    latency never reaches the protocol path.
    '''
    _STOP = object()

    def __init__(self, path=DB_FILE, maxsize=RECORDER_QUEUE_SIZE,
                 vendors=None):
        self.path = path
        self.vendors = vendors or VendorLookup()
        self.queue = queue.Queue(maxsize=maxsize)
        self.thread = threading.Thread(target=self.run, name='lease-recorder',
                                       daemon=True)
        self.thread.start()

    def record(self, entry):
        try:
            self.queue.put_nowait(entry)
        except queue.Full:
            logger.warning(f'⚠️ Audit queue full, dropping {entry.event} '
                           f'event of {entry.identity}')

    def connect(self):
        try:
            conn = sqlite3.connect(self.path)
            conn.execute(
                'CREATE TABLE IF NOT EXISTS leases ('
                ' id INTEGER PRIMARY KEY,'
                ' identity TEXT NOT NULL,'
                ' mac TEXT,'
                ' ip TEXT NOT NULL,'
                ' vendor TEXT,'
                ' event TEXT NOT NULL,'
                ' ts REAL NOT NULL)')
            conn.commit()
            return conn
        except sqlite3.Error as e:
            raise PersistenceFailure(f'cannot open {self.path}: {e}') from e

    def write(self, conn, entry):
        try:
            with conn:
                conn.execute(
                    'INSERT INTO leases (identity, mac, ip, vendor, event, ts)'
                    ' VALUES (?, ?, ?, ?, ?, ?)',
                    (entry.identity, entry.hw_address, entry.address,
                     self.vendors.classify(entry.hw_address), entry.event,
                     entry.timestamp))
        except sqlite3.Error as e:
            raise PersistenceFailure(f'cannot record {entry.event} of '
                                     f'{entry.identity}: {e}') from e

    def run(self):
        try:
            conn = self.connect()
        except PersistenceFailure as e:
            logger.error(f'⚠️ Audit database unavailable: {e}')
            conn = None

        while True:
            entry = self.queue.get()
            try:
                if entry is self._STOP: break
                if conn is None: continue
                self.write(conn, entry)
            except PersistenceFailure as e:
                logger.error(f'⚠️ {e}')
            finally:
                self.queue.task_done()
        if conn is not None:
            conn.close()

    def flush(self):
        '''Blocks until every queued entry has been handled.'''
        self.queue.join()

    def close(self):
        self.queue.put(self._STOP)
        self.thread.join(timeout=5)
        logger.info('💾 Audit database closed.')


class UdpTransport:
    def __init__(self, host=BIND_ADDRESS, port=SERVER_PORT, timeout=0.5):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind((host, port))
        # Lets the receive loop notice a shutdown
        self.sock.settimeout(timeout)

    @property
    def address(self):
        return self.sock.getsockname()

    def receive(self):
        return self.sock.recvfrom(MAX_DATAGRAM)

    def send(self, dest, msg):
        self.sock.sendto(encode_message(msg), dest)

    def close(self):
        self.sock.close()


class LeaseServer:
    '''
    Runs the receive loop in a background thread and exposes the admin
    operations. Both sides share one LeaseManager.
    '''
    def __init__(self, manager, transport, limiter=None,
                 cleanup_interval=CLEANUP_INTERVAL):
        self.mgr = manager
        self.handler = ProtocolHandler(manager, limiter)
        self.transport = transport
        self.limiter = limiter
        self.cleanup_interval = cleanup_interval
        self.stopped = threading.Event()
        self.thread = None

    def start(self):
        self.thread = threading.Thread(target=self.serve_forever,
                                       name='dhcp-receive', daemon=True)
        self.thread.start()

    def serve_forever(self):
        logger.info(f'🚀 DHCP server listening on '
                    f'{format_source(self.transport.address)}')
        next_cleanup = time.monotonic() + self.cleanup_interval
        while not self.stopped.is_set():
            if self.limiter and time.monotonic() >= next_cleanup:
                self.limiter.cleanup()
                next_cleanup = time.monotonic() + self.cleanup_interval
            try:
                data, source = self.transport.receive()
            except socket.timeout:
                continue
            except OSError as e:
                if not self.stopped.is_set():
                    logger.error(f'🔥 Transport failure, receive loop '
                                 f'stopping: {e}')
                break
            self.send_all(self.handler.handle_datagram(data, source))

    def send_all(self, replies):
        for dest, msg in replies:
            try:
                self.transport.send(dest, msg)
            except OSError as e:
                logger.warning(f'⚠️ Could not send {type(msg).__name__} to '
                               f'{format_source(dest)}: {e}')

    def list_leases(self):
        return self.mgr.leases()

    def history(self):
        return self.mgr.history_entries()

    def evict(self, target):
        lease, replies = self.handler.evict(target)
        self.send_all(replies)
        return lease

    def shutdown(self):
        '''Stops the receive loop and flushes state. Safe to call twice.'''
        if self.stopped.is_set(): return
        logger.info('🛑 Server shutting down...')
        self.stopped.set()
        if self.thread and self.thread is not threading.current_thread():
            self.thread.join(timeout=5)
        self.transport.close()
        self.mgr.close()
        if self.mgr.lease_file:
            logger.info('💾 Lease state flushed to disk.')


class AdminConsole:
    '''Interactive text menu on top of the LeaseServer admin operations.'''
    def __init__(self, server, vendors=None, input_func=input, out=None):
        self.server = server
        self.vendors = vendors or VendorLookup()
        self.input = input_func
        self.out = out or sys.stdout

    def say(self, text=''):
        print(text, file=self.out, flush=True)

    def run(self):
        while not self.server.stopped.is_set():
            self.say('\n===== DHCP MENU =====')
            self.say('1  Show leases')
            self.say('2  Evict a client (free its address)')
            self.say('3  Lease history')
            self.say('4  Shut down the server')
            try:
                choice = self.input('👉 Choice: ').strip()
            except EOFError:
                choice = '4'

            if choice == '1':
                self.show_leases()
            elif choice == '2':
                target = self.input('🔧 Client to evict (identity, MAC, '
                                    'host:port or IP): ')
                self.evict(target)
            elif choice == '3':
                self.show_history()
            elif choice == '4':
                self.say('👋 Stopping the server...')
                self.server.shutdown()
            else:
                self.say('❌ Invalid choice.')

    def show_leases(self):
        leases = self.server.list_leases()
        if not leases:
            self.say('📋 No clients.')
            return
        self.say('📋 Clients:')
        for l in leases:
            source = format_source(l.source) if l.source else '-'
            self.say(f'🔹 {l.identity} => {l.address} [{l.status}] '
                     f'(from {source}, MAC: {l.hw_address or "-"}, '
                     f'vendor: {self.vendors.classify(l.hw_address)})')

    def show_history(self):
        self.say('📜 Lease history:')
        for e in self.server.history():
            self.say(f'📍 {format_time(e.timestamp)} {e.event:<9} '
                     f'{e.address:<15} {e.identity} '
                     f'({self.vendors.classify(e.hw_address)})')

    def evict(self, target):
        lease = self.server.evict(target)
        if lease:
            self.say(f'✅ Client {lease.identity} removed, {lease.address} '
                     f'released.')
        else:
            self.say('⚠️ No client found for that input.')


def get_interface_address(iface_name):
    '''
    Returns (ip_address, network_cidr) for a given interface.
    Example: ('192.168.1.1', '192.168.1.0/24')
    '''
    ipr = IPRoute()
    try:
        idx = ipr.link_lookup(ifname=iface_name)[0]
        raw_addrs = ipr.get_addr(index=idx, family=socket.AF_INET)
        if not raw_addrs:
            raise ValueError(f'No IPv4 address assigned to "{iface_name}"')

        # Smallest prefix first, so the main network wins over aliases
        addr_info = sorted(raw_addrs, key=lambda x: x['prefixlen'])[0]
        local_ip = addr_info.get_attr('IFA_LOCAL') or \
            addr_info.get_attr('IFA_ADDRESS')
        if not local_ip:
            raise ValueError(f'Could not determine IP for "{iface_name}"')

        iface_obj = ipaddress.IPv4Interface(
            f'{local_ip}/{addr_info["prefixlen"]}')
        return local_ip, str(iface_obj.network)
    except IndexError:
        raise ValueError(f'Interface "{iface_name}" does not exist.') from None
    except NetlinkError as e:
        raise RuntimeError(f'Error inspecting interface: {e}') from e
    finally:
        ipr.close()


def build_parser():
    parser = argparse.ArgumentParser(
        description='Toy DORA lease server over UDP text datagrams',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    parser.add_argument(
        '-b', '--bind', default=BIND_ADDRESS, help='Address to listen on.')
    parser.add_argument(
        '-P', '--port', type=int, default=SERVER_PORT, help='UDP port.')
    parser.add_argument(
        '-i', '--interface', help='Listen on the IPv4 address of this '
        'interface instead of --bind.')
    parser.add_argument(
        '-p', '--pool', help='Address pool, "FIRST-LAST" or a CIDR. If '
        'omitted, .100-.199 of the bind address\'s /24 '
        f'(or {DEFAULT_POOL}).')
    parser.add_argument(
        '-f', '--lease-file', default=LEASE_FILE,
        help='JSON snapshot of bound leases, loaded at start and written at '
        'shutdown.')
    parser.add_argument(
        '-d', '--db', default=DB_FILE, help='SQLite audit database.')
    parser.add_argument(
        '--no-db', action='store_true', help='Do not keep an audit database.')
    parser.add_argument(
        '--rate', type=float, default=2.0, help='Datagrams per second allowed '
        'from one client. RELEASE is never limited. 0 disables rate '
        'limiting.')
    parser.add_argument(
        '--burst', type=int, default=5, help='Rate limiter bucket size.')
    parser.add_argument(
        '--no-console', action='store_true',
        help='Run without the interactive admin menu.')
    parser.add_argument(
        '-v', '--verbose', action='store_true', help='Debug logging.')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    bind = args.bind
    if args.interface:
        try:
            bind, cidr = get_interface_address(args.interface)
            logger.info(f'🔎 Auto-detected: IP={bind}, network={cidr}')
        except (ValueError, RuntimeError) as e:
            logger.critical(f'Auto-detect failed: {e}')
            sys.exit(1)

    try:
        pool = build_pool(args.pool, bind)
    except ValueError as e:
        logger.critical(f'⛔ Invalid pool "{args.pool}": {e}')
        sys.exit(1)

    def graceful_exit(signum, frame):
        '''Turns SIGINT/SIGTERM/SIGHUP into SystemExit, which runs the
        "finally" block below.'''
        logger.info(f'⚠️ Received signal: {signal.Signals(signum).name}')
        sys.exit(0)
    signal.signal(signal.SIGINT, graceful_exit)
    signal.signal(signal.SIGTERM, graceful_exit)
    signal.signal(signal.SIGHUP, graceful_exit)

    server = None
    try:
        transport = UdpTransport(bind, args.port)
        recorder = None if args.no_db else SqliteLeaseRecorder(args.db)
        manager = LeaseManager(pool, lease_file=args.lease_file,
                               recorder=recorder)
        limiter = RateLimiter(args.rate, args.burst) if args.rate > 0 \
            else None
        server = LeaseServer(manager, transport, limiter)
        stats = pool.stats()
        logger.info(f'   Pool: {stats["size"]} addresses, '
                    f'{stats["available"]} free')
        server.start()
        if args.no_console:
            while not server.stopped.wait(1.0): pass
        else:
            AdminConsole(server).run()
    except (KeyboardInterrupt, SystemExit):
        pass
    except OSError as e:
        logger.critical(f'🔥 Cannot listen on {bind}:{args.port}: {e}')
        return 1
    finally:
        if server:
            server.shutdown()
        logger.info('👋 Goodbye.')
    return 0


if __name__ == '__main__':
    sys.exit(main())
