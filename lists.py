#!/usr/bin/python3
import logging
import threading
import time

logger = logging.getLogger("lists")


class ListStore:
    """
    Mapping of opaque keys to the unix timestamp they were last seen at.

    Every store owns its own lock. Single operations take it implicitly; a
    caller which needs a read-modify-write sequence to be atomic can hold it
    explicitly by using the store as a context manager.
    """

    def __init__(self, name, ttl):
        self.name = name
        self.ttl = ttl
        self._entries = {}
        self._lock = threading.RLock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self._lock.release()
        return False

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __contains__(self, key):
        with self._lock:
            return key in self._entries

    def __repr__(self):
        return "<ListStore name={!r} ttl={}>".format(self.name, self.ttl)

    def get(self, key):
        with self._lock:
            return self._entries.get(key)

    def set(self, key, timestamp):
        with self._lock:
            self._entries[key] = timestamp

    def delete(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def items(self):
        """Return a snapshot of all entries as a list of pairs."""
        with self._lock:
            return list(self._entries.items())

    def for_each(self, visitor):
        for key, timestamp in self.items():
            visitor(key, timestamp)

    def expire(self, now):
        """
        Remove all entries whose age reached the TTL of this store, i.e.
        ``now - last_seen >= ttl``. An entry exactly ``ttl`` seconds old is
        evicted, matching the freshness check ``now - last_seen < ttl``.

        The scan works on a snapshot so that the lock is only held per key.
        Each candidate is re-checked right before removal, entries refreshed
        in the meantime survive.
        """
        removed = 0
        for key, timestamp in self.items():
            if now - timestamp < self.ttl:
                continue
            with self._lock:
                current = self._entries.get(key)
                if current is None or now - current < self.ttl:
                    continue
                del self._entries[key]
            removed += 1
        if removed > 0:
            logger.info("removed %s %s entries due to expiry",
                        removed, self.name)
        return removed


class Lists:
    """The four dynamic lists and the static domain whitelist."""

    def __init__(self, greyexp, whiteexp, static_domains=()):
        self.whitelist_src = ListStore("whitelist_src", whiteexp)
        self.whitelist_domain = ListStore("whitelist_domain", whiteexp)
        self.greylist_src = ListStore("greylist_src", greyexp)
        self.greylist_domain = ListStore("greylist_domain", greyexp)
        self.static_domains = frozenset(static_domains)

    def __iter__(self):
        return iter((self.greylist_src, self.greylist_domain,
                     self.whitelist_src, self.whitelist_domain))

    def expire(self, now=None):
        if now is None:
            now = int(time.time())
        return sum(store.expire(now) for store in self)


def ip_key(address):
    return "ip={}".format(address)


def domain_key(domain):
    return "domain={}".format(domain)


def greylist_ip_key(address, sender, recipient):
    return "ip={}:{}:{}".format(address, sender, recipient)


def greylist_domain_key(domain, sender, recipient):
    return "domain={}:{}:{}".format(domain, sender, recipient)


def read_list_file(path):
    entries = []
    with open(path, "r") as f:
        for line in map(str.strip, f):
            if not line or line.startswith("#"):
                continue
            entries.append(line)
    return entries


def load_whitelists(greyexp, whiteexp, wl_ip=None, wl_domain=None, now=None):
    """
    Build the lists, seeding them from the static whitelist files.

    Addresses go into the dynamic address whitelist with the startup time,
    domains into the static domain set. Unreadable files raise OSError.
    """
    if now is None:
        now = int(time.time())

    static_domains = []
    if wl_domain is not None:
        for domain in read_list_file(wl_domain):
            logger.info("domain %s added to static whitelist", domain)
            static_domains.append(domain)

    lists = Lists(greyexp, whiteexp, static_domains)

    if wl_ip is not None:
        for address in read_list_file(wl_ip):
            logger.info("IP %s added to whitelist", address)
            lists.whitelist_src.set(ip_key(address), now)

    return lists


class Sweeper(threading.Thread):
    """Background thread evicting expired list entries periodically."""

    def __init__(self, lists, interval=60):
        super().__init__(name="sweeper", daemon=True)
        self.lists = lists
        self.interval = interval
        self._stopped = threading.Event()

    def run(self):
        logger.debug("sweeper started, interval=%s", self.interval)
        while not self._stopped.wait(self.interval):
            self.lists.expire()
        logger.debug("sweeper stopped")

    def stop(self):
        self._stopped.set()
