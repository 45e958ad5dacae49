#!/usr/bin/python3
"""
Session tracking and event dispatch for the smtpd filter protocol.

The agent writes one event per line, fields separated by ``|``::

    report|0.6|1576146008.006099|smtp-in|link-connect|7641df9771b4ed00|...
    filter|0.6|1576146008.006099|smtp-in|rcpt-to|7641df9771b4ed00|<token>|...

and expects one ``filter-result`` line per filter request.
"""
import collections
import ipaddress
import logging
import threading
import time

import greylist

logger = logging.getLogger("smtpd_filter")

SUBSYSTEM = "smtp-in"

REPORT_EVENTS = (
    "link-connect",
    "link-disconnect",
    "link-identify",
    "link-auth",
    "tx-mail",
    "tx-rcpt",
)

FILTER_EVENTS = (
    "rcpt-to",
)


class ProtocolError(ValueError):
    """The agent and the filter are out of sync; not recoverable."""


Event = collections.namedtuple(
    "Event",
    ["stream", "version", "timestamp", "subsystem", "name", "session_id",
     "params"])


def parse_line(line):
    atoms = line.rstrip("\r\n").split("|")
    if len(atoms) < 6:
        raise ProtocolError("too few fields in line: {!r}".format(line))
    stream, version, timestamp, subsystem, name, session_id = atoms[:6]
    if stream not in ("report", "filter"):
        raise ProtocolError("unknown stream {!r}".format(stream))
    return Event(stream, version, timestamp, subsystem, name, session_id,
                 atoms[6:])


def parse_source(src):
    """
    Extract the network address from ``address:port`` or
    ``[address]:port``. Returns None for anything else, e.g. ``unix:/path``.
    """
    host, sep, port = src.rpartition(":")
    if not sep:
        return None
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None


class Session:
    def __init__(self, id, created_at=None):
        self.id = id
        self.created_at = created_at
        self.address = None
        self.helo = ""
        self.user = None
        self.sender = None
        self.sender_domain = None
        self.recipient = None
        # trusted sessions (authenticated or local) also whitelist the
        # domains they deliver to
        self.trusted = False
        self.pre_approved = False

    def __repr__(self):
        return "<Session id={} address={}>".format(self.id, self.address)


class SessionRegistry:
    def __init__(self):
        self._sessions = {}
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id):
        with self._lock:
            return session_id in self._sessions

    def open(self, session_id, created_at):
        session = Session(session_id, created_at)
        with self._lock:
            self._sessions[session_id] = session
        return session

    def get(self, session_id):
        with self._lock:
            try:
                return self._sessions[session_id]
            except KeyError:
                raise ProtocolError(
                    "unknown session {}".format(session_id)) from None

    def close(self, session_id):
        with self._lock:
            self._sessions.pop(session_id, None)

    def approve(self, session_id):
        """Mark a session pre-approved, unless it is gone already."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.pre_approved = True


class Emitter:
    """Writes whole result lines to the output stream, one at a time."""

    def __init__(self, stream, reason=greylist.response_fail):
        self.stream = stream
        self.reason = reason
        self._lock = threading.Lock()

    def write_line(self, line):
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()

    def emit(self, session_id, token, verdict):
        if verdict is greylist.PROCEED:
            result = "proceed"
        elif verdict is greylist.REJECTED_TEMPORARY:
            result = "reject|{}".format(self.reason)
        else:
            raise AssertionError("Programming error")
        self.write_line("filter-result|{}|{}|{}".format(
            session_id, token, result))

    def register(self):
        for name in REPORT_EVENTS:
            self.write_line("register|report|{}|{}".format(SUBSYSTEM, name))
        for name in FILTER_EVENTS:
            self.write_line("register|filter|{}|{}".format(SUBSYSTEM, name))
        self.write_line("register|ready")


def skip_config(instream):
    """
    Consume the configuration lines sent by the agent on startup. Returns
    False if the input ended before ``config|ready``.
    """
    for line in instream:
        if line.rstrip("\r\n") == "config|ready":
            return True
    return False


def _check_params(event, count, exact=True):
    if exact and len(event.params) != count:
        raise ProtocolError("{}: expected {} parameters, got {}".format(
            event.name, count, len(event.params)))
    if not exact and len(event.params) < count:
        raise ProtocolError("{}: expected at least {} parameters, got {}".format(
            event.name, count, len(event.params)))


class Dispatcher:
    """
    Routes events to their handlers in arrival order.

    Recipient requests which cannot be decided from the whitelists are
    handed to ``executor``; their verdicts reach the emitter from the worker
    threads.
    """

    def __init__(self, engine, registry, emitter, executor, clock=time.time):
        self.engine = engine
        self.registry = registry
        self.emitter = emitter
        self.executor = executor
        self.clock = clock
        self.reporters = {
            "link-connect": self.link_connect,
            "link-disconnect": self.link_disconnect,
            "link-identify": self.link_identify,
            "link-auth": self.link_auth,
            "tx-mail": self.tx_mail,
            "tx-rcpt": self.tx_rcpt,
        }
        self.filters = {
            "rcpt-to": self.rcpt_to,
        }

    def now(self):
        return int(self.clock())

    def dispatch_line(self, line):
        self.dispatch(parse_line(line))

    def dispatch(self, event):
        if event.stream == "report":
            actions = self.reporters
        else:
            actions = self.filters
        try:
            handler = actions[event.name]
        except KeyError:
            raise ProtocolError("unregistered {} event {!r}".format(
                event.stream, event.name)) from None

        if event.name == "link-connect":
            session = self.registry.open(event.session_id, self.now())
        else:
            session = self.registry.get(event.session_id)
        handler(session, event)

    def link_connect(self, session, event):
        _check_params(event, 4)
        session.address = parse_source(event.params[2])
        if session.address is None:
            logger.info("connection from local socket, session whitelisted")
            session.trusted = True
            session.pre_approved = True
            return
        logger.debug("connection received from src %s", session.address)

    def link_disconnect(self, session, event):
        _check_params(event, 0)
        self.registry.close(session.id)

    def link_identify(self, session, event):
        _check_params(event, 2)
        session.helo = event.params[1]

    def link_auth(self, session, event):
        _check_params(event, 2)
        username, result = event.params
        if result != "pass":
            return
        logger.debug("session %s authenticated as %s, session whitelisted",
                     session.id, username)
        session.user = username
        session.trusted = True
        session.pre_approved = True

    def tx_mail(self, session, event):
        _check_params(event, 3, exact=False)
        result = event.params[1]
        if result != "ok":
            return
        session.sender = "|".join(event.params[2:])
        session.sender_domain = greylist.sender_domain(session.sender,
                                                       session.helo)

    def tx_rcpt(self, session, event):
        _check_params(event, 3, exact=False)
        result = event.params[1]
        if result != "ok" or not session.trusted:
            return
        recipient = "|".join(event.params[2:])
        localpart, at, domain = recipient.rpartition("@")
        if not at:
            return
        self.engine.whitelist_domain(domain, self.now())

    def rcpt_to(self, session, event):
        _check_params(event, 2, exact=False)
        token = event.params[0]
        session.recipient = "|".join(event.params[1:])

        sender = session.sender
        domain = session.sender_domain
        if sender is None:
            sender, domain = "", session.helo

        request = greylist.Request(
            session_id=session.id,
            token=token,
            address=session.address,
            helo=session.helo,
            sender=sender,
            sender_domain=domain,
            recipient=session.recipient,
            pre_approved=session.pre_approved,
            now=self.now())

        verdict = self.engine.check_whitelist(request)
        if verdict is not None:
            self.emitter.emit(request.session_id, request.token, verdict)
            return

        self.executor.submit(self.resolve, request)

    def resolve(self, request):
        try:
            verdict, promoted = self.engine.resolve(request)
        except Exception:
            logger.exception("failed to resolve recipient %r of session %s",
                             request.recipient, request.session_id)
            verdict, promoted = greylist.REJECTED_TEMPORARY, False
        if promoted:
            self.registry.approve(request.session_id)
        self.emitter.emit(request.session_id, request.token, verdict)
        return verdict
