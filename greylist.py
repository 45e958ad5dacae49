#!/usr/bin/python3
import collections
import configparser
import logging
import time

import lists as _lists
import spf_check

# CONFIGURATION

# Defaults for the options of the filter. Use a config file (-c) or the
# command line flags instead of changing the source code here. All durations
# are in seconds; spf_timeout must be a number, "off" is not accepted.

passtime = 300
greyexp = 4 * 3600
whiteexp = 30 * 86400
wl_ip = None
wl_domain = None
spf_timeout = spf_check.spf_timeout
sweep_interval = 60
workers = 16
response_fail = "451 greylisted, try again later"

# END OF CONFIGURATION

logger = logging.getLogger("greylist")


class RESPONSE:
    def __init__(self, name):
        self.name = name

    def __str__(self):
        return self.name

    def __repr__(self):
        return "<response={}>".format(self.name)

PROCEED = RESPONSE("PROCEED")
REJECTED_TEMPORARY = RESPONSE("REJECTED_TEMPORARY")

del RESPONSE


# Everything a decision needs, copied out of the session before any lookup.
Request = collections.namedtuple(
    "Request",
    ["session_id", "token", "address", "helo", "sender", "sender_domain",
     "recipient", "pre_approved", "now"])


def getpath(config, section, option, fallback):
    v = config.get(section, option, fallback=None)
    if v is None or not v.strip():
        return fallback
    return v.strip()


def load_config(f):
    """
    Read an INI style config file and return the resulting options as a
    dict, falling back to the module defaults for options which are not set.
    """
    config = configparser.ConfigParser()
    with f as f:
        config.read_file(f)

    return {
        "passtime": config.getint(
            "DEFAULT", "passtime",
            fallback=passtime),
        "greyexp": config.getint(
            "DEFAULT", "greyexp",
            fallback=greyexp),
        "whiteexp": config.getint(
            "DEFAULT", "whiteexp",
            fallback=whiteexp),
        "wl_ip": getpath(
            config,
            "DEFAULT", "wl_ip",
            fallback=wl_ip),
        "wl_domain": getpath(
            config,
            "DEFAULT", "wl_domain",
            fallback=wl_domain),
        "spf_timeout": config.getint(
            "DEFAULT", "spf_timeout",
            fallback=spf_timeout),
        "sweep_interval": config.getint(
            "DEFAULT", "sweep_interval",
            fallback=sweep_interval),
        "workers": config.getint(
            "DEFAULT", "workers",
            fallback=workers),
    }


def verify_config(passtime, greyexp, whiteexp, sweep_interval=sweep_interval,
                  workers=workers, **_):
    for name, value in (("passtime", passtime),
                        ("greyexp", greyexp),
                        ("whiteexp", whiteexp)):
        if value < 0:
            raise ValueError("{} must not be negative: {}".format(name, value))
    if passtime >= greyexp:
        raise ValueError(
            "passtime ({}) must be lower than greyexp ({})".format(
                passtime, greyexp))
    if sweep_interval <= 0:
        raise ValueError("sweep_interval must be positive")
    if workers <= 0:
        raise ValueError("workers must be positive")


def sender_domain(sender, helo):
    """Domain part of the sender address, or the HELO name without one."""
    localpart, at, domain = sender.rpartition("@")
    if not at:
        return helo
    return domain


class Greylist:
    """
    The whitelist/greylist decision logic.

    Decisions are split into two phases. :meth:`check_whitelist` covers the
    cheap checks which never leave the process. :meth:`resolve` covers
    everything which depends on an SPF lookup and is meant to run off the
    event loop.
    """

    def __init__(self, lists, spf_check=spf_check.spf_passes,
                 passtime=passtime, greyexp=greyexp, whiteexp=whiteexp,
                 clock=time.time):
        self.lists = lists
        self.spf_check = spf_check
        self.passtime = passtime
        self.greyexp = greyexp
        self.whiteexp = whiteexp
        self.clock = clock

    def now(self):
        return int(self.clock())

    def check_whitelist(self, request):
        """
        Return PROCEED if the request passes without any network lookup,
        None if it has to be resolved.
        """
        if request.pre_approved:
            logger.debug("whitelist check: session %s is pre-approved",
                         request.session_id)
            return PROCEED

        store = self.lists.whitelist_src
        key = _lists.ip_key(request.address)
        with store:
            last_seen = store.get(key)
            if (last_seen is not None
                    and request.now - last_seen < self.whiteexp):
                logger.info("IP address %s is whitelisted", request.address)
                store.set(key, request.now)
                return PROCEED

        if request.sender_domain in self.lists.static_domains:
            logger.info("domain %s is statically whitelisted",
                        request.sender_domain)
            return PROCEED

        return None

    def resolve(self, request):
        """
        Decide on a request which did not pass :meth:`check_whitelist`.

        Returns a pair of the verdict and whether the request caused a
        promotion to the whitelist.
        """
        spf_result = []

        def spf_pass():
            if not spf_result:
                spf_result.append(self.spf_check(request.address,
                                                 request.helo,
                                                 request.sender))
            return spf_result[0]

        store = self.lists.whitelist_domain
        key = _lists.domain_key(request.sender_domain)
        last_seen = store.get(key)
        if (last_seen is not None
                and request.now - last_seen < self.whiteexp
                and spf_pass()):
            logger.info("domain %s is whitelisted", request.sender_domain)
            store.set(key, request.now)
            return PROCEED, False

        if spf_pass():
            return self._check_greylist(
                request,
                self.lists.greylist_domain,
                _lists.greylist_domain_key(request.sender_domain,
                                           request.sender,
                                           request.recipient),
                self.lists.whitelist_domain,
                _lists.domain_key(request.sender_domain),
                "domain {}".format(request.sender_domain))

        return self._check_greylist(
            request,
            self.lists.greylist_src,
            _lists.greylist_ip_key(request.address,
                                   request.sender,
                                   request.recipient),
            self.lists.whitelist_src,
            _lists.ip_key(request.address),
            "IP {}".format(request.address))

    def _check_greylist(self, request, greylist, key, whitelist, white_key,
                        origin):
        now = request.now
        with greylist:
            last_seen = greylist.get(key)
            if last_seen is None:
                logger.info("%s added to greylist", origin)
                greylist.set(key, now)
                return REJECTED_TEMPORARY, False

            if last_seen == now:
                logger.debug("greylist check: %s retried within the same"
                             " second, defer", origin)
                return REJECTED_TEMPORARY, False

            delta = now - last_seen
            if self.passtime < delta < self.greyexp:
                logger.info("%s added to whitelist", origin)
                whitelist.set(white_key, now)
                return PROCEED, True

            logger.debug("greylist check: %s retried after %ss, defer",
                         origin, delta)
            greylist.set(key, now)
            return REJECTED_TEMPORARY, False

    def process_request(self, request):
        """Evaluate a request synchronously, both phases in order."""
        verdict = self.check_whitelist(request)
        if verdict is not None:
            return verdict, False
        return self.resolve(request)

    def whitelist_domain(self, domain, now=None):
        """Whitelist a domain trusted senders deliver mail to."""
        if now is None:
            now = self.now()
        logger.info("domain %s is whitelisted", domain)
        self.lists.whitelist_domain.set(_lists.domain_key(domain), now)
