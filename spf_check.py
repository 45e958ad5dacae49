#!/usr/bin/python3
import logging

import dns.exception
import spf

logger = logging.getLogger("spf")

# per query DNS budget, in seconds
spf_timeout = 20


def check_spf(address, helo, sender, timeout=None):
    """
    Check whether ``address`` may send mail for ``sender`` (or ``helo`` for
    the null sender). Returns the SPF result string, ``"pass"`` being the
    only result the greylisting logic trusts. Lookup errors are reported as
    ``"temperror"`` or ``"permerror"``.
    """
    if timeout is None:
        timeout = spf_timeout
    try:
        result, explanation = spf.check2(i=address, s=sender, h=helo,
                                         querytime=timeout)
    except spf.TempError as err:
        logger.warning("SPF lookup for %s from %s failed: %s",
                       sender, address, err)
        return "temperror"
    except spf.PermError as err:
        logger.warning("SPF record for %s is broken: %s", sender, err)
        return "permerror"
    except dns.exception.DNSException as err:
        logger.warning("DNS error during SPF lookup for %s from %s: %r",
                       sender, address, err)
        return "temperror"
    logger.debug("SPF result for sender=%r, address=%s, helo=%r: %s (%s)",
                 sender, address, helo, result, explanation)
    return result


def spf_passes(address, helo, sender, timeout=None):
    return check_spf(address, helo, sender, timeout=timeout) == "pass"
