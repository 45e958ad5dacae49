#!/usr/bin/python3
import argparse
import concurrent.futures
import configparser
import logging
import sys

import greylist
import lists
import smtpd_filter
import spf_check

logger = logging.getLogger("service")


def build_parser():
    parser = argparse.ArgumentParser(
        description="""Filter for the smtpd filter protocol performing SPF
        aware greylisting. Reads events on stdin and writes filter results to
        stdout. Options may also be set in a config file, command line flags
        take precedence."""
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        type=argparse.FileType("r"),
        metavar="FILE",
        help="Specify a config file to override defaults")
    parser.add_argument(
        "-v",
        dest="verbosity",
        action="count",
        default=0,
        help="Increase verbosity by one step")
    parser.add_argument(
        "--passtime",
        type=int,
        default=greylist.passtime,
        metavar="SECONDS",
        help="Number of seconds before retries are accounted"
        " (default: %(default)s)")
    parser.add_argument(
        "--greyexp",
        type=int,
        default=greylist.greyexp,
        metavar="SECONDS",
        help="Number of seconds before greylist attempts expire"
        " (default: %(default)s)")
    parser.add_argument(
        "--whiteexp",
        type=int,
        default=greylist.whiteexp,
        metavar="SECONDS",
        help="Number of seconds before whitelist entries expire"
        " (default: %(default)s)")
    parser.add_argument(
        "--wl-ip",
        dest="wl_ip",
        default=greylist.wl_ip,
        metavar="FILE",
        help="File containing IP addresses to whitelist, one per line")
    parser.add_argument(
        "--wl-domain",
        dest="wl_domain",
        default=greylist.wl_domain,
        metavar="FILE",
        help="File containing sender domains to whitelist, one per line")
    parser.add_argument(
        "--spf-timeout",
        dest="spf_timeout",
        type=int,
        default=greylist.spf_timeout,
        metavar="SECONDS",
        help="Time budget for a single SPF check (default: %(default)s)")
    parser.add_argument(
        "--sweep-interval",
        dest="sweep_interval",
        type=int,
        default=greylist.sweep_interval,
        metavar="SECONDS",
        help="Interval between expiry runs (default: %(default)s)")
    parser.add_argument(
        "--workers",
        type=int,
        default=greylist.workers,
        metavar="COUNT",
        help="Number of concurrent SPF lookups (default: %(default)s)")
    return parser


def parse_args(argv=None):
    parser = build_parser()
    args, _ = parser.parse_known_args(argv)
    if args.config is not None:
        # config file values become the defaults, flags still win
        try:
            parser.set_defaults(**greylist.load_config(args.config))
        except (ValueError, configparser.Error) as err:
            parser.exit(1, "{}: invalid config file {}: {}\n".format(
                parser.prog, args.config.name, err))
    args = parser.parse_args(argv)
    if args.config is not None:
        args.config.close()
    return args


def run(args, instream, outstream):
    """
    Run the filter until the input ends. Returns the exit status.
    """
    options = vars(args)
    try:
        greylist.verify_config(**options)
        list_store = lists.load_whitelists(
            args.greyexp, args.whiteexp,
            wl_ip=args.wl_ip,
            wl_domain=args.wl_domain)
    except (ValueError, OSError) as err:
        logger.critical("startup failed: %s", err)
        return 1

    def spf_passes(address, helo, sender):
        return spf_check.spf_passes(address, helo, sender,
                                    timeout=args.spf_timeout)

    engine = greylist.Greylist(
        list_store,
        spf_check=spf_passes,
        passtime=args.passtime,
        greyexp=args.greyexp,
        whiteexp=args.whiteexp)

    if not smtpd_filter.skip_config(instream):
        return 0

    emitter = smtpd_filter.Emitter(outstream)
    emitter.register()

    sweeper = lists.Sweeper(list_store, args.sweep_interval)
    sweeper.start()

    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=args.workers,
        thread_name_prefix="spf")
    dispatcher = smtpd_filter.Dispatcher(
        engine,
        smtpd_filter.SessionRegistry(),
        emitter,
        executor)

    try:
        for line in instream:
            dispatcher.dispatch_line(line)
    except smtpd_filter.ProtocolError as err:
        logger.critical("protocol violation, terminating: %s", err)
        return 1
    except KeyboardInterrupt:
        pass
    finally:
        # pending decisions still get their verdict out
        executor.shutdown(wait=True)
        sweeper.stop()
    return 0


def main(argv=None):
    args = parse_args(argv)

    verbosity = {
        0: logging.ERROR,
        1: logging.WARN,
        2: logging.INFO,
        3: logging.DEBUG
    }

    logging.basicConfig(
        level=verbosity.get(args.verbosity, logging.DEBUG),
        stream=sys.stderr)

    sys.exit(run(args, sys.stdin, sys.stdout))


if __name__ == "__main__":
    main()
