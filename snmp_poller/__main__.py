#!/usr/bin/env python3
"""
SNMP Poller - CLI entry point

Usage:
    snmp-poller <command> TARGET [TARGET ...] --oid OID [--oid OID ...]
    python -m snmp_poller <command> ...
"""

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List

from pydantic import ValidationError

from . import __version__
from .config import PollerSettings, load_settings
from .errors import ConfigError
from .events import ConsoleEventPrinter, EventType, PollEvent
from .models import DEFAULT_MAX_REPETITIONS, Operation, Request
from .poller import SNMPPoller


COMMANDS = {
    'get': Operation.GET,
    'get-next': Operation.GET_NEXT,
    'get-bulk': Operation.GET_BULK,
    'walk': Operation.WALK,
    'bulk-walk': Operation.BULK_WALK,
    'set': Operation.SET,
}


def setup_logging(level: str = "WARNING", color: bool = True):
    """Configure logging with optional colors"""

    use_color = color and (sys.platform != 'win32' or 'WT_SESSION' in os.environ)

    class ColorFormatter(logging.Formatter):
        COLORS = {
            'DEBUG': '\033[36m',    # Cyan
            'INFO': '\033[32m',     # Green
            'WARNING': '\033[33m',  # Yellow
            'ERROR': '\033[31m',    # Red
            'CRITICAL': '\033[35m', # Magenta
        }
        RESET = '\033[0m'

        def format(self, record):
            if use_color:
                color = self.COLORS.get(record.levelname, self.RESET)
                record.levelname = f"{color}{record.levelname:8}{self.RESET}"
            else:
                record.levelname = f"{record.levelname:8}"
            return super().format(record)

    log_level = getattr(logging, level.upper(), logging.WARNING)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColorFormatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    logger = logging.getLogger('snmp_poller')
    logger.setLevel(log_level)
    logger.handlers = [handler]
    logger.propagate = False


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument('targets', nargs='+', metavar='TARGET',
                        help='Hostname or IP address of an SNMP agent')
    common.add_argument('-V', '--snmp-version', dest='version',
                        help='SNMP version: 1, 2c or 3 (default: 2c)')
    common.add_argument('-c', '--community', help='Community string (v1/v2c)')
    common.add_argument('-u', '--username', help='SNMPv3 username')
    common.add_argument('--auth-protocol', dest='authprotocol',
                        help='SNMPv3 auth protocol: MD5, SHA, SHA224, SHA256, SHA384, SHA512')
    common.add_argument('--auth-password', dest='authpassword', help='SNMPv3 auth password')
    common.add_argument('--priv-protocol', dest='privprotocol',
                        help='SNMPv3 privacy protocol: DES, 3DES, AES, AES192, AES256')
    common.add_argument('--priv-password', dest='privpassword', help='SNMPv3 privacy password')
    common.add_argument('-p', '--port', type=int, help='Agent UDP port (default: 161)')
    common.add_argument('-t', '--timeout', type=float, help='Per-request timeout in seconds')
    common.add_argument('-r', '--retries', type=int, help='Per-request retries')
    common.add_argument('--concurrent', type=int,
                        help='Requests in flight at once (default: 20)')
    common.add_argument('--master-timeout', type=float,
                        help='Seconds for the complete run (default: unlimited)')
    common.add_argument('--config', help='YAML settings file')
    common.add_argument('--json', action='store_true', help='Print results as JSON')
    common.add_argument('--no-color', action='store_true', help='Disable colored output')
    common.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default='WARNING', help='Log level (default: WARNING)')

    parser = argparse.ArgumentParser(
        prog='snmp-poller',
        description='Run SNMP requests against many agents concurrently',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  snmp-poller get 10.0.0.1 10.0.0.2 -c public --oid 1.3.6.1.2.1.1.5.0
  snmp-poller walk 10.0.0.1 --oid 1.3.6.1.2.1.2.2.1.2
  snmp-poller bulk-walk 10.0.0.1 --oid 1.3.6.1.2.1.31.1.1.1.1 --max-repetitions 25
  snmp-poller set 10.0.0.1 -c private --oid 1.3.6.1.2.1.1.6.0 OCTET_STRING lab
  snmp-poller get 10.0.0.1 -V 3 -u ops --auth-password secret --oid 1.3.6.1.2.1.1.3.0
        """
    )
    parser.add_argument('--version', action='version', version=f'snmp-poller {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')
    for name, operation in COMMANDS.items():
        sub = subparsers.add_parser(name, parents=[common],
                                    help=f'{operation.value} request')
        if operation == Operation.SET:
            sub.add_argument('-o', '--oid', dest='oids', nargs=3, action='append',
                             required=True, metavar=('OID', 'TYPE', 'VALUE'),
                             help='Binding to set (repeatable)')
        else:
            sub.add_argument('-o', '--oid', dest='oids', action='append',
                             required=True, help='OID (repeatable)')
        if operation in (Operation.GET_BULK, Operation.BULK_WALK):
            sub.add_argument('--max-repetitions', type=int,
                             default=DEFAULT_MAX_REPETITIONS,
                             help=f'GETBULK max-repetitions (default: {DEFAULT_MAX_REPETITIONS})')

    return parser


def session_options(args: argparse.Namespace) -> Dict[str, Any]:
    """Session options given on the command line."""
    names = ('version', 'community', 'username', 'authprotocol', 'authpassword',
             'privprotocol', 'privpassword', 'port', 'timeout', 'retries')
    return {
        name: getattr(args, name)
        for name in names
        if getattr(args, name) is not None
    }


def build_requests(operation: Operation, args: argparse.Namespace) -> List[Request]:
    max_repetitions = getattr(args, 'max_repetitions', None)
    if operation == Operation.SET:
        return [Request(operation, [tuple(binding) for binding in args.oids])]
    if operation.is_compound:
        return [Request(operation, [oid], max_repetitions=max_repetitions) for oid in args.oids]
    return [Request(operation, args.oids, max_repetitions=max_repetitions)]


def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 2

    setup_logging(args.log_level, color=not args.no_color)

    overrides = {
        name: value
        for name, value in (('concurrent', args.concurrent),
                            ('master_timeout', args.master_timeout))
        if value is not None
    }
    try:
        settings = load_settings(args.config) if args.config else PollerSettings()
        settings = PollerSettings(**{**settings.model_dump(), **overrides})
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except ValidationError as e:
        print(f"Error: invalid option: {e}", file=sys.stderr)
        return 2

    poller = SNMPPoller.from_settings(settings)
    outcome = {'errors': 0, 'timeout': False}
    results = []

    def track(event: PollEvent):
        if event.event_type == EventType.ERROR:
            outcome['errors'] += 1
            results.append({'target': event.target, 'error': event.message})
        elif event.event_type == EventType.RESPONSE:
            results.append(event.result.to_dict())
        elif event.event_type == EventType.TIMEOUT:
            outcome['timeout'] = True

    poller.events.subscribe(track)
    if not args.json:
        printer = ConsoleEventPrinter(color=not args.no_color)
        poller.events.subscribe(printer.handle_event)

    try:
        requests = build_requests(COMMANDS[args.command], args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        poller.submit(args.targets, requests, session_options(args))
        poller.wait()
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130

    if args.json:
        print(json.dumps({
            'results': results,
            'timeout': outcome['timeout'],
        }, indent=2, default=str))

    return 1 if outcome['errors'] or outcome['timeout'] else 0


if __name__ == "__main__":
    sys.exit(main())
