#!/usr/bin/env python3
"""CLI entry point for zk-runner.

Starts an in-process ZooKeeper-compatible server in the foreground, for
manual testing or for use as a helper process:

    zk-runner false 2181 "" "" "" ""
    zk-runner true 2281 keystore.p12 changeit truststore.p12 changeit
"""

import argparse
import dataclasses
import logging
import signal
import sys
import threading
from pathlib import Path

from config import ConfigError, ProbeSettings, RunnerSettings, TLSConfig, load_settings
from runner import RunnerError, ServiceRunner
from zkserver.tls import CredentialError

logger = logging.getLogger(__name__)

EXPECTED_PARAMETERS = (
    "Expected parameters secureZK [true|false] zkPort [int] zkKeyStore [path to keystore]"
    " zkKeyStorePasswd [keystore password] zkTrustStore [path to truststore]"
    " zkTrustStorePasswd [truststore password]"
)


def _parse_bool(value: str) -> bool:
    """Only a case-insensitive "true" is true."""
    return value.strip().lower() == "true"


def _mask(secret: str) -> str:
    return "****" if secret else ""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zk-runner",
        description="Run an in-process ZooKeeper-compatible server in the foreground",
    )
    parser.add_argument("secure", type=_parse_bool, help="Enable TLS (true|false)")
    parser.add_argument("port", type=int, help="Loopback port to listen on")
    parser.add_argument("key_store", help="Path to PKCS#12 key-store")
    parser.add_argument("key_store_password", help="Key-store password")
    parser.add_argument("trust_store", help="Path to PKCS#12 trust-store")
    parser.add_argument("trust_store_password", help="Trust-store password")
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="YAML file with tick time, temp root and probe settings",
    )
    parser.add_argument(
        "--retries",
        type=int,
        help="Readiness probe attempts (default: 30)",
    )
    parser.add_argument(
        "--retry-delay",
        type=float,
        help="Seconds between readiness probe attempts (default: 0.25)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def _build_settings(args) -> RunnerSettings:
    """Combine the optional config file with command-line arguments.

    Raises:
        ConfigError: On invalid settings
    """
    settings = load_settings(args.config) if args.config else RunnerSettings()

    probe = settings.probe
    if args.retries is not None or args.retry_delay is not None:
        probe = ProbeSettings(
            retries=args.retries if args.retries is not None else probe.retries,
            retry_delay=args.retry_delay if args.retry_delay is not None else probe.retry_delay,
            connect_timeout=probe.connect_timeout,
        )

    tls = TLSConfig(
        secure=args.secure,
        key_store=args.key_store,
        key_store_password=args.key_store_password,
        trust_store=args.trust_store,
        trust_store_password=args.trust_store_password,
    )
    return dataclasses.replace(settings, port=args.port, tls=tls, probe=probe)


def _print_parameters(args) -> None:
    print("Parameters for the ZooKeeper server:")
    print(f"secureZK: {str(args.secure).lower()}")
    print(f"zkPort: {args.port}")
    print(f"zkKeyStore: {args.key_store}")
    print(f"zkKeyStorePasswd: {_mask(args.key_store_password)}")
    print(f"zkTrustStore: {args.trust_store}")
    print(f"zkTrustStorePasswd: {_mask(args.trust_store_password)}")


def _wait_forever() -> None:
    """Block the main thread until a signal ends the process."""
    threading.Event().wait()


def _handle_sigterm(signum, frame):
    logger.info("Received SIGTERM")
    raise SystemExit(0)


def main(argv=None) -> int:
    """CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code: 0 after a clean shutdown, 1 if the server failed to start.
        Invalid arguments exit with status 2.
    """
    print(EXPECTED_PARAMETERS)
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    _print_parameters(args)

    try:
        settings = _build_settings(args)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 1

    signal.signal(signal.SIGTERM, _handle_sigterm)

    runner = ServiceRunner(settings)
    try:
        runner.initialize()
        runner.start()
        print(f"\nZooKeeper server running at localhost:{runner.port}")
        print("Press Ctrl+C to stop...")
        _wait_forever()
    except (RunnerError, CredentialError, OSError, ValueError) as e:
        logger.error("Failed to start server: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
    finally:
        runner.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
