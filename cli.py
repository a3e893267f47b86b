#!/usr/bin/env python3
import argparse
import json
import logging
import os
import sys
import threading

from archaeologist import Archaeologist
from config import AgentConfig
from errors import ArchaeologistError
from keys import KeyDeriver
from siem_reporter import SIEMConfig, configure_siem, shutdown_siem

logger = logging.getLogger("archaeologist.cli")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Archaeologist - resurrects sarcophagi on schedule")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("ARCHAEOLOGIST_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Replay ledger history, then serve until interrupted")
    subparsers.add_parser("status", help="Replay ledger history and print the resulting state")

    p_derive = subparsers.add_parser("derive-key", help="Print the public key at a key index")
    p_derive.add_argument("--index", type=int, required=True)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        config = AgentConfig.from_env().validate()
    except ArchaeologistError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.command == "derive-key":
        if args.index < 0:
            print("--index must be non-negative", file=sys.stderr)
            return 2
        deriver = KeyDeriver.from_mnemonic(config.mnemonic, config.mnemonic_passphrase)
        print(json.dumps({"index": args.index, "public_key": deriver.public_key(args.index)}))
        return 0

    reporter = configure_siem(SIEMConfig.from_env())
    arch = Archaeologist.from_config(config, reporter=reporter)

    try:
        initial = arch.reconcile()
    except ArchaeologistError as e:
        logger.critical(f"Replay failed, not starting: {e}")
        shutdown_siem()
        return 1

    if args.command == "status":
        summary = initial.summary()
        summary["current_public_key"] = arch.key_deriver.public_key(initial.next_key_index)
        print(json.dumps(summary, indent=2))
        shutdown_siem()
        return 0

    arch.start(initial)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        arch.stop()
        shutdown_siem()
    return 0


if __name__ == "__main__":
    sys.exit(main())
