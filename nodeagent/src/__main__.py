from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from collections.abc import Sequence

from nodeagent.src.arkclient import ArkV1Client
from nodeagent.src.config import load_server_config
from nodeagent.src.credentials import ProvisionError
from nodeagent.src.kube import KubeConfigError, build_clients, load_kube_configuration
from nodeagent.src.metrics import METRICS
from nodeagent.src.server import ResticServer

RUNTIME_VERSION = "0.9.0"

LOG_LEVELS: dict[str, int] = {
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|"
            r"client[_-]?secret|account[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(AZURE_(?:ACCOUNT_KEY|CLIENT_SECRET)=)([^\s,;]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ark-restic-node-agent",
        description="Run the per-node restic backup and restore agent",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)
    server = subcommands.add_parser("server", help="Run the ark restic server")
    server.add_argument(
        "--log-level",
        default="info",
        type=str.lower,
        choices=list(LOG_LEVELS),
        help=f"the level at which to log. Valid values are {', '.join(LOG_LEVELS)}.",
    )
    server.add_argument(
        "--default-backup-storage-location",
        default="default",
        help="name of the default backup storage location",
    )
    return parser


def configure_logging(level_name: str) -> None:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.handlers = [log_handler]
    logging.root.setLevel(LOG_LEVELS[level_name])


def main(argv: Sequence[str] | None = None) -> int:
    """Node agent entrypoint: parse flags, provision credentials, and run until signalled."""
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    logger = logging.getLogger(__name__)
    logger.info("Setting log-level to %s", args.log_level.upper())

    version = os.getenv("APP_VERSION", RUNTIME_VERSION)
    revision = os.getenv("GIT_SHA", "unknown")
    METRICS.build_info.info({"version": version, "revision": revision})
    logger.info("Starting Ark restic server %s (%s)", version, revision)

    try:
        config = load_server_config(default_backup_location=args.default_backup_storage_location)
        load_kube_configuration()
        core_api, custom_api = build_clients()
        server = ResticServer(config=config, core_api=core_api, ark_client=ArkV1Client(custom_api))
        server.provision()
        server.serve_health()
    except (ProvisionError, KubeConfigError, ValueError, OSError) as exc:
        logger.error("Fatal startup error: %s", exc)
        return 1

    server.run()
    logger.info("Ark restic server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
