from __future__ import annotations

import argparse
import asyncio
import re
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional, Sequence

import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from . import __version__
from .config import Settings, load_settings
from .driver import run
from .errors import ConfigurationError, MemorystoreIamError
from .logging_config import setup_logging
from .metrics import serve_metrics

EXIT_OK = 0
EXIT_RUNTIME_ERROR = 1
EXIT_CONFIG_ERROR = 2

_BARE_SECONDS = re.compile(r"\d+(?:\.\d+)?")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def parse_duration(text: str) -> timedelta:
    """
    Parse a Go-style duration ("1h", "90m", "1h30m", "45s", "500ms").

    A bare number is read as seconds.
    """
    text = text.strip()
    if _BARE_SECONDS.fullmatch(text):
        return timedelta(seconds=float(text))

    position = 0
    total = timedelta(0)
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if not text or position != len(text):
        raise argparse.ArgumentTypeError(f"invalid duration: {text!r}")
    return total


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memorystore-iam",
        description=(
            "Connect to a Memorystore Redis endpoint over TLS with IAM access "
            "tokens and perform a SET/GET round trip."
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-a",
        "--service-account",
        dest="service_account",
        help="service account email whose token is used as the Redis password",
    )
    parser.add_argument(
        "-d",
        "--duration",
        dest="token_lifetime",
        type=parse_duration,
        help="lifetime of each token, e.g. 1h or 30m (default 1h)",
    )
    parser.add_argument("--host", dest="redis_host", help="Redis endpoint host")
    parser.add_argument("--port", dest="redis_port", type=int, help="Redis endpoint port")
    parser.add_argument("--ca-file", dest="ca_file", type=Path, help="PEM CA bundle (default server-ca.pem)")
    parser.add_argument(
        "--cluster",
        dest="cluster",
        action="store_true",
        default=None,
        help="treat --host as a cluster discovery endpoint",
    )
    parser.add_argument(
        "--protocol",
        dest="redis_protocol",
        type=int,
        choices=(2, 3),
        help="RESP protocol version (default 2)",
    )
    parser.add_argument("--iam-endpoint", dest="iam_endpoint", help="IAM Credentials API host:port")
    parser.add_argument("--key", dest="key", help="key to write and read back")
    parser.add_argument("--value", dest="value", help="value to write")
    parser.add_argument(
        "--verify-keys",
        dest="verify_keys",
        type=int,
        metavar="N",
        help="after the round trip, write and read back N distinct keys",
    )
    parser.add_argument(
        "--credential-mode",
        dest="credential_mode",
        choices=("per-connection", "background-refresh"),
        help="mint a token per connection (default) or serve a background-refreshed one",
    )
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings: Settings = load_settings(**vars(args))
    except ValidationError as exc:
        print(f"invalid configuration:\n{exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(settings)
    log = structlog.get_logger("cli")

    if settings.metrics_port is not None:
        serve_metrics(settings.metrics_port)
        log.info("metrics_serving", port=settings.metrics_port)

    try:
        value = asyncio.run(run(settings))
    except ConfigurationError as exc:
        log.error("startup_failed", **exc.to_dict())
        return EXIT_CONFIG_ERROR
    except MemorystoreIamError as exc:
        log.error("token_exchange_failed", **exc.to_dict())
        return EXIT_RUNTIME_ERROR
    except RedisError as exc:
        log.error("redis_command_failed", error=str(exc), error_type=type(exc).__name__)
        return EXIT_RUNTIME_ERROR

    print(f"Got the value for key: {settings.key}, which is {value}")
    if settings.verify_keys:
        print(f"Successfully got {settings.verify_keys} keys")
    return EXIT_OK
