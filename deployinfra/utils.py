"""Shared utility functions."""

import base64
import hashlib
import logging
import re
import sys

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("deployinfra")


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Used for fabric ``c.run()`` output and for the configuration-management
    sub-process, so remote output goes through the logging system instead of
    directly to the terminal. An optional ``on_line`` callback receives every
    non-empty line as well.
    """

    def __init__(self, on_line=None) -> None:
        self._buf = ""
        self._on_line = on_line

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            self._emit(line)

    def flush(self) -> None:
        if self._buf.strip():
            self._emit(self._buf)
        self._buf = ""

    def _emit(self, line: str) -> None:
        if not line.strip():
            return
        logger.info(line)
        if self._on_line is not None:
            self._on_line(line)


# Vendor libraries that log every request at INFO; kept at WARNING unless debugging
QUIET_LOGGERS = ("httpx", "httpcore", "boto3", "botocore", "urllib3", "paramiko", "fabric")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Route every logger through one RichHandler on stderr.

    Command output (tables, bucket names) stays on stdout. Vendor libraries
    are raised to WARNING, except at DEBUG where their request logs pass
    through as well.

    :param level: Level name (``"debug"``) or number, usually from
        ``DEPLOYINFRA_LOG_LEVEL``
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    vendor_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(vendor_level)
        lg.propagate = True


def log(msg: str) -> None:
    """Progress line for the operator, on the ``deployinfra`` logger."""
    logger.info(msg)


def warn(msg: str) -> None:
    logger.warning(msg)


def error(msg: str) -> None:
    """Report a fatal CLI error and exit with status 1.

    Only command handlers call this; library code raises typed errors.
    """
    logger.error(msg)
    sys.exit(1)


def sanitize_hostname(text: str) -> str:
    """Turn free text into a DNS-label-safe slug.

    :param text: Arbitrary name, e.g. a server display name
    :return: Lowercase string of alphanumerics and single hyphens
    """
    slug = text.lower().replace(" ", "-").replace("_", "-")
    slug = "".join(c for c in slug if (c.isascii() and c.isalnum()) or c == "-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def ssh_key_fingerprint(public_key: str) -> str:
    """:return: MD5 fingerprint of an OpenSSH public key, colon separated"""
    key_data = public_key.split()[1]
    decoded = base64.b64decode(key_data)
    fingerprint = hashlib.md5(decoded).hexdigest()
    return ":".join(fingerprint[i : i + 2] for i in range(0, 32, 2))


def ssh_key_name(public_key: str) -> str:
    """Name under which a local key is uploaded to a vendor."""
    return f"deployinfra-{ssh_key_fingerprint(public_key)[-8:]}"


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()
