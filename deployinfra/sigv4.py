"""AWS Signature Version 4 for S3-compatible object storage.

Signs the minimal header set ``host;x-amz-content-sha256;x-amz-date`` with an
empty query string, which is all the bucket-level calls in storage.py need.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone

ALGORITHM = "AWS4-HMAC-SHA256"
SIGNED_HEADERS = "host;x-amz-content-sha256;x-amz-date"
EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode(), hashlib.sha256).digest()


def payload_hash(payload: bytes = b"") -> str:
    return hashlib.sha256(payload).hexdigest()


def amz_date(timestamp: datetime) -> str:
    return timestamp.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def credential_scope(date_stamp: str, region: str, service: str) -> str:
    return f"{date_stamp}/{region}/{service}/aws4_request"


def signing_key(secret_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """Derive the signing key: HMAC chain over date, region, service, terminator."""
    k_date = _hmac(f"AWS4{secret_key}".encode(), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def canonical_request(method: str, path: str, host: str, content_hash: str, date: str) -> str:
    canonical_headers = (
        f"host:{host}\n"
        f"x-amz-content-sha256:{content_hash}\n"
        f"x-amz-date:{date}\n"
    )
    return f"{method}\n{path}\n\n{canonical_headers}\n{SIGNED_HEADERS}\n{content_hash}"


def string_to_sign(date: str, scope: str, canonical: str) -> str:
    digest = hashlib.sha256(canonical.encode()).hexdigest()
    return f"{ALGORITHM}\n{date}\n{scope}\n{digest}"


@dataclass(frozen=True)
class SignedRequest:
    canonical_request: str
    string_to_sign: str
    signature: str
    authorization: str
    headers: dict[str, str]


def sign_request(
    method: str,
    path: str,
    host: str,
    region: str,
    service: str,
    access_key: str,
    secret_key: str,
    payload: bytes = b"",
    timestamp: datetime | None = None,
) -> SignedRequest:
    """Sign one request.

    :param path: Absolute, already URI-encoded path, e.g. ``/my-bucket``
    :param host: Host header value, without scheme
    :param timestamp: Signing time, defaults to now (UTC)
    :return: Intermediate strings plus the headers to send
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    date = amz_date(timestamp)
    date_stamp = date[:8]
    content_hash = payload_hash(payload)

    canonical = canonical_request(method, path, host, content_hash, date)
    scope = credential_scope(date_stamp, region, service)
    to_sign = string_to_sign(date, scope, canonical)
    key = signing_key(secret_key, date_stamp, region, service)
    signature = hmac.new(key, to_sign.encode(), hashlib.sha256).hexdigest()
    authorization = (
        f"{ALGORITHM} Credential={access_key}/{scope}, "
        f"SignedHeaders={SIGNED_HEADERS}, Signature={signature}"
    )
    return SignedRequest(
        canonical_request=canonical,
        string_to_sign=to_sign,
        signature=signature,
        authorization=authorization,
        headers={
            "Host": host,
            "x-amz-date": date,
            "x-amz-content-sha256": content_hash,
            "Authorization": authorization,
        },
    )
