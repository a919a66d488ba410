"""AWS Signature Version 4 request signing for SP-API calls."""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from urllib.parse import quote

logger = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
DEFAULT_SERVICE = "execute-api"
_SCOPE_TERMINATOR = "aws4_request"


class SigningError(ValueError):
    """Raised when the signer is given inputs it cannot sign. Not retryable."""


@dataclass(frozen=True)
class SigningCredentials:
    access_key_id: str
    secret_access_key: str

    def __repr__(self) -> str:
        return f"SigningCredentials(access_key_id={self.access_key_id!r}, secret_access_key=***)"


@dataclass(frozen=True)
class SignedRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: bytes
    canonical_request: str
    string_to_sign: str
    signature: str


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret: str, date_stamp: str, region: str, service: str) -> bytes:
    """Chain date -> region -> service -> terminator through HMAC-SHA256."""
    k_date = _hmac(("AWS4" + secret).encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, _SCOPE_TERMINATOR)


def canonical_query_string(query: Mapping[str, Any] | None) -> str:
    if not query:
        return ""
    pairs = sorted(
        (quote(str(k), safe="-_.~"), quote(str(v), safe="-_.~")) for k, v in query.items()
    )
    return "&".join(f"{k}={v}" for k, v in pairs)


def _canonical_uri(path: str) -> str:
    return quote(path, safe="/-_.~")


def _to_bytes(body: bytes | str | None) -> bytes:
    if body is None:
        return b""
    if isinstance(body, str):
        return body.encode("utf-8")
    return body


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestSigner:
    """
    Builds SigV4 ``Authorization`` headers for a fixed region/service scope.

    Signing is deterministic for a given timestamp: pass ``now`` to
    :meth:`sign` (or a ``clock`` to the constructor) to reproduce a signature.
    The LWA bearer token travels in ``x-amz-access-token`` and is part of the
    signed header set when supplied.
    """

    def __init__(
        self,
        credentials: SigningCredentials,
        region: str,
        service: str = DEFAULT_SERVICE,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not credentials.access_key_id or not credentials.secret_access_key:
            raise SigningError("AWS access key id and secret access key are required")
        if not region or not service:
            raise SigningError("Signing region and service are required")
        self.credentials = credentials
        self.region = region
        self.service = service
        self._clock = clock

    def sign(
        self,
        method: str,
        host: str,
        path: str,
        *,
        query: Mapping[str, Any] | None = None,
        body: bytes | str | None = None,
        access_token: str | None = None,
        content_type: str | None = None,
        now: datetime | None = None,
    ) -> SignedRequest:
        if not method or not host:
            raise SigningError("HTTP method and host are required")
        if not path.startswith("/"):
            raise SigningError(f"Path must be absolute: {path!r}")

        method = method.upper()
        moment = (now or self._clock()).astimezone(timezone.utc)
        amz_date = moment.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = amz_date[:8]
        payload = _to_bytes(body)

        signed_kv: dict[str, str] = {"host": host, "x-amz-date": amz_date}
        if content_type:
            signed_kv["content-type"] = content_type
        if access_token:
            signed_kv["x-amz-access-token"] = access_token
        header_names = sorted(signed_kv)
        canonical_headers = "".join(f"{k}:{signed_kv[k].strip()}\n" for k in header_names)
        signed_headers = ";".join(header_names)
        query_string = canonical_query_string(query)

        canonical_request = "\n".join(
            [
                method,
                _canonical_uri(path),
                query_string,
                canonical_headers,
                signed_headers,
                hashlib.sha256(payload).hexdigest(),
            ]
        )

        scope = f"{date_stamp}/{self.region}/{self.service}/{_SCOPE_TERMINATOR}"
        string_to_sign = "\n".join(
            [
                ALGORITHM,
                amz_date,
                scope,
                hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
            ]
        )

        key = derive_signing_key(
            self.credentials.secret_access_key, date_stamp, self.region, self.service
        )
        signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        headers = {
            "host": host,
            "x-amz-date": amz_date,
            "Authorization": (
                f"{ALGORITHM} Credential={self.credentials.access_key_id}/{scope}, "
                f"SignedHeaders={signed_headers}, Signature={signature}"
            ),
        }
        if content_type:
            headers["content-type"] = content_type
        if access_token:
            headers["x-amz-access-token"] = access_token

        url = f"https://{host}{_canonical_uri(path)}"
        if query_string:
            url = f"{url}?{query_string}"

        logger.debug("Signed %s %s (scope %s)", method, path, scope)
        return SignedRequest(
            method=method,
            url=url,
            headers=headers,
            body=payload,
            canonical_request=canonical_request,
            string_to_sign=string_to_sign,
            signature=signature,
        )
