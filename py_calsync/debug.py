"""Logging setup and provider traffic dumps."""

from __future__ import annotations

import json
import logging
from typing import Any

from lxml import etree

logger = logging.getLogger("py_calsync")
provider_logger = logging.getLogger("py_calsync.provider")

# Context fields attached to records via `extra=`
CONTEXT_FIELDS = ("feed_id", "external_id")


class ContextDefaultsFilter(logging.Filter):
    """Give every record the context fields the formatter expects."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


def log_context(feed_id: str | None = None, external_id: str | None = None) -> dict[str, Any]:
    """Build the `extra=` mapping for a feed/event scoped log record."""
    return {"feed_id": feed_id or "-", "external_id": external_id or "-"}


def format_xml(xml_bytes: bytes | str) -> str:
    """Format XML with proper indentation.

    Args:
        xml_bytes: XML content as bytes or string

    Returns:
        Pretty-formatted XML string
    """
    try:
        if isinstance(xml_bytes, str):
            xml_bytes = xml_bytes.encode("utf-8")

        parser = etree.XMLParser(remove_blank_text=True)
        root = etree.fromstring(xml_bytes, parser)
        return etree.tostring(root, pretty_print=True, encoding="unicode")
    except etree.XMLSyntaxError:
        # Not XML after all, dump as-is
        if isinstance(xml_bytes, bytes):
            return xml_bytes.decode("utf-8", errors="replace")
        return str(xml_bytes)


def log_provider_request(method: str, url: str, headers: dict[str, Any], body: Any) -> None:
    """Log an outgoing provider request.

    Authorization headers are redacted. XML bodies are pretty-printed,
    anything else is dumped as JSON.
    """
    if not provider_logger.isEnabledFor(logging.DEBUG):
        return

    request_data: dict[str, Any] = {
        "type": "request",
        "method": method,
        "url": url,
        "headers": {
            k: "[REDACTED]" if k.lower() == "authorization" else v for k, v in headers.items()
        },
    }

    if isinstance(body, (bytes, str)):
        provider_logger.debug(json.dumps(request_data, indent=2, ensure_ascii=False))
        provider_logger.debug(format_xml(body))
        return

    if body is not None:
        request_data["body"] = body
    provider_logger.debug(json.dumps(request_data, indent=2, ensure_ascii=False, default=str))


def log_provider_response(status_code: int, content_type: str | None, body: Any) -> None:
    """Log an incoming provider response."""
    if not provider_logger.isEnabledFor(logging.DEBUG):
        return

    response_data: dict[str, Any] = {"type": "response", "status_code": status_code}

    if isinstance(body, (bytes, str)) and content_type and "xml" in content_type.lower():
        provider_logger.debug(json.dumps(response_data, indent=2))
        provider_logger.debug(format_xml(body))
        return

    if body is not None:
        response_data["body"] = body
    provider_logger.debug(json.dumps(response_data, indent=2, ensure_ascii=False, default=str))


def setup_logging(debug: bool = False) -> None:
    """Configure console logging for the `py_calsync` logger tree."""
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(logging.DEBUG if debug else logging.INFO)
    handler.addFilter(ContextDefaultsFilter())
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [feed=%(feed_id)s event=%(external_id)s] %(message)s"
        )
    )

    logger.addHandler(handler)

    # Prevent propagation to avoid duplicate logs
    logger.propagate = False

    # Provider dumps are opt-in even in debug mode
    provider_logger.setLevel(logging.INFO)


def setup_provider_debug_logging() -> None:
    """Dump provider requests and responses."""
    provider_logger.setLevel(logging.DEBUG)
    for handler in logger.handlers:
        handler.setLevel(logging.DEBUG)
