"""Internal client utilities for CalDAV."""

from __future__ import annotations

from datetime import datetime
from urllib.parse import urljoin, urlparse, urlunparse

import httpx
from lxml import etree

from ..debug import log_provider_request, log_provider_response
from .elements import CalendarQuery, MultiStatus
from .internal import Depth, HTTPError, depth_to_string

# Error bodies are truncated to this many characters
MAX_ERROR_TEXT = 1024


class Client:
    """WebDAV HTTP client."""

    def __init__(self, http_client: httpx.AsyncClient | None = None, endpoint: str = ""):
        """Initialize client.

        Args:
            http_client: HTTP client to use (creates default if None)
            endpoint: Base endpoint URL
        """
        self.http_client = http_client or httpx.AsyncClient()
        self.endpoint = urlparse(endpoint)

        # Ensure path ends with /
        if not self.endpoint.path:
            self.endpoint = self.endpoint._replace(path="/")

    def resolve_href(self, path: str) -> str:
        """Resolve a path relative to the endpoint.

        Args:
            path: Path to resolve

        Returns:
            Full URL
        """
        if not path:
            return self.endpoint.geturl()
        if path.startswith("/"):
            return urlunparse((self.endpoint.scheme, self.endpoint.netloc, path, "", "", ""))
        return urljoin(self.endpoint.geturl(), path)

    async def request(
        self,
        method: str,
        path: str,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make an HTTP request.

        Args:
            method: HTTP method
            path: Request path
            content: Request body
            headers: Request headers

        Returns:
            HTTP response

        Raises:
            HTTPError: The server answered with a non-2xx status
        """
        url = self.resolve_href(path)
        headers = headers or {}
        log_provider_request(method, url, headers, content)

        resp = await self.http_client.request(method, url, content=content, headers=headers)
        log_provider_response(resp.status_code, resp.headers.get("content-type"), resp.content)

        if resp.status_code // 100 != 2:
            content_type = resp.headers.get("content-type", "text/plain")

            wrapped_err: Exception | None = None
            if content_type.startswith("text/") or "xml" in content_type:
                text = resp.text[:MAX_ERROR_TEXT].strip()
                if text:
                    if len(resp.text) > MAX_ERROR_TEXT:
                        text += " […]"
                    wrapped_err = Exception(text)

            raise HTTPError(resp.status_code, wrapped_err)

        return resp

    async def xml_request(
        self, method: str, path: str, xml_obj: etree._Element, headers: dict[str, str] | None = None
    ) -> httpx.Response:
        """Make an XML HTTP request.

        Args:
            method: HTTP method
            path: Request path
            xml_obj: XML object to send
            headers: Additional request headers

        Returns:
            HTTP response
        """
        xml_bytes = etree.tostring(
            xml_obj, encoding="utf-8", xml_declaration=True, pretty_print=False
        )

        req_headers = dict(headers or {})
        req_headers["Content-Type"] = "text/xml; charset=utf-8"

        return await self.request(method, path, content=xml_bytes, headers=req_headers)

    async def do_multistatus(
        self,
        method: str,
        path: str,
        xml_obj: etree._Element,
        headers: dict[str, str] | None = None,
    ) -> MultiStatus:
        """Perform a request expecting a multistatus response.

        Args:
            method: HTTP method
            path: Request path
            xml_obj: XML request body
            headers: Additional request headers

        Returns:
            Parsed multistatus response
        """
        resp = await self.xml_request(method, path, xml_obj, headers=headers)

        if resp.status_code != 207:  # Multi-Status
            raise ValueError(f"HTTP multi-status request failed: {resp.status_code}")

        try:
            xml_elem = etree.fromstring(resp.content)
        except etree.XMLSyntaxError as e:
            raise ValueError(f"webdav: invalid multistatus body: {e}") from e
        return MultiStatus.from_xml(xml_elem)

    async def calendar_query(self, path: str, start: datetime, end: datetime) -> MultiStatus:
        """Perform a calendar-query REPORT for events overlapping [start, end).

        Args:
            path: Calendar collection path
            start: Range start
            end: Range end

        Returns:
            Multistatus response with calendar data of matching resources
        """
        query = CalendarQuery(start=start, end=end)
        headers = {"Depth": depth_to_string(Depth.ONE)}
        return await self.do_multistatus("REPORT", path, query.to_xml(), headers=headers)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.http_client.aclose()
