"""WebDAV and CalDAV XML elements used by the calendar client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from urllib.parse import ParseResult as URL, urlparse

from lxml import etree

from .internal import HTTPError

# WebDAV namespace
NAMESPACE = "DAV:"
CALDAV_NAMESPACE = "urn:ietf:params:xml:ns:caldav"
NSMAP = {"D": NAMESPACE, "C": CALDAV_NAMESPACE}

GET_ETAG = f"{{{NAMESPACE}}}getetag"
CALENDAR_DATA = f"{{{CALDAV_NAMESPACE}}}calendar-data"

# CalDAV time-range values are UTC date-times (RFC 4791 section 9.9)
TIME_RANGE_FORMAT = "%Y%m%dT%H%M%SZ"


@dataclass
class Status:
    """HTTP status for WebDAV responses."""

    code: int
    text: str = ""

    @staticmethod
    def from_string(s: str) -> Status:
        """Unmarshal status from text."""
        if not s:
            return Status(code=0)

        parts = s.split(" ", 2)
        if len(parts) < 2:
            raise ValueError(f"webdav: invalid HTTP status {s!r}: expected 3 fields")

        try:
            code = int(parts[1])
        except ValueError as e:
            raise ValueError(
                f"webdav: invalid HTTP status {s!r}: failed to parse code: {e}"
            ) from e

        return Status(code=code, text=parts[2] if len(parts) > 2 else "")

    def err(self) -> Exception | None:
        """Convert status to error if not OK."""
        if self.code // 100 == 2:
            return None
        return HTTPError(self.code)


@dataclass
class Href:
    """WebDAV href element."""

    url: URL

    def __str__(self) -> str:
        return self.url.geturl()

    @staticmethod
    def from_string(s: str) -> Href:
        """Parse href from string."""
        return Href(url=urlparse(s.strip()))


@dataclass
class Prop:
    """WebDAV prop element."""

    raw: list[etree._Element] = field(default_factory=list)

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        prop = etree.Element(f"{{{NAMESPACE}}}prop", nsmap=NSMAP)
        for elem in self.raw:
            prop.append(elem)
        return prop

    @staticmethod
    def from_xml(element: etree._Element) -> Prop:
        """Parse from XML element."""
        return Prop(raw=list(element))

    def get(self, tag: str) -> etree._Element | None:
        """Get a property by tag name."""
        for elem in self.raw:
            if elem.tag == tag:
                return elem
        return None


@dataclass
class PropStat:
    """WebDAV propstat element."""

    prop: Prop
    status: Status

    @staticmethod
    def from_xml(element: etree._Element) -> PropStat:
        """Parse from XML element."""
        prop_el = element.find(f"{{{NAMESPACE}}}prop")
        prop = Prop.from_xml(prop_el) if prop_el is not None else Prop()

        status_el = element.find(f"{{{NAMESPACE}}}status")
        status_text = status_el.text if status_el is not None and status_el.text else ""
        return PropStat(prop=prop, status=Status.from_string(status_text))


@dataclass
class Response:
    """WebDAV response element."""

    hrefs: list[Href] = field(default_factory=list)
    propstats: list[PropStat] = field(default_factory=list)
    status: Status | None = None

    @staticmethod
    def from_xml(element: etree._Element) -> Response:
        """Parse from XML element."""
        hrefs = []
        for href_el in element.findall(f"{{{NAMESPACE}}}href"):
            if href_el.text:
                hrefs.append(Href.from_string(href_el.text))

        propstats = []
        for ps_el in element.findall(f"{{{NAMESPACE}}}propstat"):
            propstats.append(PropStat.from_xml(ps_el))

        status_el = element.find(f"{{{NAMESPACE}}}status")
        status = None
        if status_el is not None and status_el.text:
            status = Status.from_string(status_el.text)

        return Response(hrefs=hrefs, propstats=propstats, status=status)

    @property
    def path(self) -> str:
        return self.hrefs[0].url.path if self.hrefs else ""

    def err(self) -> Exception | None:
        """Get error from response if any."""
        if self.status is None:
            return None
        return self.status.err()

    def prop_text(self, tag: str) -> str | None:
        """Text of the first successfully returned property named `tag`."""
        for propstat in self.propstats:
            if propstat.status.err() is not None:
                continue
            elem = propstat.prop.get(tag)
            if elem is not None:
                return elem.text or ""
        return None


@dataclass
class MultiStatus:
    """WebDAV multistatus response."""

    responses: list[Response] = field(default_factory=list)
    sync_token: str = ""

    @staticmethod
    def from_xml(element: etree._Element) -> MultiStatus:
        """Parse from XML element."""
        if element.tag != f"{{{NAMESPACE}}}multistatus":
            raise ValueError(f"webdav: expected multistatus, got {element.tag}")

        responses = []
        for resp_el in element.findall(f"{{{NAMESPACE}}}response"):
            responses.append(Response.from_xml(resp_el))

        sync_token_el = element.find(f"{{{NAMESPACE}}}sync-token")
        sync_token = sync_token_el.text if sync_token_el is not None and sync_token_el.text else ""

        return MultiStatus(responses=responses, sync_token=sync_token)


@dataclass
class CalendarQuery:
    """CalDAV calendar-query REPORT for VEVENTs overlapping a time range."""

    start: datetime
    end: datetime
    component: str = "VEVENT"

    def to_xml(self) -> etree._Element:
        """Convert to XML element."""
        root = etree.Element(f"{{{CALDAV_NAMESPACE}}}calendar-query", nsmap=NSMAP)
        root.append(
            Prop(
                raw=[
                    etree.Element(GET_ETAG),
                    etree.Element(CALENDAR_DATA),
                ]
            ).to_xml()
        )

        filter_el = etree.SubElement(root, f"{{{CALDAV_NAMESPACE}}}filter")
        calendar_filter = etree.SubElement(
            filter_el, f"{{{CALDAV_NAMESPACE}}}comp-filter", name="VCALENDAR"
        )
        component_filter = etree.SubElement(
            calendar_filter, f"{{{CALDAV_NAMESPACE}}}comp-filter", name=self.component
        )
        etree.SubElement(
            component_filter,
            f"{{{CALDAV_NAMESPACE}}}time-range",
            start=_format_time_range(self.start),
            end=_format_time_range(self.end),
        )
        return root


def _format_time_range(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime(TIME_RANGE_FORMAT)
