"""Graph API provider adapter.

The Graph API expands recurring series itself: the adapter lists the
calendar view of the window, then asks for the instances of every series
master it saw. Delta tokens make incremental passes possible.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, tzinfo
from typing import Any
from urllib.parse import parse_qs, quote, urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from ..config import SyncConfig
from ..debug import log_context, log_provider_request, log_provider_response
from ..errors import AuthError, MalformedEventError, ProviderError
from ..models import EventKind, Feed, FetchResult, NormalizedEvent, ensure_utc
from ..recurrence import encode, graph_recurrence_to_rule, substitute_exceptions

logger = logging.getLogger("py_calsync.providers.graph")

# Graph query parameters take UTC date-times
GRAPH_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Graph returns 7 fractional digits, fromisoformat accepts at most 6
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")

TokenSource = str | Callable[[], str | Awaitable[str]]


class GraphClient:
    """Minimal Graph API client for calendar reads.

    The bearer token is either a string or a callable returning one
    (possibly awaitable), so callers can plug in their own refresh logic.
    """

    def __init__(
        self,
        token: TokenSource,
        config: SyncConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Graph client.

        Args:
            token: Bearer token or token provider
            config: Sync configuration (uses default if None)
            transport: HTTP transport override, mainly for tests
        """
        self.config = config or SyncConfig()
        self._token = token
        self._http_client = httpx.AsyncClient(
            base_url=self.config.graph_base_url.rstrip("/"),
            timeout=self.config.request_timeout,
            headers={
                "Accept": "application/json",
                "Prefer": f'outlook.timezone="UTC", odata.maxpagesize={self.config.graph_page_size}',
            },
            transport=transport,
        )

    async def close(self) -> None:
        """Close HTTP client and cleanup resources."""
        await self._http_client.aclose()

    async def __aenter__(self) -> GraphClient:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def _get_token(self) -> str:
        if callable(self._token):
            token = self._token()
            if inspect.isawaitable(token):
                token = await token
            return token
        return self._token

    async def _request(self, method: str, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Make authenticated request to the Graph API.

        Args:
            method: HTTP method
            url: API path relative to the base URL, or an absolute link
            params: Query parameters

        Returns:
            Decoded JSON body

        Raises:
            AuthError: Token rejected (401/403)
            ProviderError: Transport failure or unexpected status
        """
        headers = {"Authorization": f"Bearer {await self._get_token()}"}
        log_provider_request(method, url, headers, params)

        try:
            response = await self._http_client.request(method, url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Graph request timed out: {url}") from e
        except httpx.TransportError as e:
            raise ProviderError(f"Graph request failed: {e}") from e

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {}
        log_provider_response(response.status_code, response.headers.get("content-type"), body)

        if response.status_code in (401, 403):
            raise AuthError(_error_message(body) or "Graph rejected the access token", response.status_code)
        if response.status_code // 100 != 2:
            raise ProviderError(
                _error_message(body) or f"unexpected Graph response for {url}", response.status_code
            )
        return body

    async def paginate(self, url: str, params: dict[str, Any] | None = None) -> tuple[list[dict[str, Any]], str | None]:
        """Follow ``@odata.nextLink`` until the collection is exhausted.

        Returns:
            Tuple of (items, delta link of the last page if any)
        """
        items: list[dict[str, Any]] = []
        delta_link = None
        next_link: str | None = url
        while next_link:
            page = await self._request("GET", next_link, params=params)
            # nextLink carries the query string
            params = None
            items.extend(page.get("value", []))
            next_link = page.get("@odata.nextLink")
            delta_link = page.get("@odata.deltaLink", delta_link)
        return items, delta_link

    async def calendar_view_delta(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime,
        delta_token: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """List the calendar view of a window, or its changes since a delta token.

        Returns:
            Tuple of (items, next delta token)
        """
        path = f"/me/calendars/{quote(calendar_id, safe='')}/calendarView/delta"
        if delta_token:
            params = {"$deltatoken": delta_token}
        else:
            params = {"startDateTime": _format_time(start), "endDateTime": _format_time(end)}

        items, delta_link = await self.paginate(path, params)
        return items, delta_token_from_link(delta_link)

    async def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any]:
        """Get a single event (typically a series master)."""
        path = f"/me/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        return await self._request("GET", path)

    async def list_instances(
        self, calendar_id: str, master_id: str, start: datetime, end: datetime
    ) -> list[dict[str, Any]]:
        """List the occurrences and exceptions of a series within a window."""
        path = (
            f"/me/calendars/{quote(calendar_id, safe='')}"
            f"/events/{quote(master_id, safe='')}/instances"
        )
        params = {"startDateTime": _format_time(start), "endDateTime": _format_time(end)}
        items, _ = await self.paginate(path, params)
        return items


class GraphAdapter:
    """Provider adapter for Graph API calendars.

    Feed credentials are a bearer token or a token provider, see
    `GraphClient`. `Feed.calendar` holds the calendar id.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self._transport = transport

    def _client(self, feed: Feed) -> GraphClient:
        if not feed.credentials:
            raise AuthError(f"no Graph token for feed {feed.id}")
        return GraphClient(feed.credentials, self.config, transport=self._transport)

    async def fetch(
        self,
        feed: Feed,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None = None,
    ) -> FetchResult:
        """Fetch the feed's calendar view, incrementally when a cursor is given.

        An expired delta token (410 Gone) falls back to a full window fetch.
        """
        context = log_context(feed_id=feed.id)
        try:
            async with self._client(feed) as client:
                try:
                    return await self._fetch(client, feed, window_start, window_end, cursor)
                except ProviderError as e:
                    if cursor is None or e.status_code != 410:
                        raise
                    logger.warning(
                        f"Delta token for feed {feed.id} expired, falling back to a full fetch",
                        extra=context,
                    )
                    return await self._fetch(client, feed, window_start, window_end, None)
        except ProviderError as e:
            logger.error(f"Graph fetch for feed {feed.id} failed: {e}", extra=context)
            raise

    async def _fetch(
        self,
        client: GraphClient,
        feed: Feed,
        window_start: datetime,
        window_end: datetime,
        cursor: str | None,
    ) -> FetchResult:
        items, next_cursor = await client.calendar_view_delta(
            feed.calendar, window_start, window_end, cursor
        )
        result = FetchResult(next_cursor=next_cursor, incremental=cursor is not None)

        masters: dict[str, dict[str, Any]] = {}
        series_ids: set[str] = set()
        standalone: list[dict[str, Any]] = []
        for item in items:
            if "@removed" in item:
                if item.get("id"):
                    result.deleted_external_ids.append(item["id"])
                continue
            if item.get("type") == "seriesMaster" or item.get("recurrence"):
                if item.get("id"):
                    masters[item["id"]] = item
                    continue
            if item.get("seriesMasterId"):
                # Occurrences are re-read through their master's instances
                series_ids.add(item["seriesMasterId"])
                continue
            standalone.append(item)

        for master_id in sorted(series_ids - masters.keys()):
            try:
                masters[master_id] = await client.get_event(feed.calendar, master_id)
            except ProviderError as e:
                if e.status_code != 404:
                    raise
                logger.warning(
                    f"Series master {master_id} of feed {feed.id} no longer exists",
                    extra=log_context(feed.id, master_id),
                )

        events: list[NormalizedEvent] = []
        for item in standalone:
            event = self._normalize_or_skip(feed, result, item, EventKind.STANDALONE)
            if event is not None:
                events.append(event)

        normalized_masters = []
        for item in masters.values():
            master = self._normalize_or_skip(feed, result, item, EventKind.MASTER)
            if master is not None:
                normalized_masters.append(master)

        semaphore = asyncio.Semaphore(max(1, self.config.graph_max_concurrency))

        async def instances_of(master: NormalizedEvent) -> list[dict[str, Any]] | None:
            async with semaphore:
                try:
                    return await client.list_instances(
                        feed.calendar, master.external_id, window_start, window_end
                    )
                except ProviderError as e:
                    if isinstance(e, AuthError) or e.status_code != 404:
                        raise
                    logger.warning(
                        f"Series master {master.external_id} of feed {feed.id} vanished "
                        f"before its instances were read",
                        extra=log_context(feed.id, master.external_id),
                    )
                    return None

        # Every request finishes before the client is closed
        outcomes = await asyncio.gather(
            *(instances_of(m) for m in normalized_masters), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        for master, instances in zip(normalized_masters, outcomes):
            if instances is None:
                result.skipped += 1
                continue
            events.append(master)
            for item in instances:
                item.setdefault("seriesMasterId", master.external_id)
                kind = EventKind.EXCEPTION if item.get("type") == "exception" else EventKind.INSTANCE
                event = self._normalize_or_skip(feed, result, item, kind)
                if event is not None:
                    events.append(event)

        result.events = substitute_exceptions(events)
        logger.debug(
            f"Fetched {len(result.events)} events, {len(result.deleted_external_ids)} deletions "
            f"({'delta' if result.incremental else 'full'})",
            extra=log_context(feed_id=feed.id),
        )
        return result

    def _normalize_or_skip(
        self, feed: Feed, result: FetchResult, item: dict[str, Any], kind: EventKind
    ) -> NormalizedEvent | None:
        try:
            return normalize_graph_event(item, kind)
        except MalformedEventError as e:
            external_id = e.external_id or item.get("id")
            logger.warning(
                f"Skipping malformed event {external_id} in feed {feed.id}: {e}",
                extra=log_context(feed.id, external_id),
            )
            result.skipped += 1
            return None


def normalize_graph_event(item: dict[str, Any], kind: EventKind) -> NormalizedEvent:
    """Convert one Graph event resource into a normalized event.

    Args:
        item: Event resource as returned by the Graph API
        kind: Classification decided by the caller

    Returns:
        Normalized event

    Raises:
        MalformedEventError: The resource cannot be normalized
    """
    external_id = item.get("id")
    if not external_id:
        raise MalformedEventError("event has no id")

    try:
        all_day = bool(item.get("isAllDay", False))
        start = _parse_date_time_tz(item.get("start"), all_day)
        end = _parse_date_time_tz(item.get("end"), all_day)

        recurrence_rule = None
        if kind is EventKind.MASTER:
            rule = graph_recurrence_to_rule(item.get("recurrence") or {})
            recurrence_rule = encode(rule) if rule is not None else ""
            if not recurrence_rule:
                raise MalformedEventError("unsupported recurrence pattern", external_id)

        recurrence_id = None
        if kind in (EventKind.INSTANCE, EventKind.EXCEPTION) and item.get("originalStart"):
            recurrence_id = _parse_timestamp(item["originalStart"])

        organizer = (item.get("organizer") or {}).get("emailAddress") or {}

        return NormalizedEvent(
            external_id=external_id,
            kind=kind,
            start=start,
            end=end,
            title=item.get("subject") or None,
            description=(item.get("body") or {}).get("content") or None,
            location=(item.get("location") or {}).get("displayName") or None,
            all_day=all_day,
            recurring_external_id=item.get("seriesMasterId"),
            recurrence_rule=recurrence_rule,
            recurrence_id=recurrence_id,
            status=item.get("showAs"),
            organizer=organizer.get("address"),
            attendees=[_attendee(a) for a in item.get("attendees") or []],
        )
    except MalformedEventError:
        raise
    except (ValueError, TypeError, KeyError, AttributeError) as e:
        raise MalformedEventError(str(e), external_id) from e


def delta_token_from_link(delta_link: str | None) -> str | None:
    """Extract the ``$deltatoken`` value from an ``@odata.deltaLink``."""
    if not delta_link:
        return None
    query = parse_qs(urlparse(delta_link).query)
    for key in ("$deltatoken", "deltatoken"):
        if query.get(key):
            return query[key][0]
    return None


def _parse_date_time_tz(value: dict[str, Any] | None, all_day: bool) -> datetime:
    """Parse a Graph ``dateTimeTimeZone`` object into UTC."""
    if not value or not value.get("dateTime"):
        raise MalformedEventError("missing start or end time")

    dt = datetime.fromisoformat(_FRACTION_RE.sub(r"\1", value["dateTime"]))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_zone(value.get("timeZone")))
    if all_day:
        # All-day events sit at UTC midnight of their calendar date
        return ensure_utc(dt.date())
    return ensure_utc(dt)


def _parse_timestamp(value: str) -> datetime:
    value = _FRACTION_RE.sub(r"\1", value)
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(value))


def _zone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        # Windows zone names are not in the IANA database; times are requested in UTC
        return UTC


def _format_time(dt: datetime) -> str:
    return ensure_utc(dt).strftime(GRAPH_TIME_FORMAT)


def _error_message(body: Any) -> str | None:
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message") or error.get("code")
    return None


def _attendee(value: dict[str, Any]) -> dict[str, Any]:
    address = value.get("emailAddress") or {}
    attendee: dict[str, Any] = {"email": address.get("address")}
    if address.get("name"):
        attendee["name"] = address["name"]
    status = (value.get("status") or {}).get("response")
    if status:
        attendee["status"] = status
    if value.get("type"):
        attendee["role"] = value["type"]
    return attendee
