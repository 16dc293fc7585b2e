"""HTTP client for the customs "AskCustoms" API.

Two request types share one JSON envelope ``{MessageType, MessageBody, Token}``:
REQ.60.1 lists declarations for a period, REQ.61.1 fetches one declaration by
guid. Responses carry the document as Base64 of a ZIP archive.
"""

import logging
from datetime import date, datetime, time
from xml.sax.saxutils import escape

import httpx

from customs_sync.config import Settings
from customs_sync.customs_gateway.codec import TransportError, decode_envelope
from customs_sync.customs_gateway.list_parser import DeclarationSummary, parse_summaries

logger = logging.getLogger("customs.gateway")

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"

SERVER_ERROR_HINT = (
    "Customs API returned 500. Data for this period is probably unavailable "
    "or the period is too far back."
)

_NETWORK_MARKERS = ("ECONNRESET", "ECONNREFUSED", "ENOTFOUND", "EAI_AGAIN", "socket hang up")


class GatewayError(Exception):
    """A customs API call failed.

    ``kind`` is one of ``timeout``, ``network``, ``http``, ``transport`` or
    ``malformed``; ``vendor_code`` carries the transport or network code when
    there is no HTTP status.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        http_status: int | None = None,
        vendor_code: str | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.http_status = http_status
        self.vendor_code = vendor_code
        self.body = body

    @property
    def code(self) -> str:
        if self.http_status is not None:
            return str(self.http_status)
        return self.vendor_code or "API_ERROR"


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def build_list_body(namespace: str, edrpou: str, date_from: date, date_to: date, now: datetime) -> str:
    begin = datetime.combine(date_from, time(0, 0, 0))
    end = datetime.combine(date_to, time(23, 59, 59))
    tag = f"{namespace}.REQ.60.1"
    return (
        f"<{tag}>"
        f"<creation_date>{format_timestamp(now)}</creation_date>"
        f"<cli_code>{escape(edrpou)}</cli_code>"
        f"<date_begin>{format_timestamp(begin)}</date_begin>"
        f"<date_end>{format_timestamp(end)}</date_end>"
        f"<date_type>1</date_type>"
        f"<status>R</status>"
        f"</{tag}>"
    )


def build_detail_body(namespace: str, edrpou: str, guid: str, now: datetime) -> str:
    tag = f"{namespace}.REQ.61.1"
    return (
        f"<{tag}>"
        f"<creation_date>{format_timestamp(now)}</creation_date>"
        f"<cli_code>{escape(edrpou)}</cli_code>"
        f"<guid>{escape(guid)}</guid>"
        f"</{tag}>"
    )


def _network_code(exc: Exception) -> str:
    text = str(exc)
    for marker in _NETWORK_MARKERS:
        if marker in text:
            return marker
    return "NETWORK_ERROR"


class CustomsGateway:
    """Customs API calls for one company (token + EDRPOU)."""

    def __init__(
        self,
        settings: Settings,
        token: str,
        edrpou: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.token = token
        self.edrpou = edrpou
        self.namespace = settings.customs_message_namespace
        self._client = httpx.AsyncClient(
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "CustomsGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_list(self, date_from: date, date_to: date) -> list[DeclarationSummary]:
        """List declarations registered in ``[date_from, date_to]`` (whole days)."""
        body = build_list_body(self.namespace, self.edrpou, date_from, date_to, datetime.now())
        logger.info("REQ.60.1 %s..%s for %s", date_from, date_to, self.edrpou)
        response = await self._post(
            "REQ.60.1", body, self.settings.list_request_timeout_seconds
        )
        if response.status_code == 204 or not response.content.strip():
            logger.info("No declarations for %s..%s", date_from, date_to)
            return []

        xml_text = self._decode_response(response)
        summaries = parse_summaries(xml_text)
        logger.info("REQ.60.1 %s..%s returned %d declarations", date_from, date_to, len(summaries))
        return summaries

    async def fetch_detail(self, guid: str) -> str:
        """Fetch the full declaration document; returns the decoded XML."""
        body = build_detail_body(self.namespace, self.edrpou, guid, datetime.now())
        response = await self._post(
            "REQ.61.1", body, self.settings.detail_request_timeout_seconds
        )
        if response.status_code == 204 or not response.content.strip():
            raise GatewayError(
                f"Empty detail response for {guid}", kind="malformed", vendor_code="EMPTY_RESPONSE"
            )
        return self._decode_response(response)

    async def _post(self, request_type: str, body: str, timeout: float) -> httpx.Response:
        payload = {
            "MessageType": f"{self.namespace}.{request_type}",
            "MessageBody": body,
            "Token": self.token,
        }
        try:
            response = await self._client.post(
                self.settings.customs_api_endpoint, json=payload, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise GatewayError(
                f"{request_type} timeout after {timeout:.0f}s", kind="timeout", vendor_code="ETIMEDOUT"
            ) from e
        except httpx.TransportError as e:
            raise GatewayError(
                f"{request_type} network error: {e}", kind="network", vendor_code=_network_code(e)
            ) from e

        if response.is_success:
            return response

        text = response.text[:2000]
        if response.status_code == 500:
            message = SERVER_ERROR_HINT
        else:
            message = f"Customs API {request_type} failed with HTTP {response.status_code}: {text}"
        logger.warning("%s HTTP %d: %s", request_type, response.status_code, text[:200])
        raise GatewayError(message, kind="http", http_status=response.status_code, body=text)

    def _decode_response(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError(
                "Customs API returned a non-JSON body", kind="malformed", vendor_code="MALFORMED_RESPONSE"
            ) from e

        message_body = data.get("messageBody") if isinstance(data, dict) else None
        if not message_body:
            raise GatewayError(
                "Customs API response has no messageBody", kind="malformed", vendor_code="MALFORMED_RESPONSE"
            )
        try:
            return decode_envelope(message_body)
        except TransportError as e:
            raise GatewayError(str(e), kind="transport", vendor_code=e.code) from e
