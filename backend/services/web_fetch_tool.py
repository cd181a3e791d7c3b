from __future__ import annotations

import asyncio
import io
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

import httpx
from bs4 import BeautifulSoup
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from chat.llm_client import ToolCall
from chat.tool_results import FetchResult, ToolError, ToolResult
from chat.tooling import (
    WEB_FETCH_TOOL_NAME,
    arguments_are_malformed,
    coerce_int_arg,
    string_arg,
)
from services.http_retry import (
    backoff_delay,
    is_retryable_status,
    parse_retry_after,
    sleep_before_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 8.0
DEFAULT_MAX_BYTES = 200_000
DEFAULT_MAX_FULL_BYTES = 2_000_000
MIN_MAX_BYTES = 10_000
MAX_TRUNCATED_BYTES = 500_000
DEFAULT_MAX_REDIRECTS = 5

FETCH_HEADERS = {
    "Accept": (
        "text/html, text/plain;q=0.9, application/json;q=0.8, "
        "application/pdf;q=0.8, */*;q=0.2"
    ),
    "User-Agent": "pro-chat/1.0 (+https://local)",
}

_NOISE_TAGS = ["script", "style", "noscript", "svg", "template", "iframe"]
_WHITESPACE_RE = re.compile(r"[ \t\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


class WebFetchError(RuntimeError):
    pass


class PdfExtractionError(WebFetchError):
    pass


@dataclass
class _BodyResult:
    raw: bytes
    text: str
    truncated: bool


def normalize_text(text: str) -> str:
    lines = [_WHITESPACE_RE.sub(" ", line).strip() for line in text.splitlines()]
    return _BLANK_LINES_RE.sub("\n\n", "\n".join(lines)).strip()


def html_to_text(html: str) -> tuple[str | None, str]:
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(" ", strip=True) if soup.title else None
    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    body = soup.body or soup
    return (title or None), normalize_text(body.get_text("\n"))


def matches_domain(hostname: str, domain: str) -> bool:
    clean = domain.lower().strip()
    if not clean:
        return False
    return hostname == clean or hostname.endswith(f".{clean}")


def is_private_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return True
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


def is_supported_content_type(content_type: str | None) -> bool:
    if not content_type:
        return True
    lowered = content_type.lower()
    return lowered.startswith("text/") or any(
        marker in lowered
        for marker in ("application/json", "application/xml", "application/xhtml")
    )


def is_pdf_content(
    content_type: str | None, content_disposition: str | None, url: str
) -> bool:
    if content_type and "application/pdf" in content_type.lower():
        return True
    if content_disposition and ".pdf" in content_disposition.lower():
        return True
    return ".pdf" in url.lower()


def pdf_to_text(raw: bytes) -> tuple[str | None, str]:
    """Extract the document title and the text of every page, pages separated by a blank line."""
    try:
        reader = PdfReader(io.BytesIO(raw))
        chunks = [(page.extract_text() or "").strip() for page in reader.pages]
        metadata = reader.metadata
        title = metadata.title if metadata is not None else None
    except (PyPdfError, ValueError, KeyError, TypeError) as exc:
        raise PdfExtractionError("Failed to extract PDF text.") from exc
    text = normalize_text("\n\n".join(chunk for chunk in chunks if chunk))
    return (title.strip() if isinstance(title, str) and title.strip() else None), text


class WebFetchTool:
    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_full_bytes: int = DEFAULT_MAX_FULL_BYTES,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        allowed_domains: list[str] | None = None,
        blocked_domains: list[str] | None = None,
        resolve_hostnames: bool = True,
        retry_max: int = 2,
        retry_base_delay_s: float = 0.3,
        retry_max_delay_s: float = 1.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.max_bytes = max_bytes
        self.max_full_bytes = max_full_bytes
        self.max_redirects = max(0, max_redirects)
        self.allowed_domains = [d.lower() for d in allowed_domains or [] if d]
        self.blocked_domains = [d.lower() for d in blocked_domains or [] if d]
        self.resolve_hostnames = resolve_hostnames
        self.retry_max = max(0, retry_max)
        self.retry_base_delay_s = max(0.0, retry_base_delay_s)
        self.retry_max_delay_s = max(self.retry_base_delay_s, retry_max_delay_s)
        self._transport = transport

    async def __call__(self, tool_call: ToolCall) -> ToolResult:
        arguments = tool_call.arguments
        if arguments_are_malformed(arguments):
            return self._error("Invalid tool arguments. Expected JSON with a url string.")

        url = string_arg(arguments, "url").strip()
        if not url:
            return self._error("URL is required.")

        truncate = arguments.get("truncate")
        truncate = truncate if isinstance(truncate, bool) else True
        cap = MAX_TRUNCATED_BYTES if truncate else self.max_full_bytes
        default_bytes = self.max_bytes if truncate else self.max_full_bytes
        max_bytes = coerce_int_arg(
            arguments.get("maxBytes"),
            default=default_bytes,
            minimum=MIN_MAX_BYTES,
            maximum=max(cap, MIN_MAX_BYTES),
        )

        try:
            return await self.fetch(url, max_bytes=max_bytes)
        except PdfExtractionError as exc:
            logger.warning("web_fetch could not read PDF at %s", url, exc_info=exc.__cause__)
            return self._error(str(exc), error_code="pdf_extraction_failed")
        except (WebFetchError, httpx.HTTPError) as exc:
            logger.info("web_fetch failed for %s: %s", url, exc)
            return self._error(str(exc) or "Fetch failed.", error_code="fetch_failed")

    @staticmethod
    def _error(message: str, *, error_code: str = "invalid_arguments") -> ToolError:
        return ToolError(tool=WEB_FETCH_TOOL_NAME, error=message, error_code=error_code)

    async def fetch(self, url: str, *, max_bytes: int) -> FetchResult:
        await self._check_url(url)

        async with httpx.AsyncClient(
            timeout=self.timeout_s,
            follow_redirects=False,
            headers=FETCH_HEADERS,
            transport=self._transport,
        ) as client:
            response, redirects = await self._fetch_with_retry(client, url)
            try:
                content_type = response.headers.get("content-type")
                final_url = str(response.url)
                is_pdf = is_pdf_content(
                    content_type, response.headers.get("content-disposition"), final_url
                )
                if not is_pdf and not is_supported_content_type(content_type):
                    raise WebFetchError(f"Unsupported content type: {content_type}")
                # A cut-off PDF loses its cross-reference table, so read it whole.
                limit = max(max_bytes, self.max_full_bytes) if is_pdf else max_bytes
                body = await self._read_body(response, limit)
            finally:
                await response.aclose()

        title: str | None = None
        text = body.text.strip()
        if is_pdf:
            title, text = await asyncio.to_thread(pdf_to_text, body.raw)
        elif content_type and "html" in content_type.lower():
            title, text = html_to_text(body.text)

        return FetchResult(
            url=final_url,
            status=response.status_code,
            content_type=content_type,
            title=title,
            text=text,
            truncated=body.truncated,
            redirects=redirects,
        )

    async def _check_url(self, url: str) -> None:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https"):
            raise WebFetchError("Only http(s) URLs are supported.")
        if parts.username or parts.password:
            raise WebFetchError("URLs with credentials are not supported.")
        if not parts.hostname:
            raise WebFetchError("Invalid URL.")
        if await self.is_blocked_host(parts.hostname):
            raise WebFetchError("Blocked host.")

    async def is_blocked_host(self, hostname: str) -> bool:
        lower = hostname.lower()
        if self.allowed_domains and not any(
            matches_domain(lower, domain) for domain in self.allowed_domains
        ):
            return True
        if any(matches_domain(lower, domain) for domain in self.blocked_domains):
            return True
        if lower == "localhost" or lower.endswith(".local"):
            return True

        try:
            ipaddress.ip_address(lower)
        except ValueError:
            pass
        else:
            return is_private_address(lower)

        if not self.resolve_hostnames:
            return False
        try:
            infos = await asyncio.get_running_loop().getaddrinfo(
                lower, None, type=socket.SOCK_STREAM
            )
        except socket.gaierror:
            return True
        return any(is_private_address(info[4][0]) for info in infos)

    async def _fetch_with_retry(
        self, client: httpx.AsyncClient, url: str
    ) -> tuple[httpx.Response, list[str]]:
        attempt = 0
        while True:
            try:
                response, redirects = await self._fetch_with_redirects(client, url)
            except httpx.TransportError:
                if attempt < self.retry_max:
                    await sleep_before_retry(
                        backoff_delay(attempt, self.retry_base_delay_s, self.retry_max_delay_s)
                    )
                    attempt += 1
                    continue
                raise

            if is_retryable_status(response.status_code) and attempt < self.retry_max:
                await response.aclose()
                delay = parse_retry_after(response.headers.get("retry-after"))
                if delay is None:
                    delay = backoff_delay(
                        attempt, self.retry_base_delay_s, self.retry_max_delay_s
                    )
                await sleep_before_retry(delay)
                attempt += 1
                continue
            return response, redirects

    async def _fetch_with_redirects(
        self, client: httpx.AsyncClient, url: str
    ) -> tuple[httpx.Response, list[str]]:
        current_url = url
        redirects: list[str] = []
        visited: set[str] = set()

        for _ in range(self.max_redirects + 1):
            if current_url in visited:
                raise WebFetchError("Redirect loop detected.")
            visited.add(current_url)

            request = client.build_request("GET", current_url)
            response = await client.send(request, stream=True)
            if not response.is_redirect:
                return response, redirects

            location = response.headers.get("location")
            await response.aclose()
            if not location:
                return response, redirects

            next_url = urljoin(current_url, location)
            await self._check_url(next_url)
            redirects.append(next_url)
            current_url = next_url

        raise WebFetchError("Too many redirects.")

    @staticmethod
    async def _read_body(response: httpx.Response, max_bytes: int) -> _BodyResult:
        chunks: list[bytes] = []
        received = 0
        truncated = False
        async for chunk in response.aiter_bytes():
            remaining = max_bytes - received
            if len(chunk) >= remaining:
                chunks.append(chunk[:remaining])
                truncated = len(chunk) > remaining
                received = max_bytes
                break
            chunks.append(chunk)
            received += len(chunk)

        raw = b"".join(chunks)
        encoding = response.charset_encoding or "utf-8"
        try:
            text = raw.decode(encoding, errors="replace")
        except LookupError:
            text = raw.decode("utf-8", errors="replace")
        return _BodyResult(raw=raw, text=text, truncated=truncated)
