#!/usr/bin/env python3
import argparse
import base64
import json
import logging
import mimetypes
import os
import re
import secrets
import sys
import time
import tomllib
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from threading import Event, Lock, Thread
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)
from urllib import robotparser
from urllib.parse import urljoin, urlparse

import requests
import urllib3
import yaml
from bs4 import BeautifulSoup, UnicodeDammit
from bs4.element import Stylesheet, Tag
from requests.adapters import HTTPAdapter
from urllib3.exceptions import (
    ConnectTimeoutError,
    InsecureRequestWarning,
    ReadTimeoutError,
)
from urllib3.util.retry import Retry

# -------------------- Config --------------------

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; PageReplica/1.0; static page replicator)"

DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}
PAGE_ACCEPT = DEFAULT_HEADERS["Accept"]
CSS_ACCEPT = "text/css,*/*;q=0.1"
IMAGE_ACCEPT = "image/avif,image/webp,image/*,*/*;q=0.8"
ASSET_ACCEPT = "*/*"

DEFAULT_TIMEOUT = 15.0
ROBOTS_TIMEOUT = 5.0
MAX_PAGE_BYTES = 10 * 1024 * 1024
MAX_ASSET_BYTES = 5 * 1024 * 1024
IMAGE_BATCH_SIZE = 5
ASSET_RETENTION_SECONDS = 60 * 60.0

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+(?:url\(\s*)?([\"']?)([^)\"';\s]+)\1\s*\)?([^;{}]*);?",
    re.IGNORECASE,
)
CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)
STYLE_CLOSE_RE = re.compile(r"</(?=style)", re.IGNORECASE)
JOB_ID_RE = re.compile(r"^session_(\d+)_[0-9a-f]+$")

# Types mimetypes does not know everywhere.
EXTRA_TYPES = {
    ".woff2": "font/woff2",
    ".woff": "font/woff",
    ".ttf": "font/ttf",
    ".otf": "font/otf",
    ".eot": "application/vnd.ms-fontobject",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".ico": "image/x-icon",
}

STRIP_TAGS = ("script", "noscript", "iframe", "object", "embed")
EVENT_HANDLER_ATTRS = frozenset(
    {
        "onabort",
        "onanimationend",
        "onbeforeunload",
        "onblur",
        "onchange",
        "onclick",
        "oncontextmenu",
        "ondblclick",
        "ondrag",
        "ondrop",
        "onerror",
        "onfocus",
        "oninput",
        "onkeydown",
        "onkeypress",
        "onkeyup",
        "onload",
        "onmousedown",
        "onmouseenter",
        "onmouseleave",
        "onmousemove",
        "onmouseout",
        "onmouseover",
        "onmouseup",
        "onpointerdown",
        "onpointerup",
        "onreset",
        "onresize",
        "onscroll",
        "onsubmit",
        "ontouchend",
        "ontouchstart",
        "ontransitionend",
        "onunload",
        "onwheel",
    }
)
# Forms stay in the tree; every control in them is disabled.
FORM_STRIP_ATTRS = ("action", "method", "target")
CONTROL_STRIP_ATTRS = ("formaction", "formmethod", "formtarget")
INTERACTIVE_TAGS = ("input", "textarea", "button", "select")

BANNER_ID = "page-replica-banner"
BANNER_HTML = (
    f'<div id="{BANNER_ID}" style="position: fixed; top: 0; left: 0; right: 0; '
    "background: linear-gradient(135deg, #1a1a2e 0%, #16213e 100%); color: #f4a261; "
    "padding: 8px 16px; text-align: center; font-family: 'Courier New', monospace; "
    "font-size: 12px; border-bottom: 2px solid #f4a261; z-index: 999999; "
    'box-shadow: 0 2px 8px rgba(0,0,0,0.3);">'
    "REPLICATED SITE | Original interactivity disabled | For preview purposes only"
    "</div>"
    f'<div id="{BANNER_ID}-spacer" style="height: 36px;"></div>'
)

KIND_IMAGE = "image"
KIND_BACKGROUND = "inline-style-background"
KIND_STYLESHEET = "stylesheet"
KIND_CSS_IMPORT = "css-import"
KIND_CSS_ASSET = "css-asset"

ENCODING_DATA_URL = "data-url"
ENCODING_CSS_TEXT = "css-text"

CONFIG_GROUPS = ("fetch", "limits", "policy", "store", "general")

# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = DEFAULT_TIMEOUT
    robots_timeout: float = ROBOTS_TIMEOUT
    max_page_bytes: int = MAX_PAGE_BYTES
    max_asset_bytes: int = MAX_ASSET_BYTES
    user_agent: str = DEFAULT_USER_AGENT
    retries: int = 2

    # Policy
    respect_robots: bool = True
    verify_tls: bool = True

    # Assets
    image_batch_size: int = IMAGE_BATCH_SIZE
    inline_css_assets: bool = True

    # Store maintenance
    asset_retention_seconds: float = ASSET_RETENTION_SECONDS
    sweep_interval_seconds: float = ASSET_RETENTION_SECONDS

    def __post_init__(self) -> None:
        self.timeout = max(0.1, float(self.timeout))
        self.robots_timeout = max(0.1, float(self.robots_timeout))
        self.max_page_bytes = max(1024, int(self.max_page_bytes))
        self.max_asset_bytes = max(1024, int(self.max_asset_bytes))
        self.retries = max(0, int(self.retries))
        self.image_batch_size = max(1, int(self.image_batch_size))
        self.asset_retention_seconds = max(1.0, float(self.asset_retention_seconds))
        self.sweep_interval_seconds = max(1.0, float(self.sweep_interval_seconds))


# -------------------- Errors --------------------


class ReplicationError(Exception):
    """A failure that ends the job and is reported to the caller verbatim."""

    default_message = "Failed to replicate website"
    http_status = 500

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class MissingURLError(ReplicationError):
    default_message = "URL is required"
    http_status = 400


class InvalidURLError(ReplicationError):
    default_message = "Invalid URL format"
    http_status = 400


class RobotsBlockedError(ReplicationError):
    default_message = "Blocked by robots.txt"


class FetchTimeoutError(ReplicationError):
    default_message = "Request timeout - site took too long to respond"


class PageNotFoundError(ReplicationError):
    default_message = "Page not found (404)"


class ForbiddenError(ReplicationError):
    default_message = "Access forbidden (403)"


class FetchFailedError(ReplicationError):
    default_message = "Failed to fetch HTML"


class HttpStatusError(Exception):
    def __init__(self, url: str, status: int):
        super().__init__(f"HTTP {status} for {url}")
        self.url = url
        self.status = status


class ResponseTooLargeError(Exception):
    def __init__(self, url: str, limit: int):
        super().__init__(f"response from {url} exceeds {limit} bytes")
        self.url = url
        self.limit = limit


# -------------------- Utils --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u:
        return False
    if u.lower().startswith(("#", "mailto:", "tel:", "javascript:", "data:", "blob:")):
        return False
    return True


def is_data_url(u: Optional[str]) -> bool:
    return bool(u) and u.strip().lower().startswith("data:")


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def guess_type_from_url(url: str) -> Optional[str]:
    path = urlparse(url).path
    ext = os.path.splitext(path)[1].lower()
    if ext in EXTRA_TYPES:
        return EXTRA_TYPES[ext]
    return mimetypes.guess_type(path)[0]


def decode_text(body: bytes, content_type: Optional[str], *, is_html: bool = False) -> str:
    m = CHARSET_RE.search(content_type or "")
    if m:
        try:
            return body.decode(m.group(1), errors="replace")
        except LookupError:
            logging.debug("unknown charset %s, falling back", m.group(1))
    if is_html:
        markup = UnicodeDammit(body, is_html=True).unicode_markup
        if markup is not None:
            return markup
    return body.decode("utf-8", errors="replace")


def is_timeout_error(exc: requests.RequestException) -> bool:
    if isinstance(exc, requests.Timeout):
        return True
    cause = exc.args[0] if exc.args else None
    if isinstance(cause, (ConnectTimeoutError, ReadTimeoutError)):
        return True
    return isinstance(getattr(cause, "reason", None), (ConnectTimeoutError, ReadTimeoutError))


def new_job_id(now: Optional[float] = None) -> str:
    ts = time.time() if now is None else now
    return f"session_{int(ts * 1000)}_{secrets.token_hex(5)}"


def job_created_at(job_id: str) -> Optional[float]:
    m = JOB_ID_RE.match(job_id or "")
    if not m:
        return None
    return int(m.group(1)) / 1000.0


def batched(items: Sequence["AssetReference"], size: int) -> List[List["AssetReference"]]:
    size = max(1, size)
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def build_session(settings: Settings) -> requests.Session:
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=0.5,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET", "HEAD"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=32, pool_maxsize=32)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    s.headers["User-Agent"] = settings.user_agent
    s.verify = settings.verify_tls
    if not settings.verify_tls:
        urllib3.disable_warnings(InsecureRequestWarning)
        logging.warning("TLS certificate verification is disabled for all fetches")
    return s


# -------------------- URL resolution --------------------


def resolve_url(reference: str, base_url: str) -> str:
    """Resolve a reference found in a page or stylesheet against ``base_url``.

    Protocol-relative references take the scheme of the base, absolute
    http(s) and ``data:`` references pass through untouched. A reference
    that cannot be parsed comes back as given, so it simply never matches
    anything in the asset map.
    """
    ref = (reference or "").strip()
    try:
        if ref.startswith("//"):
            scheme = urlparse(base_url).scheme
            return f"{scheme}:{ref}" if scheme else ref
        if ref.lower().startswith(("http://", "https://", "data:")):
            return ref
        return urljoin(base_url, ref)
    except ValueError as e:
        logging.debug("cannot resolve %r against %s: %s", reference, base_url, e)
        return reference


# -------------------- CSS url scanner --------------------


def parse_css_urls(text: Optional[str]) -> List[str]:
    urls: List[str] = []
    for m in CSS_URL_RE.finditer(text or ""):
        u = m.group(2).strip()
        if can_fetch_url(u):
            urls.append(u)
    return urls


def parse_css_imports(text: Optional[str]) -> List[str]:
    urls: List[str] = []
    for m in CSS_IMPORT_RE.finditer(text or ""):
        u = m.group(2).strip()
        if can_fetch_url(u):
            urls.append(u)
    return urls


def rewrite_css_urls(css_text: str, lookup: Callable[[str], Optional[str]]) -> str:
    def repl(m: re.Match) -> str:
        q = m.group(1) or ""
        u = m.group(2).strip()
        if not can_fetch_url(u):
            return m.group(0)
        nu = lookup(u)
        if nu is None:
            return m.group(0)
        return f"url({q}{nu}{q})"

    return CSS_URL_RE.sub(repl, css_text)


def inline_css_imports(css_text: str, lookup: Callable[[str], Optional[str]]) -> str:
    def repl(m: re.Match) -> str:
        u = m.group(2).strip()
        if not can_fetch_url(u):
            return m.group(0)
        css = lookup(u)
        if css is None:
            return m.group(0)
        media = (m.group(3) or "").strip()
        if media:
            return f"@media {media} {{\n{css}\n}}"
        return css

    return CSS_IMPORT_RE.sub(repl, css_text)


# -------------------- Document --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except Exception:
        return BeautifulSoup(html, "html.parser")


class HtmlDocument:
    """The parsed page, reachable only through the operations the pipeline needs."""

    def __init__(self, soup: BeautifulSoup):
        self.soup = soup

    @classmethod
    def parse(cls, html: str) -> "HtmlDocument":
        return cls(bs4_parse(html))

    def select(self, selector: str) -> List[Tag]:
        return list(self.soup.select(selector))

    def find_all(self, name: Union[str, bool, Sequence[str]]) -> List[Tag]:
        if isinstance(name, tuple):
            name = list(name)
        return list(self.soup.find_all(name))

    def remove(self, tag: Tag) -> None:
        tag.extract()

    def _style_string(self, css_text: str) -> Stylesheet:
        # Style content is raw text, so a closing tag would end the element early.
        return self.soup.new_string(STYLE_CLOSE_RE.sub(r"<\\/", css_text), Stylesheet)

    def set_style_text(self, tag: Tag, css_text: str) -> None:
        tag.clear()
        tag.append(self._style_string(css_text))

    def replace_with_style(self, tag: Tag, css_text: str) -> Tag:
        style = self.soup.new_tag("style", attrs={"type": "text/css"})
        style.append(self._style_string(css_text))
        tag.replace_with(style)
        return style

    def prepend_to_body(self, markup: str) -> None:
        body = self.soup.body
        if body is None:
            body = self.soup.new_tag("body")
            (self.soup.html or self.soup).append(body)
        fragment = BeautifulSoup(markup, "html.parser")
        for node in reversed(list(fragment.contents)):
            body.insert(0, node.extract())

    def base_url(self, fallback: str) -> str:
        tag = self.soup.find("base", href=True)
        if tag and tag.get("href"):
            return resolve_url(tag["href"], fallback)
        return fallback

    def serialize(self) -> str:
        try:
            return self.soup.decode(formatter="html")
        except Exception:
            return str(self.soup)


# -------------------- Extraction --------------------


@dataclass
class AssetReference:
    original: str
    absolute: str
    kind: str
    element: Optional[Tag] = field(default=None, repr=False, compare=False)

    def storage_keys(self) -> Tuple[str, ...]:
        # CSS-internal literals are relative to their stylesheet, so they
        # would collide across sheets.
        if self.kind == KIND_CSS_ASSET or self.original == self.absolute:
            return (self.absolute,)
        return (self.original, self.absolute)


@dataclass
class ExtractedAssets:
    images: List[AssetReference] = field(default_factory=list)
    stylesheets: List[AssetReference] = field(default_factory=list)


def is_stylesheet_link(tag: Tag) -> bool:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return "stylesheet" in {r.lower() for r in rel}


def has_background(style: Optional[str]) -> bool:
    return bool(style) and "background" in style.lower()


def extract_assets(document: HtmlDocument, base_url: str) -> ExtractedAssets:
    base = document.base_url(base_url)
    found = ExtractedAssets()
    for img in document.select("img[src]"):
        src = img.get("src")
        if can_fetch_url(src):
            found.images.append(
                AssetReference(src, resolve_url(src, base), KIND_IMAGE, img)
            )
    for tag in document.select("[style]"):
        style = tag.get("style")
        if not has_background(style):
            continue
        for u in parse_css_urls(style):
            found.images.append(
                AssetReference(u, resolve_url(u, base), KIND_BACKGROUND, tag)
            )
    for link in document.select("link[href]"):
        if not is_stylesheet_link(link):
            continue
        href = link.get("href")
        if can_fetch_url(href):
            found.stylesheets.append(
                AssetReference(href, resolve_url(href, base), KIND_STYLESHEET, link)
            )
    for style in document.find_all("style"):
        for u in parse_css_imports(style.get_text()):
            found.stylesheets.append(
                AssetReference(u, resolve_url(u, base), KIND_CSS_IMPORT, style)
            )
    return found


def extract_css_assets(css_text: str, stylesheet_url: str) -> List[AssetReference]:
    refs: List[AssetReference] = []
    seen = set()
    for u in parse_css_urls(css_text):
        absu = resolve_url(u, stylesheet_url)
        if absu in seen:
            continue
        seen.add(absu)
        refs.append(AssetReference(u, absu, KIND_CSS_ASSET))
    return refs


# -------------------- Inlined assets --------------------


@dataclass(frozen=True)
class InlinedAsset:
    content_type: str
    payload: Union[bytes, str]
    encoding: str = ENCODING_DATA_URL

    @property
    def data_url(self) -> str:
        raw = self.payload.encode("utf-8") if isinstance(self.payload, str) else self.payload
        return f"data:{self.content_type};base64,{base64.b64encode(raw).decode('ascii')}"

    @property
    def css_text(self) -> str:
        if isinstance(self.payload, bytes):
            return self.payload.decode("utf-8", errors="replace")
        return self.payload


def lookup_asset(
    asset_map: Mapping[str, InlinedAsset], keys: Iterable[str], encoding: str
) -> Optional[InlinedAsset]:
    for k in keys:
        asset = asset_map.get(k)
        if asset is not None and asset.encoding == encoding:
            return asset
    return None


# -------------------- Robots --------------------


class RobotsPolicy:
    def __init__(self, session: requests.Session, timeout: float = ROBOTS_TIMEOUT):
        self.session = session
        self.timeout = timeout

    @staticmethod
    def robots_url(url: str) -> str:
        p = urlparse(url)
        return f"{p.scheme}://{p.netloc}/robots.txt"

    def fetch(self, url: str) -> Optional[robotparser.RobotFileParser]:
        robots_url = self.robots_url(url)
        try:
            r = self.session.get(robots_url, timeout=self.timeout)
            if r.status_code >= 400 or not r.text:
                return None
            rp = robotparser.RobotFileParser(robots_url)
            rp.parse(r.text.splitlines())
            return rp
        except Exception as e:
            logging.debug("robots.txt unavailable for %s: %s", url, e)
            return None

    def is_allowed(self, url: str, user_agent: str) -> bool:
        rp = self.fetch(url)
        if rp is None:
            return True
        try:
            return rp.can_fetch(user_agent, url)
        except Exception as e:
            logging.debug("robots.txt evaluation failed for %s: %s", url, e)
            return True


# -------------------- Fetcher --------------------


@dataclass
class PageFetchResult:
    html: str
    final_url: str
    content_type: Optional[str] = None


class Fetcher:
    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        policy: Optional[RobotsPolicy] = None,
    ):
        self.s = settings
        self.session = session if session is not None else build_session(settings)
        if policy is None and settings.respect_robots:
            policy = RobotsPolicy(self.session, timeout=settings.robots_timeout)
        self.policy = policy

    def _headers(self, accept: str, referer: Optional[str] = None) -> Dict[str, str]:
        headers = {"User-Agent": self.s.user_agent, "Accept": accept}
        if referer:
            headers["Referer"] = referer
        return headers

    def _download(
        self, url: str, *, limit: int, headers: Dict[str, str]
    ) -> Tuple[bytes, requests.Response]:
        with self.session.get(
            url,
            headers=headers,
            timeout=self.s.timeout,
            stream=True,
            allow_redirects=True,
            verify=self.s.verify_tls,
        ) as resp:
            if resp.status_code >= 400:
                raise HttpStatusError(url, resp.status_code)
            cl = resp.headers.get("Content-Length")
            if cl:
                try:
                    declared = int(cl)
                except ValueError:
                    declared = 0
                if declared > limit:
                    raise ResponseTooLargeError(url, limit)
            chunks: List[bytes] = []
            written = 0
            for chunk in resp.iter_content(chunk_size=64 * 1024):
                if not chunk:
                    continue
                written += len(chunk)
                if written > limit:
                    raise ResponseTooLargeError(url, limit)
                chunks.append(chunk)
            return b"".join(chunks), resp

    def fetch_page(self, url: str) -> PageFetchResult:
        if self.policy is not None and not self.policy.is_allowed(url, self.s.user_agent):
            raise RobotsBlockedError()
        try:
            body, resp = self._download(
                url, limit=self.s.max_page_bytes, headers=self._headers(PAGE_ACCEPT)
            )
        except HttpStatusError as e:
            if e.status == 404:
                raise PageNotFoundError() from e
            if e.status == 403:
                raise ForbiddenError() from e
            raise FetchFailedError(f"Failed to fetch HTML: {e}") from e
        except ResponseTooLargeError as e:
            raise FetchFailedError(f"Failed to fetch HTML: {e}") from e
        except requests.RequestException as e:
            if is_timeout_error(e):
                raise FetchTimeoutError() from e
            raise FetchFailedError(f"Failed to fetch HTML: {e}") from e
        content_type = resp.headers.get("Content-Type")
        ct = media_type(content_type)
        if ct and "html" not in ct and "xml" not in ct:
            logging.warning("unexpected content type %s for %s", ct, url)
        return PageFetchResult(
            html=decode_text(body, content_type, is_html=True),
            final_url=resp.url or url,
            content_type=content_type,
        )

    def _fetch_asset_bytes(
        self, url: str, referer: Optional[str], accept: str
    ) -> Optional[Tuple[bytes, requests.Response]]:
        try:
            body, resp = self._download(
                url, limit=self.s.max_asset_bytes, headers=self._headers(accept, referer)
            )
        except (HttpStatusError, ResponseTooLargeError, requests.RequestException, ValueError) as e:
            logging.warning("failed to fetch %s: %s", url, e)
            return None
        if not body:
            logging.warning("empty response %s", url)
            return None
        return body, resp

    def _download_binary(
        self, url: str, referer: Optional[str], accept: str, default_type: str
    ) -> Optional[InlinedAsset]:
        got = self._fetch_asset_bytes(url, referer, accept)
        if got is None:
            return None
        body, resp = got
        ct = (
            media_type(resp.headers.get("Content-Type"))
            or guess_type_from_url(resp.url or url)
            or default_type
        )
        logging.debug("inlined %s (%s, %d bytes)", url, ct, len(body))
        return InlinedAsset(ct, body, ENCODING_DATA_URL)

    def download_stylesheet(self, url: str, referer: Optional[str] = None) -> Optional[InlinedAsset]:
        got = self._fetch_asset_bytes(url, referer, CSS_ACCEPT)
        if got is None:
            return None
        body, resp = got
        content_type = resp.headers.get("Content-Type")
        return InlinedAsset(
            media_type(content_type) or "text/css",
            decode_text(body, content_type),
            ENCODING_CSS_TEXT,
        )

    def download_image(self, url: str, referer: Optional[str] = None) -> Optional[InlinedAsset]:
        return self._download_binary(url, referer, IMAGE_ACCEPT, "image/png")

    def download_generic_asset(
        self, url: str, referer: Optional[str] = None
    ) -> Optional[InlinedAsset]:
        return self._download_binary(url, referer, ASSET_ACCEPT, "application/octet-stream")

    def fetch_stylesheet(self, url: str, referer: Optional[str] = None) -> Optional[str]:
        asset = self.download_stylesheet(url, referer)
        return asset.css_text if asset is not None else None

    def fetch_image(self, url: str, referer: Optional[str] = None) -> Optional[str]:
        asset = self.download_image(url, referer)
        return asset.data_url if asset is not None else None

    def fetch_generic_asset(self, url: str, referer: Optional[str] = None) -> Optional[str]:
        asset = self.download_generic_asset(url, referer)
        return asset.data_url if asset is not None else None


# -------------------- Asset store --------------------


class AssetStore:
    def put(self, job_id: str, key: str, value: InlinedAsset) -> None:
        raise NotImplementedError

    def get(self, job_id: str, key: str) -> Optional[InlinedAsset]:
        raise NotImplementedError

    def get_all(self, job_id: str) -> Dict[str, InlinedAsset]:
        raise NotImplementedError

    def clear(self, job_id: str) -> None:
        raise NotImplementedError

    def job_ids(self) -> List[str]:
        raise NotImplementedError

    def stats(self) -> Dict[str, int]:
        raise NotImplementedError

    def put_keys(self, job_id: str, keys: Iterable[str], value: InlinedAsset) -> None:
        for k in keys:
            self.put(job_id, k, value)

    def sweep(self, max_age_seconds: float, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        removed: List[str] = []
        for job_id in self.job_ids():
            created = job_created_at(job_id)
            if created is None or now - created > max_age_seconds:
                self.clear(job_id)
                removed.append(job_id)
                logging.info("cleaned up stale job %s", job_id)
        return removed

    def close(self) -> None:
        pass


class MemAssetStore(AssetStore):
    def __init__(self) -> None:
        self._jobs: Dict[str, Dict[str, InlinedAsset]] = {}
        self._lock = Lock()

    def put(self, job_id: str, key: str, value: InlinedAsset) -> None:
        with self._lock:
            self._jobs.setdefault(job_id, {})[key] = value

    def get(self, job_id: str, key: str) -> Optional[InlinedAsset]:
        with self._lock:
            return self._jobs.get(job_id, {}).get(key)

    def get_all(self, job_id: str) -> Dict[str, InlinedAsset]:
        with self._lock:
            return dict(self._jobs.get(job_id, {}))

    def clear(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "sessions": len(self._jobs),
                "totalAssets": sum(len(m) for m in self._jobs.values()),
            }


class AssetStoreSweeper:
    """Periodically drops jobs that were never cleared; not needed on the happy path."""

    def __init__(
        self,
        store: AssetStore,
        retention_seconds: float = ASSET_RETENTION_SECONDS,
        interval_seconds: float = ASSET_RETENTION_SECONDS,
    ):
        self.store = store
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds
        self._stop = Event()
        self._thread: Optional[Thread] = None

    def run_once(self, now: Optional[float] = None) -> List[str]:
        return self.store.sweep(self.retention_seconds, now=now)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception as e:
                logging.error("asset store sweep failed: %s", e)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="asset-store-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


# -------------------- Rewriters --------------------


def process_css(
    css_text: str,
    base_url: str,
    asset_map: Mapping[str, InlinedAsset],
    stylesheet_url: Optional[str] = None,
) -> str:
    def lookup(u: str) -> Optional[str]:
        keys = []
        if stylesheet_url:
            keys.append(resolve_url(u, stylesheet_url))
        keys.extend((resolve_url(u, base_url), u))
        asset = lookup_asset(asset_map, keys, ENCODING_DATA_URL)
        return asset.data_url if asset is not None else None

    return rewrite_css_urls(css_text, lookup)


def sanitize(document: HtmlDocument) -> None:
    for tag in document.find_all(STRIP_TAGS):
        document.remove(tag)
    for tag in document.find_all(True):
        for attr in [a for a in tag.attrs if a.lower() in EVENT_HANDLER_ATTRS]:
            del tag.attrs[attr]
    for form in document.find_all("form"):
        for attr in FORM_STRIP_ATTRS:
            if attr in form.attrs:
                del form.attrs[attr]
    for control in document.find_all(INTERACTIVE_TAGS):
        for attr in CONTROL_STRIP_ATTRS:
            if attr in control.attrs:
                del control.attrs[attr]
        control["disabled"] = "disabled"


def substitute(
    document: HtmlDocument, asset_map: Mapping[str, InlinedAsset], base_url: str
) -> None:
    base = document.base_url(base_url)

    def data_url_for(u: str) -> Optional[str]:
        asset = lookup_asset(asset_map, (u, resolve_url(u, base)), ENCODING_DATA_URL)
        return asset.data_url if asset is not None else None

    def css_for(u: str) -> Optional[str]:
        asset = lookup_asset(asset_map, (u, resolve_url(u, base)), ENCODING_CSS_TEXT)
        return asset.css_text if asset is not None else None

    for img in document.select("img[src]"):
        src = img.get("src")
        if not can_fetch_url(src):
            continue
        inlined = data_url_for(src)
        if inlined is None:
            continue
        img["src"] = inlined
        for rm in ("srcset", "sizes", "integrity", "crossorigin", "referrerpolicy"):
            if rm in img.attrs:
                del img.attrs[rm]

    for tag in document.select("[style]"):
        style = tag.get("style")
        if not has_background(style):
            continue
        new_style = rewrite_css_urls(style, data_url_for)
        if new_style != style:
            tag["style"] = new_style

    # Existing <style> blocks first, so inlined stylesheets are not reprocessed.
    for style in document.find_all("style"):
        text = style.get_text()
        new_text = inline_css_imports(text, css_for)
        new_text = process_css(new_text, base, asset_map)
        if new_text != text:
            document.set_style_text(style, new_text)

    for link in document.select("link[href]"):
        if not is_stylesheet_link(link):
            continue
        href = link.get("href")
        if not can_fetch_url(href):
            continue
        css = css_for(href)
        if css is not None:
            document.replace_with_style(link, css)


def annotate(document: HtmlDocument) -> None:
    document.prepend_to_body(BANNER_HTML)


def rewrite(
    document: HtmlDocument, asset_map: Mapping[str, InlinedAsset], base_url: str
) -> str:
    sanitize(document)
    substitute(document, asset_map, base_url)
    annotate(document)
    return document.serialize()


def preprocess_stylesheets(
    stylesheets: Iterable[AssetReference],
    asset_map: Mapping[str, InlinedAsset],
    base_url: str,
) -> Dict[str, InlinedAsset]:
    processed = dict(asset_map)
    for sheet in stylesheets:
        asset = lookup_asset(asset_map, (sheet.original, sheet.absolute), ENCODING_CSS_TEXT)
        if asset is None:
            continue
        css = asset.css_text
        if "url(" in css.lower():
            css = process_css(css, base_url, asset_map, stylesheet_url=sheet.absolute)
        updated = replace(asset, payload=css)
        for k in sheet.storage_keys():
            processed[k] = updated
    return processed


# -------------------- Orchestration --------------------


@dataclass
class ReplicationStats:
    images: int = 0
    total_images: int = 0
    stylesheets: int = 0
    total_stylesheets: int = 0
    css_assets: int = 0
    total_css_assets: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "images": self.images,
            "totalImages": self.total_images,
            "stylesheets": self.stylesheets,
        }


@dataclass
class ReplicationResult:
    html: str
    stats: ReplicationStats
    job_id: str
    final_url: str

    def as_payload(self) -> Dict[str, object]:
        return {"success": True, "html": self.html, "stats": self.stats.as_dict()}


def validate_url(url: object) -> str:
    if not url:
        raise MissingURLError()
    if not isinstance(url, str):
        raise InvalidURLError()
    url = url.strip()
    if not url:
        raise MissingURLError()
    try:
        p = urlparse(url)
        host = p.hostname
    except ValueError:
        raise InvalidURLError() from None
    if p.scheme.lower() not in {"http", "https"} or not host:
        raise InvalidURLError()
    return url


class Replicator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        fetcher: Optional[Fetcher] = None,
        store: Optional[AssetStore] = None,
    ):
        self.s = settings or Settings()
        self.fetcher = fetcher if fetcher is not None else Fetcher(self.s)
        self.store = store if store is not None else MemAssetStore()

    def replicate(self, url: Optional[str]) -> ReplicationResult:
        url = validate_url(url)
        job_id = new_job_id()
        try:
            return self._run(job_id, url)
        except Exception as e:
            logging.error("[%s] Replication failed: %s", job_id, e)
            raise
        finally:
            self.store.clear(job_id)

    def _run(self, job_id: str, url: str) -> ReplicationResult:
        logging.info("[%s] Starting replication of: %s", job_id, url)
        logging.info("[%s] Fetching HTML...", job_id)
        page = self.fetcher.fetch_page(url)
        if page.final_url != url:
            logging.info("[%s] Redirected to %s", job_id, page.final_url)

        logging.info("[%s] Parsing HTML...", job_id)
        document = HtmlDocument.parse(page.html)
        base = document.base_url(page.final_url)
        assets = extract_assets(document, page.final_url)
        logging.info(
            "[%s] Found %d images, %d stylesheets",
            job_id,
            len(assets.images),
            len(assets.stylesheets),
        )
        stats = ReplicationStats(
            total_images=len(assets.images), total_stylesheets=len(assets.stylesheets)
        )

        logging.info("[%s] Fetching stylesheets...", job_id)
        stats.stylesheets = self._fetch_stylesheets(job_id, assets.stylesheets, page.final_url)

        logging.info("[%s] Fetching images...", job_id)
        stats.images = self._fetch_batched(
            job_id, assets.images, page.final_url, self.fetcher.download_image
        )
        logging.info(
            "[%s] Successfully fetched %d/%d images", job_id, stats.images, stats.total_images
        )

        if self.s.inline_css_assets:
            css_refs = self._collect_css_assets(job_id, assets.stylesheets, document, base)
            stats.total_css_assets = len(css_refs)
            if css_refs:
                logging.info("[%s] Fetching %d stylesheet assets...", job_id, len(css_refs))
                stats.css_assets = self._fetch_batched(
                    job_id, css_refs, page.final_url, self.fetcher.download_generic_asset
                )

        asset_map = preprocess_stylesheets(assets.stylesheets, self.store.get_all(job_id), base)

        logging.info("[%s] Rewriting HTML...", job_id)
        html = rewrite(document, asset_map, page.final_url)
        logging.info(
            "[%s] Inlined %d/%d stylesheets, %d/%d stylesheet assets",
            job_id,
            stats.stylesheets,
            stats.total_stylesheets,
            stats.css_assets,
            stats.total_css_assets,
        )
        logging.info("[%s] Replication complete!", job_id)
        return ReplicationResult(html=html, stats=stats, job_id=job_id, final_url=page.final_url)

    def _fetch_stylesheets(
        self, job_id: str, refs: Sequence[AssetReference], referer: str
    ) -> int:
        if not refs:
            return 0
        ok = 0
        with ThreadPoolExecutor(max_workers=len(refs)) as pool:
            future_map = {
                pool.submit(self.fetcher.download_stylesheet, ref.absolute, referer): ref
                for ref in refs
            }
            for fut in as_completed(future_map):
                ref = future_map[fut]
                asset = fut.result()
                if asset is not None:
                    self.store.put_keys(job_id, ref.storage_keys(), asset)
                    ok += 1
        return ok

    def _fetch_batched(
        self,
        job_id: str,
        refs: Sequence[AssetReference],
        referer: str,
        download: Callable[[str, Optional[str]], Optional[InlinedAsset]],
    ) -> int:
        ok = 0
        for batch in batched(refs, self.s.image_batch_size):
            pending: List[AssetReference] = []
            for ref in batch:
                cached = self.store.get(job_id, ref.absolute)
                if cached is not None and cached.encoding == ENCODING_DATA_URL:
                    self.store.put_keys(job_id, ref.storage_keys(), cached)
                    ok += 1
                else:
                    pending.append(ref)
            if not pending:
                continue
            with ThreadPoolExecutor(max_workers=len(pending)) as pool:
                future_map = {
                    pool.submit(download, ref.absolute, referer): ref for ref in pending
                }
                for fut in as_completed(future_map):
                    ref = future_map[fut]
                    asset = fut.result()
                    if asset is not None:
                        self.store.put_keys(job_id, ref.storage_keys(), asset)
                        ok += 1
        return ok

    def _collect_css_assets(
        self,
        job_id: str,
        stylesheets: Sequence[AssetReference],
        document: HtmlDocument,
        base_url: str,
    ) -> List[AssetReference]:
        sources: List[Tuple[str, str]] = []
        for sheet in stylesheets:
            asset = self.store.get(job_id, sheet.absolute)
            if asset is not None and asset.encoding == ENCODING_CSS_TEXT:
                sources.append((asset.css_text, sheet.absolute))
        for style in document.find_all("style"):
            sources.append((style.get_text(), base_url))

        refs: List[AssetReference] = []
        # @import url(...) targets are already fetched as stylesheets.
        seen = {sheet.absolute for sheet in stylesheets}
        for css_text, css_url in sources:
            for ref in extract_css_assets(css_text, css_url):
                if ref.absolute in seen:
                    continue
                seen.add(ref.absolute)
                refs.append(ref)
        return refs


def handle_replicate(
    replicator: Replicator, payload: object
) -> Tuple[Dict[str, object], int]:
    url = payload.get("url") if isinstance(payload, Mapping) else None
    try:
        result = replicator.replicate(url)
    except ReplicationError as e:
        return {"success": False, "error": e.message}, e.http_status
    except Exception as e:
        logging.exception("unexpected replication failure")
        return {"success": False, "error": str(e) or "Failed to replicate website"}, 500
    return result.as_payload(), 200


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, object]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


def flatten_config(cfg: Mapping[str, object]) -> Dict[str, object]:
    flat = {k: v for k, v in cfg.items() if not isinstance(v, dict)}
    for g in CONFIG_GROUPS:
        if isinstance(cfg.get(g), dict):
            flat.update(cfg[g])
    return {str(k).replace("-", "_"): v for k, v in flat.items()}


def settings_from_mapping(values: Mapping[str, object]) -> Settings:
    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(values) - known)
    if unknown:
        logging.warning("ignoring unknown settings: %s", ", ".join(unknown))
    return Settings(**{k: v for k, v in values.items() if k in known})


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Replicate a web page as a single self-contained HTML file.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL to replicate")
    p.add_argument("-o", "--output", type=str, default=None, help="output file (default stdout)")
    p.add_argument("--json", action="store_true", help="write the JSON result payload")
    p.add_argument("--verbose", action="store_true", help="debug logging")

    # fetch
    p.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="request timeout seconds")
    p.add_argument(
        "--robots-timeout", type=float, default=ROBOTS_TIMEOUT, help="robots.txt timeout seconds"
    )
    p.add_argument("--retries", type=int, default=2, help="retries per request")
    p.add_argument("--user-agent", type=str, default=DEFAULT_USER_AGENT, help="User-Agent header")
    p.add_argument(
        "--max-page-bytes", type=int, default=MAX_PAGE_BYTES, help="max bytes for the page"
    )
    p.add_argument(
        "--max-asset-bytes", type=int, default=MAX_ASSET_BYTES, help="max bytes per asset"
    )
    p.add_argument(
        "--batch-size",
        dest="image_batch_size",
        type=int,
        default=IMAGE_BATCH_SIZE,
        help="images fetched concurrently per batch",
    )
    p.add_argument(
        "--no-css-assets",
        dest="inline_css_assets",
        action="store_false",
        help="do not inline fonts and images referenced from stylesheets",
    )

    # policy
    p.add_argument(
        "--ignore-robots",
        dest="respect_robots",
        action="store_false",
        help="skip the robots.txt check",
    )
    p.add_argument(
        "--insecure",
        dest="verify_tls",
        action="store_false",
        help="disable TLS certificate verification",
    )
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        cfg = load_config_file(preliminary.config)
        if isinstance(cfg, dict):
            parser.set_defaults(**flatten_config(cfg))
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    values = {f.name: getattr(args, f.name) for f in fields(Settings) if hasattr(args, f.name)}
    return Settings(**values)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)

    print("Reminder: only replicate content you own or have permission to copy.", file=sys.stderr)
    replicator = Replicator(settings)
    payload, _status = handle_replicate(replicator, {"url": args.url})
    if not payload["success"]:
        print(f"Error: {payload['error']}", file=sys.stderr)
        sys.exit(1)

    text = json.dumps(payload, indent=2) if args.json else payload["html"]
    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        logging.info("Saved to: %s", args.output)
    else:
        sys.stdout.write(text)
    stats = payload["stats"]
    logging.info(
        "images %d/%d, stylesheets %d", stats["images"], stats["totalImages"], stats["stylesheets"]
    )


if __name__ == "__main__":
    main()
