"""Heuristic content extraction from fetched HTML.

Classifies a page (tweet, video, article, webpage) from its URL, pulls the
readable body text out with BeautifulSoup and fills in author/date from
trafilatura's metadata parser when the page markup has none.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from urllib.parse import urljoin, urlparse

import trafilatura
from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

SOCIAL_DOMAINS = ("twitter.com", "x.com")
VIDEO_DOMAINS = ("youtube.com", "youtu.be")
PUBLISHING_DOMAINS = ("medium.com", "dev.to", "substack.com")
ARTICLE_PATH_SEGMENTS = ("/blog", "/article", "/post")

TWEET_SELECTORS = [
    '[data-testid="tweetText"]',
    ".tweet-text",
    "[lang] > span",
    'article [dir="auto"]',
]
TWEET_AUTHOR_SELECTORS = ['[data-testid="User-Name"]', ".username", 'a[href*="/status/"] span']

VIDEO_DESCRIPTION_SELECTORS = [
    "#description-inline-expander",
    "#description",
    '[slot="content"]',
    "ytd-text-inline-expander",
]
VIDEO_CHANNEL_SELECTORS = ["#channel-name", "ytd-channel-name", '[itemprop="author"] [itemprop="name"]']

NON_CONTENT_SELECTORS = [
    "script", "style", "nav", "header", "footer", "aside",
    ".sidebar", ".advertisement", ".ads", ".social-share",
    ".comments", ".related-posts", ".newsletter", '[role="banner"]',
    '[role="navigation"]', '[role="complementary"]', ".cookie-notice",
]
MAIN_CONTENT_SELECTORS = [
    "article", '[role="article"]', "main", ".post-content", ".article-content",
    ".entry-content", ".content", ".post-body", ".blog-post", "#content",
    ".markdown-body", ".prose",
]
TEXT_BLOCK_TAGS = ["p", "h1", "h2", "h3", "h4", "h5", "h6", "li", "blockquote", "pre", "code"]

AUTHOR_SELECTORS = [
    '[rel="author"]', ".author-name", ".post-author", '[itemprop="author"]', ".byline",
    'meta[name="author"]',
]
DATE_SELECTORS = [
    "time[datetime]", '[itemprop="datePublished"]', ".post-date", ".publish-date",
    'meta[property="article:published_time"]',
]

FAVICON_SELECTORS = [
    'link[rel="icon"][sizes="32x32"]',
    'link[rel="icon"][sizes="16x16"]',
    'link[rel="shortcut icon"]',
    'link[rel="apple-touch-icon"]',
    'link[rel="icon"]',
]

MIN_CANDIDATE_LENGTH = 200
MIN_BLOCK_LENGTH = 10
MIN_BODY_LENGTH = 100
PREVIEW_LENGTH = 1000


@dataclass
class ExtractedContent:
    """Readable body and attribution for one page."""

    title: str
    description: str
    full_text: str
    content_type: str
    author: str | None = None
    published_date: str | None = None
    word_count: int = 0


@dataclass
class LinkMetadata:
    """Page metadata shown on a link card."""

    title: str
    description: str
    image: str
    site_name: str
    favicon: str
    content: str

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "image": self.image,
            "siteName": self.site_name,
            "favicon": self.favicon,
            "content": self.content,
        }


def _hostname(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def _on_domain(host: str, domains: tuple[str, ...]) -> bool:
    return any(host == d or host.endswith("." + d) for d in domains)


def detect_content_type(url: str) -> str:
    """Classify a URL as tweet, video, article or webpage."""
    host = _hostname(url)
    if _on_domain(host, SOCIAL_DOMAINS):
        return "tweet"
    if _on_domain(host, VIDEO_DOMAINS):
        return "video"

    path = urlparse(url).path.lower()
    if (
        _on_domain(host, PUBLISHING_DOMAINS)
        or "hashnode." in host
        or any(segment in path for segment in ARTICLE_PATH_SEGMENTS)
    ):
        return "article"
    return "webpage"


def clean_text(text: str) -> str:
    """Collapse whitespace runs, keep at most one blank line between paragraphs."""
    text = re.sub(r"[^\S\n]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def count_words(text: str) -> int:
    return len(text.split())


def _meta(soup: BeautifulSoup, selector: str) -> str:
    element = soup.select_one(selector)
    if element is None:
        return ""
    return (element.get("content") or "").strip()


def _first_text(root: BeautifulSoup | Tag, selectors: list[str]) -> str:
    for selector in selectors:
        element = root.select_one(selector)
        if element is not None:
            text = element.get_text().strip()
            if text:
                return text
    return ""


def _first_attribute(soup: BeautifulSoup, selectors: list[str], attributes: tuple[str, ...]) -> str:
    for selector in selectors:
        element = soup.select_one(selector)
        if element is None:
            continue
        for attribute in attributes:
            value = element.get(attribute)
            if value and value.strip():
                return value.strip()
        text = element.get_text().strip()
        if text:
            return text
    return ""


def extract_tweet(soup: BeautifulSoup) -> dict:
    text = _first_text(soup, TWEET_SELECTORS)
    return {
        "full_text": text or _meta(soup, 'meta[property="og:description"]'),
        "author": _first_text(soup, TWEET_AUTHOR_SELECTORS),
    }


def extract_video(soup: BeautifulSoup) -> dict:
    title_tag = soup.find("title")
    title = _meta(soup, 'meta[property="og:title"]') or (title_tag.get_text().strip() if title_tag else "")
    description = _meta(soup, 'meta[property="og:description"]') or _meta(soup, 'meta[name="description"]')
    full_description = _first_text(soup, VIDEO_DESCRIPTION_SELECTORS)

    return {
        "title": title,
        "full_text": "\n\n".join(part for part in (title, full_description or description) if part),
        "author": _first_text(soup, VIDEO_CHANNEL_SELECTORS),
    }


def extract_article(soup: BeautifulSoup) -> dict:
    """Main text of an article or generic page.

    Works on a copy so the caller's tree keeps its header and meta tags.
    """
    stripped = copy.copy(soup)
    for selector in NON_CONTENT_SELECTORS:
        for element in stripped.select(selector):
            element.decompose()

    content: Tag | None = None
    for selector in MAIN_CONTENT_SELECTORS:
        candidate = stripped.select_one(selector)
        if candidate is not None and len(candidate.get_text()) > MIN_CANDIDATE_LENGTH:
            content = candidate
            break
    if content is None:
        content = stripped.body or stripped

    blocks = []
    for element in content.find_all(TEXT_BLOCK_TAGS):
        text = element.get_text().strip()
        if len(text) >= MIN_BLOCK_LENGTH:
            blocks.append(text)
    full_text = "\n\n".join(blocks)

    if len(full_text) < MIN_BODY_LENGTH:
        full_text = " ".join(content.get_text().split())

    return {
        "full_text": full_text,
        "author": _first_attribute(soup, AUTHOR_SELECTORS, ("content",)),
        "published_date": _first_attribute(soup, DATE_SELECTORS, ("datetime", "content")),
    }


def _metadata_fallback(html: str, url: str) -> tuple[str | None, str | None]:
    """Author and publish date from trafilatura, best effort."""
    try:
        metadata = trafilatura.extract_metadata(html, default_url=url)
    except Exception:
        logger.warning(f"trafilatura metadata extraction failed for {url}", exc_info=True)
        return None, None
    if metadata is None:
        return None, None
    return getattr(metadata, "author", None), getattr(metadata, "date", None)


def extract_full_content(html: str, url: str) -> ExtractedContent:
    """Extract title, description and readable text from a page."""
    soup = BeautifulSoup(html or "", "html.parser")
    content_type = detect_content_type(url)

    title_tag = soup.find("title")
    title = _meta(soup, 'meta[property="og:title"]') or (title_tag.get_text().strip() if title_tag else "")
    description = _meta(soup, 'meta[property="og:description"]') or _meta(soup, 'meta[name="description"]')

    if content_type == "tweet":
        extracted = extract_tweet(soup)
    elif content_type == "video":
        extracted = extract_video(soup)
    else:
        extracted = extract_article(soup)

    author = extracted.get("author") or None
    published_date = extracted.get("published_date") or None
    if html and (author is None or published_date is None):
        fallback_author, fallback_date = _metadata_fallback(html, url)
        author = author or fallback_author
        published_date = published_date or fallback_date

    full_text = clean_text(extracted.get("full_text") or description or "")
    return ExtractedContent(
        title=extracted.get("title") or title,
        description=description,
        full_text=full_text,
        content_type=content_type,
        author=author,
        published_date=published_date,
        word_count=count_words(full_text),
    )


def resolve_favicon(soup: BeautifulSoup, url: str) -> str:
    """Absolute favicon URL, ``/favicon.ico`` on the page's host by default."""
    href = ""
    for selector in FAVICON_SELECTORS:
        element = soup.select_one(selector)
        if element is not None and (element.get("href") or "").strip():
            href = element["href"].strip()
            break

    parsed = urlparse(url)
    if not href:
        if not parsed.scheme or not parsed.netloc:
            return ""
        href = f"{parsed.scheme}://{parsed.netloc}/favicon.ico"
    return urljoin(url, href)


def _preview(soup: BeautifulSoup) -> str:
    stripped = copy.copy(soup)
    for element in stripped.select("script, style, nav, header, footer, aside"):
        element.decompose()

    for selector in ("main", "article", '[role="main"]', ".content", ".post-content", ".entry-content",
                     ".article-content", "body"):
        element = stripped.select_one(selector)
        if element is not None:
            return " ".join(element.get_text().split())[:PREVIEW_LENGTH]
    return ""


def extract_link_metadata(html: str, url: str) -> LinkMetadata:
    """Page metadata for a link card; host name stands in for missing fields."""
    host = urlparse(url).hostname or url
    soup = BeautifulSoup(html or "", "html.parser")

    title_tag = soup.find("title")
    h1 = soup.find("h1")
    title = (
        (title_tag.get_text().strip() if title_tag else "")
        or _meta(soup, 'meta[property="og:title"]')
        or _meta(soup, 'meta[name="twitter:title"]')
        or (h1.get_text().strip() if h1 else "")
    )
    description = (
        _meta(soup, 'meta[name="description"]')
        or _meta(soup, 'meta[property="og:description"]')
        or _meta(soup, 'meta[name="twitter:description"]')
    )
    image = (
        _meta(soup, 'meta[property="og:image"]')
        or _meta(soup, 'meta[name="twitter:image"]')
        or _meta(soup, 'meta[property="og:image:url"]')
    )
    site_name = _meta(soup, 'meta[property="og:site_name"]') or _meta(soup, 'meta[name="application-name"]')

    return LinkMetadata(
        title=title or host,
        description=description,
        image=image,
        site_name=site_name or host,
        favicon=resolve_favicon(soup, url),
        content=_preview(soup),
    )
