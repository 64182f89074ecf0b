"""
Page fetcher for the store crawler.

Downloads a page with requests and wraps it in a Scrapy HtmlResponse, which
gives the router CSS/XPath queries and urljoin() for link collection.
"""
import logging
import threading

import requests
from scrapy.http import HtmlResponse

from ..common.config import CRAWLER_USER_AGENT, REQUEST_TIMEOUT, RETRY_HTTP_CODES
from ..common.errors import RenderError, TransientFetchError

logger = logging.getLogger(__name__)


class PageFetcher:
    """
    Fetch a URL and return it as a queryable page.

    render() is called from a worker's thread pool, so each thread gets its
    own requests.Session from ``session_factory``.
    """

    def __init__(self, timeout=REQUEST_TIMEOUT, user_agent=CRAWLER_USER_AGENT,
                 session_factory=requests.Session):
        self.timeout = timeout
        self.user_agent = user_agent
        self.session_factory = session_factory
        self.local = threading.local()
        self.sessions = []
        self.lock = threading.Lock()

    @property
    def session(self):
        """The calling thread's session, created on first use."""
        session = getattr(self.local, 'session', None)
        if session is None:
            session = self.session_factory()
            session.headers.update({'User-Agent': self.user_agent})
            self.local.session = session
            with self.lock:
                self.sessions.append(session)
        return session

    def render(self, url):
        try:
            response = self.session.get(url, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientFetchError(url, f"{type(e).__name__}: {e}") from e
        except requests.RequestException as e:
            raise RenderError(url, f"{type(e).__name__}: {e}") from e

        if response.status_code in RETRY_HTTP_CODES:
            raise TransientFetchError(url, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            raise RenderError(url, f"HTTP {response.status_code}")

        content_type = response.headers.get('Content-Type', '')
        if content_type and 'html' not in content_type:
            raise RenderError(url, f"Unexpected content type {content_type}")

        logger.debug(f"Fetched {url} ({len(response.content)} bytes)")
        return HtmlResponse(
            url=response.url,
            body=response.content,
            encoding=response.encoding or 'utf-8',
            status=response.status_code
        )

    def close(self):
        with self.lock:
            sessions, self.sessions = self.sessions, []
        for session in sessions:
            session.close()
