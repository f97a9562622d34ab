"""
URL Probing Module

Lightweight existence checks (HEAD) ahead of full downloads (GET). A HEAD
that reports absence is always confirmed with one GET, because some origins
do not answer HEAD correctly.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from utils import build_session


@dataclass
class ProbeResult:
    """Outcome of probing one URL"""
    url: str
    found: bool
    status_code: int
    content: Optional[bytes] = None
    confirmed_by_get: bool = False

    @property
    def size(self) -> int:
        return len(self.content) if self.content else 0


class URLProber:
    """HEAD/GET prober sharing one keep-alive session across worker threads"""

    HEAD_TIMEOUT_CAP = 5.0
    MAX_REDIRECTS = 5

    def __init__(self, user_agent: str, timeout_ms: int = 10000, head_check: bool = True,
                 retries: int = 0, pool_size: int = 10, session: Optional[requests.Session] = None):
        """
        Args:
            user_agent: User-Agent sent with every probe
            timeout_ms: Per-request timeout; HEAD is additionally capped at 5 seconds
            head_check: Issue a HEAD before committing to a GET
            retries: Transport-level retries for 429/5xx answers
            pool_size: HTTP connection pool size
            session: Optional pre-built session (tests)
        """
        self.user_agent = user_agent
        self.timeout = timeout_ms / 1000.0
        self.head_check = head_check
        self.session = session or build_session(user_agent, retries=retries, pool_size=pool_size)
        self.session.max_redirects = self.MAX_REDIRECTS
        self.logger = logging.getLogger(__name__)

    def head_exists(self, url: str) -> bool:
        """
        HEAD check. 404 and any network failure mean absent; 2xx/3xx and 405
        (HEAD not allowed) mean present. Other statuses count as absent and
        are left to the confirming GET.
        """
        try:
            response = self.session.head(
                url,
                allow_redirects=True,
                timeout=min(self.timeout, self.HEAD_TIMEOUT_CAP),
            )
        except requests.RequestException as e:
            self.logger.debug(f"HEAD failed for {url}: {e}")
            return False

        status = response.status_code
        if status == 404:
            return False
        return 200 <= status < 400 or status == 405

    def get(self, url: str) -> ProbeResult:
        """
        Full GET. 404 is a regular "not found" answer; any other status outside
        2xx/3xx raises requests.HTTPError.
        """
        response = self.session.get(url, timeout=self.timeout, allow_redirects=True)
        if response.status_code == 404:
            return ProbeResult(url=url, found=False, status_code=404)
        response.raise_for_status()
        return ProbeResult(url=url, found=True, status_code=response.status_code, content=response.content)

    def probe(self, url: str) -> ProbeResult:
        """HEAD hint (when enabled) followed by the GET that decides."""
        if self.head_check and not self.head_exists(url):
            self.logger.debug(f"HEAD reports {url} absent, confirming with GET")
            result = self.get(url)
            result.confirmed_by_get = True
            return result
        return self.get(url)

    def close(self):
        self.session.close()
