"""
Jira REST API Client Module
Handles communication with the Jira REST API for one squad's connection.
"""

import os
import time
from datetime import datetime
from typing import Dict, Generator, List, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from kaos_sync.config_manager import ConfigManager
from kaos_sync.exceptions import QuotaExhaustedError
from kaos_sync.rate_limiter import RateLimiter, get_rate_limiter
from kaos_sync.utils.logger import get_logger

logger = get_logger(__name__)

ISSUE_FIELDS = [
    'summary', 'status', 'issuetype', 'priority', 'assignee', 'parent',
    'timeoriginalestimate', 'timespent', 'updated', 'worklog', 'comment'
]

RETRY_STATUS_CODES = (500, 502, 503, 504)


class JiraAPIError(Exception):
    """Custom exception for Jira API errors."""

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        self.message = message
        self.status_code = status_code
        self.response = response
        super().__init__(self.message)


class JiraClient:
    """
    Jira REST API client with pagination, quota accounting, and error handling.

    Every HTTP attempt first reserves one unit from the shared RateLimiter;
    when none is left the request is not sent and QuotaExhaustedError is raised.
    Idempotent requests are retried on 5xx and connection errors, each retry
    paying for its own unit. Worklog POSTs are never resent.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        api_token: str,
        rate_limiter: RateLimiter = None,
        timeout: int = 30,
        max_retries: int = 3,
        retry_delay: float = 1,
        page_size: int = 50
    ):
        self.base_url = (base_url or '').rstrip('/')
        self.username = username or ''
        self.api_token = api_token or ''
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.page_size = page_size

        self._session = self._create_session()

        logger.debug(f"Jira client initialized for {self.base_url}")

    @classmethod
    def for_squad(cls, sync_config, rate_limiter: RateLimiter = None) -> 'JiraClient':
        """
        Build a client from a SquadSyncConfig row.

        The token is read from the environment variable named by
        ``credential_ref``; missing values fall back to the 'jira' config section.
        """
        jira_config = ConfigManager().get_jira_config()

        api_token = None
        if sync_config.credential_ref:
            api_token = os.getenv(sync_config.credential_ref)
        if not api_token:
            api_token = jira_config.get('api_token', '')

        return cls(
            base_url=sync_config.base_url or jira_config.get('url', ''),
            username=sync_config.username or jira_config.get('username', ''),
            api_token=api_token,
            rate_limiter=rate_limiter,
            timeout=jira_config.get('timeout', 30),
            max_retries=jira_config.get('max_retries', 3),
            retry_delay=jira_config.get('retry_delay', 1),
            page_size=jira_config.get('page_size', 50)
        )

    def _create_session(self) -> requests.Session:
        """Create requests session; the transport never resends on its own."""
        session = requests.Session()

        session.auth = (self.username, self.api_token)

        session.headers.update({
            'Accept': 'application/json',
            'Content-Type': 'application/json'
        })

        # Resends happen in _make_request so each one is counted against the quota
        retry_strategy = Retry(total=0, redirect=False, raise_on_status=False)
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount('https://', adapter)
        session.mount('http://', adapter)

        return session

    def _acquire_quota(self) -> None:
        if not self.rate_limiter.try_acquire():
            raise QuotaExhaustedError(self.rate_limiter.consumed(), self.rate_limiter.limit)

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Dict = None,
        json_data: Dict = None,
        idempotent: bool = None
    ) -> Dict:
        """
        Make HTTP request to Jira API.

        Args:
            method: HTTP method
            endpoint: API endpoint
            params: Query parameters
            json_data: JSON body data
            idempotent: Whether a failed attempt may be resent
                (defaults to True for GET and PUT)

        Returns:
            Response JSON

        Raises:
            QuotaExhaustedError: If no quota is left in the current window
            JiraAPIError: If request fails
        """
        if idempotent is None:
            idempotent = method in ('GET', 'PUT')
        attempts = 1 + (self.max_retries if idempotent else 0)

        url = urljoin(f"{self.base_url}/rest/", endpoint)

        for attempt in range(1, attempts + 1):
            self._acquire_quota()

            try:
                response = self._session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_data,
                    timeout=self.timeout
                )
            except requests.exceptions.RequestException as e:
                if attempt < attempts:
                    logger.warning(f"Request to {endpoint} failed (attempt {attempt}/{attempts}): {e}")
                    self._backoff(attempt)
                    continue
                logger.error(f"Request failed: {e}")
                raise JiraAPIError(f"Request failed: {str(e)}")

            if response.status_code in RETRY_STATUS_CODES and attempt < attempts:
                logger.warning(
                    f"Jira returned {response.status_code} for {endpoint} (attempt {attempt}/{attempts})"
                )
                self._backoff(attempt)
                continue

            return self._handle_response(response, endpoint)

    def _backoff(self, attempt: int) -> None:
        if self.retry_delay:
            time.sleep(self.retry_delay * (2 ** (attempt - 1)))

    @staticmethod
    def _handle_response(response: requests.Response, endpoint: str) -> Dict:
        """Map error statuses to JiraAPIError and decode the body."""
        if response.status_code == 401:
            raise JiraAPIError("Authentication failed. Check your credentials.", 401)
        elif response.status_code == 403:
            raise JiraAPIError("Access forbidden. Check permissions.", 403)
        elif response.status_code == 404:
            raise JiraAPIError(f"Resource not found: {endpoint}", 404)
        elif response.status_code == 429:
            raise JiraAPIError("Rate limited by Jira", 429)
        elif response.status_code >= 400:
            try:
                body = response.json() if response.text else None
            except ValueError:
                body = None
            raise JiraAPIError(f"API error: {response.text}", response.status_code, body)

        return response.json() if response.text else {}

    def _paginate(
        self,
        endpoint: str,
        params: Dict = None,
        json_data: Dict = None,
        method: str = 'GET',
        data_key: str = 'values',
        max_results: int = None,
        idempotent: bool = None
    ) -> Generator[Dict, None, None]:
        """
        Paginate through offset-based (startAt/total) API results.

        Args:
            endpoint: API endpoint
            params: Query parameters (for GET)
            json_data: JSON body data (for POST)
            method: HTTP method (GET or POST)
            data_key: Key containing results in response
            max_results: Results per page
            idempotent: Passed to _make_request

        Yields:
            Individual result items
        """
        params = dict(params or {})
        json_data = dict(json_data or {})
        max_results = max_results or self.page_size
        target = params if method == 'GET' else json_data
        target['maxResults'] = max_results

        start_at = 0
        while True:
            target['startAt'] = start_at

            response = self._make_request(
                method, endpoint,
                params=params or None,
                json_data=json_data or None,
                idempotent=idempotent
            )

            items = response.get(data_key, [])
            if not items:
                break

            for item in items:
                yield item

            total = response.get('total', 0)
            start_at += len(items)
            if start_at >= total:
                break
            logger.debug(f"Fetched {start_at}/{total} items from {endpoint}")

    # ========================================
    # Issue Methods
    # ========================================

    def search_issues(self, jql: str, fields: List[str] = None) -> List[Dict]:
        """
        Fetch every issue matching a JQL query.

        Args:
            jql: JQL query string
            fields: Fields to include (defaults to ISSUE_FIELDS)

        Returns:
            Issue dictionaries
        """
        jql = jql.replace('\n', ' ').strip()
        logger.info(f"Searching issues with JQL: {jql[:200]}")

        json_data = {
            'jql': jql,
            'fields': fields or ISSUE_FIELDS
        }
        issues = list(self._paginate(
            'api/2/search',
            json_data=json_data,
            method='POST',
            data_key='issues',
            idempotent=True
        ))

        logger.info(f"Fetched {len(issues)} issues")
        return issues

    def fetch_issue_worklogs(self, issue_key: str) -> List[Dict]:
        """Fetch all worklogs for an issue."""
        return list(self._paginate(f'api/2/issue/{issue_key}/worklog', data_key='worklogs'))

    def fetch_issue_comments(self, issue_key: str) -> List[Dict]:
        """Fetch all comments for an issue."""
        return list(self._paginate(f'api/2/issue/{issue_key}/comment', data_key='comments'))

    def add_worklog(
        self,
        issue_key: str,
        started: datetime,
        time_spent_seconds: int,
        comment: Optional[str] = None
    ) -> Dict:
        """
        Create a worklog on an issue.

        Args:
            issue_key: Target issue
            started: Work start (naive values are treated as UTC)
            time_spent_seconds: Logged time
            comment: Optional worklog comment

        Returns:
            Created worklog as returned by Jira
        """
        body = {
            'started': started.strftime('%Y-%m-%dT%H:%M:%S.000+0000'),
            'timeSpentSeconds': int(time_spent_seconds)
        }
        if comment:
            body['comment'] = comment

        logger.info(f"Posting worklog to {issue_key} ({time_spent_seconds}s)")
        # A resent POST would create a second worklog
        return self._make_request(
            'POST', f'api/2/issue/{issue_key}/worklog', json_data=body, idempotent=False
        )

    # ========================================
    # Utility Methods
    # ========================================

    def test_connection(self) -> bool:
        """Test connection to Jira API."""
        try:
            self._make_request('GET', 'api/2/myself')
            logger.info("Jira connection test successful")
            return True
        except JiraAPIError as e:
            logger.error(f"Jira connection test failed: {e.message}")
            return False
