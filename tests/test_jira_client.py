"""
Unit Tests for the Jira Client
The HTTP session is mocked, except for a local server used to count resent requests.
"""

import os
import threading
import unittest
from datetime import datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from unittest.mock import Mock, patch

import requests

from kaos_sync.exceptions import QuotaExhaustedError
from kaos_sync.jira_client import JiraAPIError, JiraClient
from kaos_sync.rate_limiter import RateLimiter


def make_response(payload=None, status_code=200, text='{}'):
    response = Mock(status_code=status_code, text=text)
    response.json.return_value = payload or {}
    return response


class TestJiraClient(unittest.TestCase):

    def setUp(self):
        self.rate_limiter = RateLimiter(limit=2)
        self.client = JiraClient(
            'https://jira.example.com/', 'bot@example.com', 'token',
            rate_limiter=self.rate_limiter, page_size=2, max_retries=0, retry_delay=0
        )
        self.session = Mock()
        self.client._session = self.session

    def test_every_request_consumes_quota(self):
        self.session.request.return_value = make_response({'accountId': 'bot'})

        self.assertTrue(self.client.test_connection())
        self.assertEqual(self.rate_limiter.consumed(), 1)

        url = self.session.request.call_args[1]['url']
        self.assertEqual(url, 'https://jira.example.com/rest/api/2/myself')

    def test_exhausted_quota_sends_nothing(self):
        """Test that no HTTP request goes out once the window is used up."""
        self.rate_limiter.try_acquire()
        self.rate_limiter.try_acquire()

        with self.assertRaises(QuotaExhaustedError):
            self.client.fetch_issue_worklogs('KAOS-1')

        self.session.request.assert_not_called()

    def test_search_issues_paginates(self):
        bodies = []

        def respond(method, url, params=None, json=None, timeout=None):
            bodies.append(dict(json))
            if json['startAt'] == 0:
                return make_response({'issues': [{'key': 'KAOS-1'}, {'key': 'KAOS-2'}], 'total': 3})
            return make_response({'issues': [{'key': 'KAOS-3'}], 'total': 3})

        self.session.request.side_effect = respond

        issues = self.client.search_issues('sprint in openSprints()\nORDER BY key ASC')

        self.assertEqual([i['key'] for i in issues], ['KAOS-1', 'KAOS-2', 'KAOS-3'])
        self.assertEqual([b['startAt'] for b in bodies], [0, 2])
        self.assertEqual(bodies[0]['jql'], 'sprint in openSprints() ORDER BY key ASC')
        self.assertEqual(self.rate_limiter.consumed(), 2)

    def test_pagination_stops_when_quota_runs_out(self):
        self.session.request.side_effect = [
            make_response({'worklogs': [{'id': '1'}, {'id': '2'}], 'total': 6}),
            make_response({'worklogs': [{'id': '3'}, {'id': '4'}], 'total': 6}),
        ]

        with self.assertRaises(QuotaExhaustedError):
            self.client.fetch_issue_worklogs('KAOS-1')

        self.assertEqual(self.session.request.call_count, 2)

    def test_http_errors(self):
        self.session.request.return_value = make_response(status_code=401)
        with self.assertRaises(JiraAPIError) as ctx:
            self.client.fetch_issue_worklogs('KAOS-1')
        self.assertEqual(ctx.exception.status_code, 401)

        self.session.request.return_value = make_response(
            {'errorMessages': ['boom']}, status_code=500, text='boom'
        )
        with self.assertRaises(JiraAPIError) as ctx:
            self.client.fetch_issue_worklogs('KAOS-1')
        self.assertEqual(ctx.exception.status_code, 500)

    def test_add_worklog(self):
        self.session.request.return_value = make_response({'id': '777'})

        created = self.client.add_worklog('KAOS-1', datetime(2026, 10, 2, 9, 0), 5400, 'pairing')

        self.assertEqual(created, {'id': '777'})
        kwargs = self.session.request.call_args[1]
        self.assertEqual(kwargs['method'], 'POST')
        self.assertEqual(kwargs['url'], 'https://jira.example.com/rest/api/2/issue/KAOS-1/worklog')
        self.assertEqual(kwargs['json'], {
            'started': '2026-10-02T09:00:00.000+0000',
            'timeSpentSeconds': 5400,
            'comment': 'pairing'
        })


class TestJiraClientRetries(unittest.TestCase):
    """Test that every resent request is paid for."""

    def setUp(self):
        self.rate_limiter = RateLimiter(limit=200)
        self.client = JiraClient(
            'https://jira.example.com', 'bot@example.com', 'token',
            rate_limiter=self.rate_limiter, max_retries=3, retry_delay=0
        )
        self.session = Mock()
        self.client._session = self.session

    def test_get_retried_after_server_error(self):
        self.session.request.side_effect = [
            make_response(status_code=503, text='unavailable'),
            make_response({'accountId': 'bot'}),
        ]

        self.assertTrue(self.client.test_connection())

        self.assertEqual(self.session.request.call_count, 2)
        self.assertEqual(self.rate_limiter.consumed(), 2)

    def test_search_is_retried(self):
        self.session.request.side_effect = [
            make_response(status_code=502, text='bad gateway'),
            make_response({'issues': [{'key': 'KAOS-1'}], 'total': 1}),
        ]

        issues = self.client.search_issues('sprint in openSprints()')

        self.assertEqual([i['key'] for i in issues], ['KAOS-1'])
        self.assertEqual(self.rate_limiter.consumed(), 2)

    def test_connection_error_retried(self):
        self.session.request.side_effect = [
            requests.exceptions.ConnectionError('connection reset'),
            make_response({'worklogs': [{'id': '1'}], 'total': 1}),
        ]

        self.assertEqual(self.client.fetch_issue_worklogs('KAOS-1'), [{'id': '1'}])
        self.assertEqual(self.rate_limiter.consumed(), 2)

    def test_worklog_post_not_retried(self):
        self.session.request.return_value = make_response(status_code=503, text='unavailable')

        with self.assertRaises(JiraAPIError) as ctx:
            self.client.add_worklog('KAOS-1', datetime(2026, 10, 2, 9, 0), 3600)

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(self.session.request.call_count, 1)
        self.assertEqual(self.rate_limiter.consumed(), 1)

    def test_client_errors_not_retried(self):
        self.session.request.return_value = make_response(status_code=404, text='')

        with self.assertRaises(JiraAPIError):
            self.client.fetch_issue_worklogs('KAOS-404')

        self.assertEqual(self.session.request.call_count, 1)

    def test_retries_stop_when_quota_runs_out(self):
        self.client.rate_limiter = RateLimiter(limit=2)
        self.session.request.return_value = make_response(status_code=503, text='unavailable')

        with self.assertRaises(QuotaExhaustedError):
            self.client.fetch_issue_worklogs('KAOS-1')

        self.assertEqual(self.session.request.call_count, 2)

    @patch('kaos_sync.jira_client.time.sleep')
    def test_backoff_doubles(self, mock_sleep):
        self.client.retry_delay = 1
        self.session.request.return_value = make_response(status_code=500, text='boom')

        with self.assertRaises(JiraAPIError):
            self.client.fetch_issue_worklogs('KAOS-1')

        self.assertEqual([c[0][0] for c in mock_sleep.call_args_list], [1, 2, 4])
        self.assertEqual(self.rate_limiter.consumed(), 4)


class UnavailableJiraHandler(BaseHTTPRequestHandler):
    """Answers every request with the server's status_code and records it."""

    def _reply(self):
        length = int(self.headers.get('Content-Length') or 0)
        if length:
            self.rfile.read(length)
        self.server.hits.append((self.command, self.path))

        body = b'{"errorMessages": ["unavailable"]}'
        self.send_response(self.server.status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    do_GET = _reply
    do_POST = _reply

    def log_message(self, format, *args):
        pass


class TestJiraClientOverHttp(unittest.TestCase):
    """Count requests that actually reach a server against the quota."""

    def setUp(self):
        self.server = HTTPServer(('127.0.0.1', 0), UnavailableJiraHandler)
        self.server.hits = []
        self.server.status_code = 503
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()

        host, port = self.server.server_address
        self.rate_limiter = RateLimiter(limit=200)
        self.client = JiraClient(
            f'http://{host}:{port}', 'bot@example.com', 'token',
            rate_limiter=self.rate_limiter, timeout=5, max_retries=3, retry_delay=0
        )
        self.client._session.trust_env = False

    def tearDown(self):
        self.server.shutdown()
        self.server.server_close()
        self.thread.join()

    def test_worklog_post_reaches_server_once(self):
        with self.assertRaises(JiraAPIError) as ctx:
            self.client.add_worklog('KAOS-1', datetime(2026, 10, 2, 9, 0), 3600)

        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(self.server.hits, [('POST', '/rest/api/2/issue/KAOS-1/worklog')])
        self.assertEqual(self.rate_limiter.consumed(), 1)

    def test_quota_matches_requests_received(self):
        with self.assertRaises(JiraAPIError):
            self.client.fetch_issue_worklogs('KAOS-1')

        self.assertEqual(len(self.server.hits), 4)
        self.assertEqual(self.rate_limiter.consumed(), len(self.server.hits))


class TestJiraClientForSquad(unittest.TestCase):

    @patch.dict(os.environ, {'PAYMENTS_JIRA_TOKEN': 'squad-secret'})
    def test_token_from_credential_ref(self):
        sync_config = Mock(
            base_url='https://payments.atlassian.net',
            username='payments-bot@example.com',
            credential_ref='PAYMENTS_JIRA_TOKEN'
        )

        client = JiraClient.for_squad(sync_config, RateLimiter(limit=5))

        self.assertEqual(client.base_url, 'https://payments.atlassian.net')
        self.assertEqual(client.username, 'payments-bot@example.com')
        self.assertEqual(client.api_token, 'squad-secret')
        self.assertEqual(client.rate_limiter.limit, 5)


if __name__ == '__main__':
    unittest.main()
