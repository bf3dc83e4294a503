#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "flask>=3.0.0",
#     "pydantic>=2.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Tests for the capture daemon (capturesd.py).

Covers:
- GET /: health check
- POST /capture: raw and JSON payloads, view handling, empty result, diagnostics
- POST /display: invite advisory
- Input validation (content type, empty, oversized)

Run with: uv run pytest tests/test_capturesd.py -v
"""

import sys
from email.message import EmailMessage
from pathlib import Path
from unittest import mock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
import capturesd

ICS = b"BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\nSUMMARY:Design review\r\nEND:VEVENT\r\nEND:VCALENDAR\r\n"


def _message(with_invite=True):
    msg = EmailMessage()
    msg['From'] = 'organizer@example.com'
    msg['Subject'] = 'Design review'
    msg['Message-ID'] = '<review-7@example.com>'
    msg.set_content('Agenda attached.')
    if with_invite:
        msg.add_attachment(ICS, maintype='text', subtype='calendar', filename='invite.ics')
    return msg.as_bytes()


def _completed(stdout=b'', stderr=b'', returncode=0):
    return mock.Mock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def agent():
    """Swap in a CaptureAgent built from a test config."""
    config = {
        'server': {'host': '127.0.0.1', 'port': 19877},
        'converter': {'command': 'ical2org', 'strict_exit_status': False},
        'capture': {'max_message_bytes': 64 * 1024},
    }
    test_agent = capturesd.CaptureAgent(config)
    with mock.patch.object(capturesd, 'agent', test_agent):
        yield test_agent


@pytest.fixture
def client(agent):
    capturesd.app.config['TESTING'] = True
    with capturesd.app.test_client() as c:
        yield c


class TestHealthCheck:

    def test_reports_endpoints(self, client):
        resp = client.get('/')
        assert resp.status_code == 200
        body = resp.get_json()
        assert body['service'] == 'capturesd'
        assert body['port'] == 19877
        assert body['endpoints']['capture'] == '/capture'
        assert body['converter']['command'] == 'ical2org'


class TestCapture:

    def test_raw_message(self, client):
        with mock.patch('subprocess.run') as mock_run:
            mock_run.return_value = _completed(stdout=b'* Design review\n')
            resp = client.post('/capture?view=article', data=_message(), content_type='message/rfc822')

        assert resp.status_code == 200
        body = resp.get_json()
        assert body['status'] == 'success'
        assert body['template'] == '* Design review\n\n  %a\n  %i%?\n'
        assert body['diagnostics'] == []
        assert mock_run.call_args[1]['input'] == ICS

    def test_json_message(self, client):
        payload = {'message': _message().decode('utf-8'), 'view': 'summary'}
        with mock.patch('subprocess.run') as mock_run:
            mock_run.return_value = _completed(stdout=b'* 90% done\n')
            resp = client.post('/capture', json=payload)

        assert resp.status_code == 200
        assert resp.get_json()['template'] == '* 90%(invite-capture-percent) done\n\n  %a\n  %i%?\n'

    def test_no_invite_is_empty_not_error(self, client):
        with mock.patch('subprocess.run') as mock_run:
            resp = client.post('/capture', data=_message(with_invite=False), content_type='message/rfc822')

        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'empty'
        mock_run.assert_not_called()

    def test_other_view_is_empty(self, client):
        with mock.patch('subprocess.run') as mock_run:
            resp = client.post('/capture?view=other', data=_message(), content_type='message/rfc822')

        assert resp.get_json()['status'] == 'empty'
        mock_run.assert_not_called()

    def test_converter_diagnostics_returned(self, client):
        with mock.patch('subprocess.run') as mock_run:
            mock_run.return_value = _completed(stdout=b'', stderr=b'bad DTSTART', returncode=1)
            resp = client.post('/capture', data=_message(), content_type='message/rfc822')

        body = resp.get_json()
        assert body['status'] == 'success'
        assert body['template'] == '\n  %a\n  %i%?\n'
        assert body['diagnostics'] == ['ical2org exited with status 1: bad DTSTART']

    def test_strict_mode_failure_is_empty_with_diagnostic(self, client, agent):
        agent.config['converter']['strict_exit_status'] = True
        with mock.patch('subprocess.run') as mock_run:
            mock_run.return_value = _completed(stderr=b'bad DTSTART', returncode=1)
            resp = client.post('/capture', data=_message(), content_type='message/rfc822')

        body = resp.get_json()
        assert body['status'] == 'empty'
        assert body['diagnostics'] == ['ical2org exited with status 1: bad DTSTART']

    def test_missing_message_field(self, client):
        resp = client.post('/capture', json={'view': 'article'})
        assert resp.status_code == 400
        assert "'message'" in resp.get_json()['message']

    def test_unsupported_content_type(self, client):
        resp = client.post('/capture', data=b'<html/>', content_type='text/html')
        assert resp.status_code == 400

    def test_empty_message(self, client):
        resp = client.post('/capture', data=b'   ', content_type='message/rfc822')
        assert resp.status_code == 400

    def test_unknown_view(self, client):
        resp = client.post('/capture?view=calendar', data=_message(), content_type='message/rfc822')
        assert resp.status_code == 400

    @pytest.mark.parametrize('view', [['article'], {'name': 'article'}, 3, None])
    def test_non_string_json_view(self, client, view):
        with mock.patch('subprocess.run') as mock_run:
            resp = client.post('/capture', json={'message': _message().decode('utf-8'), 'view': view})

        assert resp.status_code == 400
        assert 'Unknown view' in resp.get_json()['message']
        mock_run.assert_not_called()

    def test_oversized_message(self, client):
        big = b'Subject: big\n\n' + b'x' * (64 * 1024)
        resp = client.post('/capture', data=big, content_type='message/rfc822')
        assert resp.status_code == 413

    def test_unexpected_error_is_500(self, client, agent):
        with mock.patch.object(agent, 'capture', side_effect=RuntimeError('boom')):
            resp = client.post('/capture', data=_message(), content_type='message/rfc822')
        assert resp.status_code == 500
        assert 'boom' in resp.get_json()['message']


class TestDisplay:

    def test_advisory_for_invite(self, client, agent):
        received = []
        agent.advisor.subscribe(lambda mid, text: received.append(mid))

        resp = client.post('/display', data=_message(), content_type='message/rfc822')

        body = resp.get_json()
        assert resp.status_code == 200
        assert body['message_id'] == '<review-7@example.com>'
        assert body['advisory'] == capturesd.invite_capture.ADVISORY_TEXT
        assert received == ['<review-7@example.com>']

    def test_no_advisory_without_invite(self, client):
        resp = client.post('/display', data=_message(with_invite=False), content_type='message/rfc822')
        assert resp.get_json()['advisory'] is None

    def test_display_never_runs_converter(self, client):
        with mock.patch('subprocess.run') as mock_run:
            client.post('/display', data=_message(), content_type='message/rfc822')
        mock_run.assert_not_called()
