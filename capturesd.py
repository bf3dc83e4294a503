#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "flask>=3.0.0",
#     "pydantic>=2.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Invite Capture Daemon (capturesd)

Lets a mail client hand over the message it is showing and get back an
org-capture template for the calendar invitation inside it. Configuration
is loaded from config.yaml.

Run with: uv run capturesd.py

Endpoints:
  GET  /         - Health check
  POST /capture  - Build a capture template from a message
  POST /display  - Report a displayed message, returns the invite advisory

Test capture (raw message):
curl -X POST 'http://localhost:9877/capture?view=article' \
  -H "Content-Type: message/rfc822" \
  --data-binary @invite.eml

Test capture (JSON):
curl -X POST http://localhost:9877/capture \
  -H "Content-Type: application/json" \
  -d '{"view": "summary", "message": "From: a@example.com\\n..."}'
"""

from flask import Flask, request, jsonify
import os
import logging
import argparse

import invite_capture
from invite_capture import CaptureContext, InviteAdvisor, MailView

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

RAW_CONTENT_TYPES = ('message/rfc822', 'application/octet-stream', 'text/plain')


class CaptureAgent:
    def __init__(self, config: dict):
        self.config = config

        self.host = invite_capture._get_nested(config, ['server', 'host'], '127.0.0.1')
        self.port = int(invite_capture._get_nested(config, ['server', 'port'], 9877))

        self.converter_command = invite_capture._get_nested(
            config, ['converter', 'command'], invite_capture.DEFAULT_CONVERTER)
        self.strict_exit_status = bool(invite_capture._get_nested(config, ['converter', 'strict_exit_status'], False))
        self.max_message_bytes = int(invite_capture._get_nested(
            config, ['capture', 'max_message_bytes'], 10 * 1024 * 1024))

        self.advisor = InviteAdvisor()
        self.advisor.subscribe(invite_capture.log_advisory)

    def capture(self, data: bytes, view: str) -> tuple[str | None, list[str]]:
        """Build the template for a raw message. Returns (template, diagnostics)."""
        diagnostics: list[str] = []

        def on_diagnostic(message: str) -> None:
            logger.warning(f"Converter: {message}")
            diagnostics.append(message)

        message = invite_capture.read_message(data)
        context = CaptureContext(view, invite_capture.attachment_parts(message),
                                 invite_capture.part_bytes, on_diagnostic=on_diagnostic)
        convert = invite_capture.converter_from_config(self.config, on_diagnostic=on_diagnostic)
        template = invite_capture.build_capture_template(context, convert=convert)
        return template, diagnostics

    def display(self, data: bytes) -> tuple[str, str | None]:
        """Fire the display event for a raw message. Returns (message_id, advisory)."""
        message = invite_capture.read_message(data)
        message_id = invite_capture.message_id(message)
        advisory = self.advisor.message_displayed(message_id, invite_capture.attachment_parts(message))
        return message_id, advisory


agent = CaptureAgent(invite_capture.load_config())


def _read_message_payload():
    """Pull (bytes, view) from the request. Returns an error response tuple on bad input."""
    view = request.args.get('view', MailView.ARTICLE.value)

    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict) or 'message' not in data:
            return None, view, (jsonify({
                'status': 'error',
                'message': "Missing required field: 'message'"
            }), 400)
        view = data.get('view', view)
        message = data['message']
        raw = message.encode('utf-8') if isinstance(message, str) else None
        if raw is None:
            return None, view, (jsonify({
                'status': 'error',
                'message': "Field 'message' must be a string"
            }), 400)
    elif request.content_type and any(t in request.content_type for t in RAW_CONTENT_TYPES):
        raw = request.get_data()
    else:
        return None, view, (jsonify({
            'status': 'error',
            'message': 'Content-Type must be application/json, message/rfc822, application/octet-stream or text/plain'
        }), 400)

    if not raw or not raw.strip():
        return None, view, (jsonify({
            'status': 'error',
            'message': 'Message cannot be empty'
        }), 400)

    if len(raw) > agent.max_message_bytes:
        return None, view, (jsonify({
            'status': 'error',
            'message': f'Message too large ({len(raw)} bytes). Maximum size is {agent.max_message_bytes} bytes.'
        }), 413)

    if not isinstance(view, str) or view not in {v.value for v in MailView}:
        return None, view, (jsonify({
            'status': 'error',
            'message': f"Unknown view: {view}"
        }), 400)

    return raw, view, None


@app.route('/', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({
        'status': 'ok',
        'service': 'capturesd',
        'port': agent.port,
        'endpoints': {
            'health': '/',
            'capture': '/capture',
            'display': '/display',
        },
        'converter': {
            'command': agent.converter_command,
            'strict_exit_status': agent.strict_exit_status,
        },
    }), 200


@app.route('/capture', methods=['POST'])
def capture():
    """
    Build an org-capture template from the calendar invitation in a message.

    Expected payload (JSON):
    {
        "message": "<raw RFC 822 message>",
        "view": "article"        // optional: summary, article, other
    }

    Or the raw message with Content-Type: message/rfc822 and ?view=...
    """
    try:
        raw, view, error = _read_message_payload()
        if error:
            return error

        template, diagnostics = agent.capture(raw, view)
        if template is None:
            logger.info(f"No capture template for view={view}")
            return jsonify({
                'status': 'empty',
                'message': 'No calendar invitation to capture',
                'diagnostics': diagnostics,
            }), 200

        logger.info(f"Built capture template ({len(template)} chars)")
        return jsonify({
            'status': 'success',
            'template': template,
            'diagnostics': diagnostics,
        }), 200

    except Exception as e:
        logger.error(f"Error building capture template: {str(e)}", exc_info=True)
        return jsonify({
            'status': 'error',
            'message': f'Internal server error: {str(e)}'
        }), 500


@app.route('/display', methods=['POST'])
def display():
    """
    Tell the daemon a message is being displayed.

    Accepts the same payloads as /capture. Responds with the advisory when
    the message carries a calendar invitation.
    """
    try:
        raw, _view, error = _read_message_payload()
        if error:
            return error

        message_id, advisory = agent.display(raw)
        return jsonify({
            'status': 'success',
            'message_id': message_id,
            'advisory': advisory,
        }), 200

    except Exception as e:
        logger.error(f"Error handling display event: {str(e)}", exc_info=True)
        return jsonify({
            'status': 'error',
            'message': f'Internal server error: {str(e)}'
        }), 500


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Invite Capture Daemon (capturesd)')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    logging.getLogger().setLevel(logging.DEBUG if args.debug else logging.INFO)

    if not os.path.exists(invite_capture.CONFIG_FILE):
        logger.warning(f"Configuration file not found: {invite_capture.CONFIG_FILE}; using defaults")

    logger.info(f"Starting capturesd on {agent.host}:{agent.port}")
    logger.info(f"Converter: {agent.converter_command}")
    logger.info(f"Health check: http://{agent.host}:{agent.port}/")
    logger.info(f"Capture endpoint: http://{agent.host}:{agent.port}/capture")
    logger.info(f"Display endpoint: http://{agent.host}:{agent.port}/display")

    app.run(host=agent.host, port=agent.port, debug=False)
