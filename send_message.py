#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "requests>=2.31.0",
# ]
# ///
"""
Send an email message to the capture daemon

Posts an .eml file to capturesd and prints the capture template it returns.

Usage:
    uv run send_message.py <message_file>
    uv run send_message.py -h myhost:1234 --view summary <message_file>
    uv run send_message.py --display <message_file>

Example:
    uv run send_message.py examples/invite.eml
"""

import sys
import os
import argparse
import requests
import json


def send_to_daemon(filepath, daemon_url="http://localhost:9877/capture", view="article"):
    """Send a message file to the capture daemon. Returns the response JSON or None."""

    if not os.path.exists(filepath):
        print(f"Error: File not found: {filepath}")
        return None

    try:
        with open(filepath, 'rb') as f:
            message = f.read()
    except OSError as e:
        print(f"Error reading file: {e}")
        return None

    print(f"Sending to daemon: {daemon_url}", file=sys.stderr)
    print(f"Message size: {len(message)} bytes", file=sys.stderr)

    try:
        response = requests.post(
            daemon_url,
            params={'view': view},
            data=message,
            headers={'Content-Type': 'message/rfc822'},
            timeout=60,
        )
    except requests.exceptions.ConnectionError:
        print("Error: Could not connect to capture daemon.")
        print("Make sure it's running: uv run capturesd.py")
        return None
    except requests.exceptions.RequestException as e:
        print(f"Error sending request: {e}")
        return None

    try:
        body = response.json()
    except ValueError:
        print(f"Error: Non-JSON response ({response.status_code})")
        return None

    if response.status_code != 200:
        print(f"Response status: {response.status_code}")
        print(json.dumps(body, indent=2))
        return None

    return body


def main():
    parser = argparse.ArgumentParser(
        description="Send an email message to the capture daemon.",
        add_help=False  # Disable default -h so we can use it for host
    )
    parser.add_argument(
        '-h', '--host',
        metavar='HOST:PORT',
        default='localhost:9877',
        help='Host and port to send to (default: localhost:9877)'
    )
    parser.add_argument(
        '--help',
        action='help',
        help='Show this help message and exit'
    )
    parser.add_argument(
        '--view',
        default='article',
        choices=['summary', 'article', 'other'],
        help='View the message is shown in (default: article)'
    )
    parser.add_argument(
        '--display',
        action='store_true',
        help='Send a display event instead of a capture request'
    )
    parser.add_argument(
        'message_file',
        help='Path to the .eml file to send'
    )

    args = parser.parse_args()

    endpoint = 'display' if args.display else 'capture'
    body = send_to_daemon(args.message_file, f"http://{args.host}/{endpoint}", view=args.view)
    if body is None:
        sys.exit(1)

    for diagnostic in body.get('diagnostics', []):
        print(f"Converter: {diagnostic}", file=sys.stderr)

    if args.display:
        print(body.get('advisory') or 'No calendar invitation')
        sys.exit(0)

    if body.get('status') != 'success':
        print(body.get('message', 'No calendar invitation to capture'))
        sys.exit(1)

    sys.stdout.write(body['template'])
    sys.exit(0)


if __name__ == '__main__':
    main()
