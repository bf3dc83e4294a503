#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pydantic>=2.0.0",
#     "pyyaml>=6.0.0",
# ]
# ///
"""
Invite Capture

Finds a calendar invitation (text/calendar or application/ics) among the
attachments of an email message, converts it to an org-mode entry with
ical2org, and builds an org-capture template around it.

Usage:
    uv run invite_capture.py message.eml
    cat message.eml | uv run invite_capture.py
    uv run invite_capture.py --view summary --config config.yaml message.eml

The template has the converted entry first, followed by a link to the
source message (%a) and the quoted body with the cursor (%i%?).
"""

import argparse
import email
import logging
import os
import shlex
import subprocess
import sys
from email import policy
from email.message import EmailMessage
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import yaml
from pydantic import BaseModel

logger = logging.getLogger(__name__)

CONFIG_FILE = os.getenv('INVITE_CAPTURE_CONFIG', 'config.yaml')

INVITE_CONTENT_TYPES = ('application/ics', 'text/calendar')

# Zero-argument helper the capture engine evaluates back to a literal '%'
PERCENT_HELPER = 'invite-capture-percent'
PERCENT_ESCAPE = f'%({PERCENT_HELPER})'

LINK_PLACEHOLDER = '  %a'
BODY_PLACEHOLDER = '  %i%?'

ADVISORY_TEXT = 'This message contains a calendar invitation; capture it to add it to your agenda.'

DEFAULT_CONVERTER = 'ical2org'


class MailView(str, Enum):
    SUMMARY = "summary"
    ARTICLE = "article"
    OTHER = "other"


class ConversionError(RuntimeError):
    """The converter could not be run or reported a failure."""

    def __init__(self, message: str, command: list[str] | None = None,
                 returncode: int | None = None, stderr: str = '', output: str = ''):
        super().__init__(message)
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr
        self.output = output


class AttachmentPart(BaseModel):
    content_type: Optional[str] = None
    filename: Optional[str] = None
    handle: Any = None

    @classmethod
    def from_descriptor(cls, descriptor) -> Optional['AttachmentPart']:
        """Validate a positional descriptor ``(a, b, ((content_type, ...), ...), ...)``.

        Returns None when the shape doesn't match; the third element becomes
        the part's handle.
        """
        if not _is_list_like(descriptor) or len(descriptor) < 3:
            return None
        sub = descriptor[2]
        if not _is_list_like(sub) or not sub:
            return None
        type_info = sub[0]
        if not _is_list_like(type_info) or not type_info:
            return None
        content_type = type_info[0]
        if not isinstance(content_type, str):
            return None
        return cls(content_type=content_type, handle=sub)


def _is_list_like(value) -> bool:
    return isinstance(value, (list, tuple))


# ============================================================================
# Detection
# ============================================================================

def is_calendar_invite(part) -> bool:
    """True if the part (record or raw descriptor) is a calendar invitation."""
    if not isinstance(part, AttachmentPart):
        part = AttachmentPart.from_descriptor(part)
        if part is None:
            return False
    return part.content_type in INVITE_CONTENT_TYPES


def find_invite(parts: Iterable):
    """Return the first calendar invitation in parts, or None.

    Only the first invite is used; any later ones in the same message are
    ignored.
    """
    for index, part in enumerate(parts):
        if is_calendar_invite(part):
            logger.debug(f"Calendar invitation found at attachment {index}")
            return part
    return None


# ============================================================================
# Conversion
# ============================================================================

def _log_diagnostic(message: str) -> None:
    logger.warning(message)


def convert_invite(raw: bytes, command: list[str] | str | None = None,
                   encoding: str = 'utf-8', strict: bool = False,
                   timeout: float | None = None,
                   on_diagnostic: Callable[[str], None] | None = None) -> str:
    """Run the converter with raw as its stdin and return its stdout.

    Stderr output and nonzero exits are reported through on_diagnostic and
    the (possibly empty) output is still returned. With strict=True those
    become a ConversionError instead.
    """
    report = on_diagnostic or _log_diagnostic
    if command is None:
        command = [DEFAULT_CONVERTER]
    elif isinstance(command, str):
        command = shlex.split(command)
    else:
        command = list(command)

    if not command:
        error = ConversionError("converter command is empty", command=command)
        if strict:
            raise error
        report(str(error))
        return ''

    try:
        result = subprocess.run(command, input=raw, capture_output=True, timeout=timeout)
    except FileNotFoundError:
        error = ConversionError(f"converter not found: {command[0]} (is it on PATH?)", command=command)
        if strict:
            raise error
        report(str(error))
        return ''
    except OSError as e:
        error = ConversionError(f"converter not runnable: {command[0]} ({e})", command=command)
        if strict:
            raise error
        report(str(error))
        return ''
    except subprocess.TimeoutExpired as e:
        partial = (e.stdout or b'').decode(encoding, errors='replace')
        error = ConversionError(f"converter timed out after {timeout}s: {command[0]}",
                                command=command, output=partial)
        if strict:
            raise error
        report(str(error))
        return partial

    output = result.stdout.decode(encoding, errors='replace')
    stderr = result.stderr.decode(encoding, errors='replace').strip()

    if result.returncode != 0:
        message = f"{command[0]} exited with status {result.returncode}"
        if stderr:
            message += f": {stderr}"
        if strict:
            raise ConversionError(message, command=command, returncode=result.returncode,
                                  stderr=stderr, output=output)
        report(message)
    elif stderr:
        report(f"{command[0]}: {stderr}")

    logger.debug(f"Converted {len(raw)} bytes into {len(output)} chars")
    return output


def converter_from_config(config: dict, on_diagnostic: Callable[[str], None] | None = None) -> Callable[[bytes], str]:
    """Bind convert_invite to the converter settings in config."""
    command = _get_nested(config, ['converter', 'command'], DEFAULT_CONVERTER)
    encoding = _get_nested(config, ['converter', 'encoding'], 'utf-8')
    strict = bool(_get_nested(config, ['converter', 'strict_exit_status'], False))
    timeout = _get_nested(config, ['converter', 'timeout_seconds'])
    if timeout is not None:
        timeout = float(timeout)

    def convert(raw: bytes) -> str:
        return convert_invite(raw, command=command, encoding=encoding, strict=strict,
                              timeout=timeout, on_diagnostic=on_diagnostic)

    return convert


# ============================================================================
# Template
# ============================================================================

def escape_for_template(text: str) -> str:
    """Replace each '%' with a helper call that expands back to '%'.

    Apply once, after conversion; escaping twice escapes the escape.
    """
    return text.replace('%', PERCENT_ESCAPE)


class CaptureContext:
    """What the host tells us about the message being captured."""

    def __init__(self, view: MailView | str, parts: list, fetch_bytes: Callable[[AttachmentPart], bytes],
                 on_diagnostic: Callable[[str], None] | None = None):
        self.view = MailView(view)
        self.parts = parts
        self.fetch_bytes = fetch_bytes
        self.on_diagnostic = on_diagnostic or _log_diagnostic

    @property
    def is_mail_view(self) -> bool:
        return self.view in (MailView.SUMMARY, MailView.ARTICLE)


def build_capture_template(context: CaptureContext,
                           convert: Callable[[bytes], str] | None = None) -> str | None:
    """Build the capture template for the invite in context, or None."""
    if not context.is_mail_view:
        return None

    invite = find_invite(context.parts)
    if invite is None:
        return None

    if convert is None:
        def convert(raw: bytes) -> str:
            return convert_invite(raw, on_diagnostic=context.on_diagnostic)

    raw = context.fetch_bytes(invite)
    try:
        converted = convert(raw)
    except ConversionError as e:
        context.on_diagnostic(str(e))
        return None

    return escape_for_template(converted) + '\n' + LINK_PLACEHOLDER + '\n' + BODY_PLACEHOLDER + '\n'


# ============================================================================
# Display advisory
# ============================================================================

class InviteAdvisor:
    """Emits ADVISORY_TEXT to subscribers when a displayed message has an invite."""

    def __init__(self):
        self._subscribers: list[Callable[[str, str], None]] = []

    def subscribe(self, callback: Callable[[str, str], None]) -> None:
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[str, str], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def message_displayed(self, message_id: str, parts: Iterable) -> str | None:
        """Handle one display of a message; returns the advisory if one was sent."""
        if find_invite(parts) is None:
            return None
        for callback in list(self._subscribers):
            callback(message_id, ADVISORY_TEXT)
        return ADVISORY_TEXT


def log_advisory(message_id: str, advisory: str) -> None:
    logger.info(f"{message_id}: {advisory}")


# ============================================================================
# Messages
# ============================================================================

def read_message(data: bytes) -> EmailMessage:
    return email.message_from_bytes(data, policy=policy.default)


def attachment_parts(message: EmailMessage) -> list[AttachmentPart]:
    """One AttachmentPart per leaf MIME part, in walk order."""
    parts = []
    for leaf in message.walk():
        if leaf.is_multipart():
            continue
        parts.append(AttachmentPart(
            content_type=leaf.get_content_type(),
            filename=leaf.get_filename(),
            handle=leaf,
        ))
    return parts


def part_bytes(part: AttachmentPart) -> bytes:
    """Decoded payload of a part built by attachment_parts()."""
    return part.handle.get_payload(decode=True) or b''


def message_id(message: EmailMessage) -> str:
    return str(message.get('Message-ID', '')).strip() or '<unknown>'


# ============================================================================
# Configuration
# ============================================================================

def load_config(config_file: str | None = None) -> dict:
    """Load configuration from YAML; a missing file means defaults."""
    config_path = Path(config_file or CONFIG_FILE)
    if not config_path.exists():
        return {}
    with open(config_path, 'r') as f:
        return yaml.safe_load(f) or {}


def _get_nested(config: dict, keys: list[str], default=None):
    current = config
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description='Build an org-capture template from a calendar invitation in an email'
    )
    parser.add_argument('message_file', nargs='?', default=None,
                        help='Path to an RFC 822 message (.eml). Default: read stdin')
    parser.add_argument('--view', choices=[v.value for v in MailView], default=MailView.ARTICLE.value,
                        help='View the message is shown in (default: article)')
    parser.add_argument('--config', default=None,
                        help='Path to config.yaml (default: $INVITE_CAPTURE_CONFIG or config.yaml)')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug logging')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.message_file:
        if not os.path.exists(args.message_file):
            print(f"Error: Message file not found: {args.message_file}", file=sys.stderr)
            return 1
        with open(args.message_file, 'rb') as f:
            data = f.read()
    else:
        data = sys.stdin.buffer.read()

    if not data.strip():
        print("Error: Empty message", file=sys.stderr)
        return 1

    config = load_config(args.config)
    message = read_message(data)
    failures: list[ConversionError] = []

    def on_diagnostic(text: str) -> None:
        logger.warning(text)

    def convert(raw: bytes) -> str:
        try:
            return converter_from_config(config, on_diagnostic=on_diagnostic)(raw)
        except ConversionError as e:
            failures.append(e)
            raise

    context = CaptureContext(args.view, attachment_parts(message), part_bytes, on_diagnostic=on_diagnostic)

    template = build_capture_template(context, convert=convert)
    if template is None:
        if failures:
            print(f"Conversion failed: {failures[-1]}", file=sys.stderr)
        else:
            print("No calendar invitation found", file=sys.stderr)
        return 1

    sys.stdout.write(template)
    return 0


if __name__ == "__main__":
    sys.exit(main())
