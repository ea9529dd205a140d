"""
Notifications sent after a backup run.

Messages are rendered from Jinja2 templates. The defaults below can be
overridden per template by placing a file named after the template (e.g.
``title_failure.txt``) in the notifications directory.

Each notification URL selects a sender through its scheme:
- generic://, generic+http://, generic+https:// - POST a JSON document
- telegram://<token>@telegram?chats=<id>,<id> - Telegram Bot API
- discord://<token>@<webhook id> - Discord webhook
- smtp://<user>:<password>@<host>:<port>/?from=<addr>&to=<addr>,<addr> - e-mail
"""

import json
import logging
import os
import smtplib
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta
from email.message import EmailMessage
from typing import Dict, List, Mapping, Optional
from urllib.parse import urlsplit, parse_qs, unquote

import requests
from jinja2 import DictLoader, Environment, TemplateError

from volumebackup.errors import NotificationError, root_cause
from volumebackup.settings import Settings


logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10

DEFAULT_TEMPLATES = {
    'title_failure': 'Failure running docker-volume-backup at {{ stats.start_time | format_time }}',
    'body_failure': (
        'Running docker-volume-backup failed with error: {{ error }}\n'
        '\n'
        'Log output of the failed run was:\n'
        '\n'
        '{{ stats.log_output }}\n'
    ),
    'title_success': 'Success running docker-volume-backup at {{ stats.start_time | format_time }}',
    'body_success': (
        'Running docker-volume-backup succeeded.\n'
        '\n'
        'Log output was:\n'
        '\n'
        '{{ stats.log_output }}\n'
    ),
}


def format_time(value: Optional[datetime]) -> str:
    if value is None:
        return ''
    return value.isoformat(timespec='seconds')


def _format_bytes(size: int, unit: int, suffixes: List[str]) -> str:
    if size < unit:
        return f"{size} B"
    value = float(size)
    for suffix in suffixes:
        value /= unit
        if value < unit:
            break
    return f"{value:.1f} {suffix}"


def format_bytes_dec(size: int) -> str:
    """Human readable size using powers of 1000, e.g. 1.5 kB."""
    return _format_bytes(size, 1000, ['kB', 'MB', 'GB', 'TB', 'PB', 'EB'])


def format_bytes_bin(size: int) -> str:
    """Human readable size using powers of 1024, e.g. 1.5 KiB."""
    return _format_bytes(size, 1024, ['KiB', 'MiB', 'GiB', 'TiB', 'PiB', 'EiB'])


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    return str(value)


def to_json(value) -> str:
    if is_dataclass(value):
        value = asdict(value)
    return json.dumps(value, default=_json_default)


def load_templates(directory: Optional[str] = None) -> Dict[str, str]:
    """
    Collect template sources, user files overriding the defaults.

    Args:
        directory: Directory with user templates (defaults to Settings.NOTIFICATIONS_DIR)

    Returns:
        Mapping of template name to source
    """
    directory = directory or Settings.NOTIFICATIONS_DIR
    templates = dict(DEFAULT_TEMPLATES)
    if not os.path.isdir(directory):
        return templates

    for entry in sorted(os.scandir(directory), key=lambda e: e.name):
        stem, ext = os.path.splitext(entry.name)
        if not entry.is_file() or not ext:
            continue
        try:
            with open(entry.path, 'r') as f:
                templates[stem] = f.read()
        except OSError as e:
            raise NotificationError(f"unable to read notification template {entry.path}: {e}") from e
    return templates


def create_template_environment(templates: Mapping[str, str], variables: Mapping[str, str]) -> Environment:
    env = Environment(loader=DictLoader(dict(templates)), keep_trailing_newline=True)
    env.filters['format_time'] = format_time
    env.filters['format_bytes_dec'] = format_bytes_dec
    env.filters['format_bytes_bin'] = format_bytes_bin
    env.filters['to_json'] = to_json
    env.globals['env'] = lambda name, default='': variables.get(name, default)
    return env


class Sender:
    """Delivers a rendered notification to a single URL."""

    def __init__(self, url: str):
        self.url = url
        self.parts = urlsplit(url)
        self.query = {key: values[-1] for key, values in parse_qs(self.parts.query).items()}

    def send(self, title: str, body: str):
        raise NotImplementedError


class GenericSender(Sender):
    def send(self, title: str, body: str):
        scheme = 'http' if self.parts.scheme == 'generic+http' else 'https'
        target = f"{scheme}://{self.parts.netloc}{self.parts.path}"
        response = requests.post(target, json={'title': title, 'message': body}, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()


class TelegramSender(Sender):
    def send(self, title: str, body: str):
        token = unquote(f"{self.parts.username}:{self.parts.password}" if self.parts.password else self.parts.username or '')
        chats = [chat for chat in self.query.get('chats', '').split(',') if chat]
        if not token or not chats:
            raise NotificationError("telegram URL needs a token and at least one chat")

        url = f"https://api.telegram.org/bot{token}/sendMessage"
        for chat in chats:
            response = requests.post(url, json={'chat_id': chat, 'text': f"{title}\n\n{body}"}, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()


class DiscordSender(Sender):
    def send(self, title: str, body: str):
        token = unquote(self.parts.username or '')
        webhook_id = self.parts.hostname
        if not token or not webhook_id:
            raise NotificationError("discord URL needs a token and a webhook id")

        url = f"https://discord.com/api/webhooks/{webhook_id}/{token}"
        response = requests.post(url, json={'content': f"**{title}**\n{body}"}, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()


class SMTPSender(Sender):
    def send(self, title: str, body: str):
        host = self.parts.hostname
        port = self.parts.port or 587
        recipients = [addr for addr in self.query.get('to', '').split(',') if addr]
        if not host or not recipients:
            raise NotificationError("smtp URL needs a host and at least one recipient")

        message = EmailMessage()
        message['Subject'] = title
        message['From'] = self.query.get('from', 'noreply@nohost')
        message['To'] = ', '.join(recipients)
        message.set_content(body)

        smtp_class = smtplib.SMTP_SSL if port == 465 else smtplib.SMTP
        with smtp_class(host, port, timeout=REQUEST_TIMEOUT) as smtp:
            if smtp_class is smtplib.SMTP:
                smtp.ehlo()
                if smtp.has_extn('starttls'):
                    smtp.starttls()
                    smtp.ehlo()
            if self.parts.username:
                smtp.login(unquote(self.parts.username), unquote(self.parts.password or ''))
            smtp.send_message(message)


SENDERS = {
    'generic': GenericSender,
    'generic+http': GenericSender,
    'generic+https': GenericSender,
    'telegram': TelegramSender,
    'discord': DiscordSender,
    'smtp': SMTPSender,
}


def create_sender(url: str) -> Sender:
    """
    Create the sender for a notification URL.

    Raises:
        NotificationError: If the URL scheme is not supported
    """
    scheme = urlsplit(url).scheme
    sender_class = SENDERS.get(scheme)
    if sender_class is None:
        raise NotificationError(f"unknown notification service `{scheme}`")
    return sender_class(url)


class Notifier:
    """
    Renders and delivers success and failure notifications.

    Args:
        urls: Notification URLs
        variables: Variables exposed to templates through env()
        templates_dir: Directory with user templates
    """

    def __init__(self, urls: List[str], variables: Mapping[str, str] = None, templates_dir: str = None):
        self.senders = [create_sender(url) for url in urls]
        self.environment = create_template_environment(load_templates(templates_dir), variables or {})

    def render(self, name: str, **context) -> str:
        try:
            return self.environment.get_template(name).render(**context)
        except TemplateError as e:
            raise NotificationError(f"error executing {name} template: {e}") from e

    def send(self, title: str, body: str):
        errors = []
        for sender in self.senders:
            try:
                sender.send(title, body)
            except (requests.RequestException, smtplib.SMTPException, OSError, NotificationError) as e:
                errors.append(f"{sender.parts.scheme}: {e}")
        if errors:
            raise NotificationError(f"error sending message: {'; '.join(errors)}")

    def notify_failure(self, stats, error: BaseException):
        cause = root_cause(error)
        context = {'stats': stats, 'error': str(cause) if cause is not None else ''}
        self.send(self.render('title_failure', **context), self.render('body_failure', **context))

    def notify_success(self, stats):
        context = {'stats': stats, 'error': ''}
        self.send(self.render('title_success', **context), self.render('body_success', **context))
