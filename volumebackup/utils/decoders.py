"""
Value decoders used when building configuration from variables.

Each decoder takes the raw string value and returns the typed value or
raises ConfigValidationError. Certificates are loaded with the
cryptography package, either from a file path or from inline PEM content.
"""

import re
from dataclasses import field
from datetime import timedelta
from typing import Any, Callable, List, Optional, Pattern

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding

from volumebackup.errors import ConfigValidationError


COMPRESSION_TYPES = ('gz', 'zst')

_DURATION_UNITS = {
    'ns': 1e-9,
    'us': 1e-6,
    'µs': 1e-6,
    'ms': 1e-3,
    's': 1.0,
    'm': 60.0,
    'h': 3600.0,
}
_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')

_TRUE_VALUES = ('1', 't', 'T', 'TRUE', 'true', 'True')
_FALSE_VALUES = ('0', 'f', 'F', 'FALSE', 'false', 'False')


def decode_str(value: str) -> str:
    return value


def decode_bool(value: str) -> bool:
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigValidationError(f"error converting {value} to bool")


def decode_int(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise ConfigValidationError(f"error converting {value} to int")


def decode_natural_number(value: str) -> int:
    """Decode a positive, non-zero natural number."""
    number = decode_int(value)
    if number <= 0:
        raise ConfigValidationError(f"expected a natural number, got {number}")
    return number


def decode_whole_number(value: str) -> int:
    """Decode a positive whole number, including zero."""
    number = decode_int(value)
    if number < 0:
        raise ConfigValidationError(f"expected a whole, positive number, including zero. Got {number}")
    return number


def decode_compression_type(value: str) -> str:
    if value not in COMPRESSION_TYPES:
        raise ConfigValidationError(f"error decoding compression type {value}")
    return value


def decode_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def decode_regexp(value: str) -> Optional[Pattern]:
    if value == '':
        return None
    try:
        return re.compile(value)
    except re.error as e:
        raise ConfigValidationError(f"error compiling given regexp `{value}`: {e}")


def decode_certificate(value: str) -> Optional[x509.Certificate]:
    """
    Load an X.509 certificate.

    Args:
        value: Path to a PEM file, or the PEM content itself

    Returns:
        Parsed certificate, or None for an empty value

    Raises:
        ConfigValidationError: If no certificate can be parsed
    """
    if value == '':
        return None

    try:
        with open(value, 'rb') as f:
            content = f.read()
    except OSError:
        content = value.encode()

    try:
        return x509.load_pem_x509_certificate(content)
    except ValueError as e:
        raise ConfigValidationError(f"error parsing certificate: {e}")


def decode_duration(value: str) -> timedelta:
    """
    Decode a duration like ``1m``, ``90s`` or ``1h30m``.

    A bare ``0`` is accepted, any other value needs a unit.
    """
    text = value.strip()
    sign = 1
    if text[:1] in ('-', '+'):
        sign = -1 if text[0] == '-' else 1
        text = text[1:]

    if text == '0':
        return timedelta(0)
    if not text:
        raise ConfigValidationError(f"invalid duration {value!r}")

    seconds = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ConfigValidationError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ConfigValidationError(f"invalid duration {value!r}")

    return timedelta(seconds=sign * seconds)


def encode_duration(value: timedelta) -> str:
    """Render a timedelta in the format accepted by decode_duration."""
    total = value.total_seconds()
    if total == 0:
        return '0s'
    sign = '-' if total < 0 else ''
    total = abs(total)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{int(hours)}h")
    if minutes:
        parts.append(f"{int(minutes)}m")
    if seconds:
        parts.append(f"{seconds:g}s")
    return sign + ''.join(parts)


def encode_value(value: Any) -> Optional[str]:
    """Render a decoded value back into its variable form."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, timedelta):
        return encode_duration(value)
    if isinstance(value, (list, tuple)):
        return ','.join(str(item) for item in value)
    if isinstance(value, re.Pattern):
        return value.pattern
    if isinstance(value, x509.Certificate):
        return value.public_bytes(Encoding.PEM).decode()
    return str(value)


def setting(default: Any = None, decode: Callable[[str], Any] = decode_str, factory: Callable[[], Any] = None):
    """
    Declare a configuration field together with its decoder.

    The variable name of a field is its name upper-cased with the
    underscores removed, e.g. ``cron_expression`` -> ``CRONEXPRESSION``.
    """
    metadata = {'decode': decode}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)
