"""Masking of credentials that tend to show up in logged command lines."""
from __future__ import annotations

import logging
import re
from typing import Any, Iterable

SENSITIVE_KEYS = {"api_key", "apikey", "secret", "token", "password", "passwd"}
MASK = "***"


def _key_pattern(fields: Iterable[str]) -> re.Pattern:
    names = "|".join(sorted((re.escape(f) for f in fields), key=len, reverse=True))
    # --password=x, password=x, PASSWORD: x, token x (в командной строке)
    return re.compile(rf"(?P<key>-{{0,2}}(?:{names}))(?P<sep>\s*[=:]\s*|\s+)(?P<val>[^\s&\"']+)", re.IGNORECASE)


_DEFAULT_RE = _key_pattern(SENSITIVE_KEYS)


def mask_text(text: str, *, pattern: re.Pattern = _DEFAULT_RE) -> str:
    return pattern.sub(lambda m: f"{m.group('key')}{m.group('sep')}{MASK}", text)


def mask_payload(payload: Any) -> Any:
    if isinstance(payload, dict):
        return {k: (MASK if str(k).lower() in SENSITIVE_KEYS else mask_payload(v)) for k, v in payload.items()}
    if isinstance(payload, (list, tuple)):
        return type(payload)(mask_payload(v) for v in payload)
    if isinstance(payload, str):
        return mask_text(payload)
    return payload


class SensitiveDataFilter(logging.Filter):
    """Logging filter that masks secrets passed on the command line."""

    def __init__(self, *, fields: Iterable[str] = ()):
        super().__init__("sensitive")
        self._pattern = _key_pattern({*(f.lower() for f in fields), *SENSITIVE_KEYS})

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_text(record.msg, pattern=self._pattern)
        if isinstance(record.args, dict):
            record.args = mask_payload(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(
                mask_text(arg, pattern=self._pattern) if isinstance(arg, str) else mask_payload(arg)
                for arg in record.args
            )
        return True


def install_sensitive_filter(target: Any, *, fields: Iterable[str] = ()) -> None:
    """Attach the filter to a logger or a handler, once."""
    if any(isinstance(f, SensitiveDataFilter) for f in target.filters):
        return
    target.addFilter(SensitiveDataFilter(fields=fields))
